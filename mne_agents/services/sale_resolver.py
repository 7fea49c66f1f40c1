"""
Sale / lot resolver: validates and applies a multi-lot sale.

Everything is checked before the first write:
1. Lot specs are validated (positive counts, dates present).
2. The source account is resolved by case-insensitive substring match on
   asset name or location name; several distinct locations is an error.
3. Every requested lot date is planned against the persisted rows for that
   exact date, in insertion order. A shortfall on any date aborts the sale.
4. The proceeds destination, if any, must be exactly one non-stock asset.

Only then are rows deleted or decremented (inside ``store.atomic()``), fully
divested assets removed, the ticker's watchlist flag recomputed and the
proceeds credited. All updates write absolute values so a replay after a
partial failure converges instead of double-counting.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

from mne_agents.errors import (
    AmbiguityError, InputValidationError, InsufficientSharesError, NotFoundError
)
from mne_agents.services.portfolio_store import PortfolioStore
from mne_agents.tools.ledger import to_cents
from mne_agents.tools.tool_catalog import SellSharesInput, parse_tool_input
from mne_agents.types.portfolio_types import Asset, PortfolioSnapshot, Transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LotDepletion:
    transaction_id: str
    asset_id: str
    purchase_date: date
    sold: Decimal
    remaining: Decimal

    @property
    def removes_row(self) -> bool:
        return self.remaining <= 0


@dataclass
class SalePlan:
    symbol: str
    sale_price: Decimal
    assets: List[Asset]
    lots: List[Tuple[date, Decimal]]
    depletions: List[LotDepletion] = field(default_factory=list)
    destination: Optional[Asset] = None
    transfer_amount: Optional[Decimal] = None

    @property
    def shares_sold(self) -> Decimal:
        return sum((d.sold for d in self.depletions), Decimal("0"))

    @property
    def proceeds(self) -> Decimal:
        return to_cents(self.shares_sold * self.sale_price)

    @property
    def source_label(self) -> str:
        return ", ".join(sorted({a.location_name for a in self.assets}))


@dataclass
class SaleOutcome:
    symbol: str
    shares_sold: Decimal
    sale_price: Decimal
    proceeds: Decimal
    source: str
    deleted_transaction_ids: List[str] = field(default_factory=list)
    updated_transaction_ids: List[str] = field(default_factory=list)
    deleted_asset_ids: List[str] = field(default_factory=list)
    watchlist_only: Optional[bool] = None
    transfer_to: Optional[str] = None
    transfer_amount: Optional[Decimal] = None

    def message(self) -> str:
        text = (
            f"Sold {_fmt_count(self.shares_sold)} {self.symbol} shares @ ${self.sale_price:,.2f} "
            f"from {self.source} for ${self.proceeds:,.2f}."
        )
        if self.transfer_to:
            text += f" Moved ${self.transfer_amount:,.2f} to \"{self.transfer_to}\"."
        if self.deleted_asset_ids:
            text += f" The {self.symbol} position was fully sold and removed."
        return text


def _fmt_count(value: Decimal) -> str:
    value = Decimal(value).normalize()
    return f"{value:f}"


def _decimal(value: Union[float, int, str, Decimal]) -> Decimal:
    return Decimal(str(value))


class SaleLotResolver:
    """Plans and applies ``sell_shares`` requests against a PortfolioStore."""

    def __init__(self, store: PortfolioStore):
        self.store = store

    # ------------------------------------------------------------------
    # Planning (no writes)
    # ------------------------------------------------------------------

    def plan(self, request: Union[SellSharesInput, Dict[str, Any]], snapshot: PortfolioSnapshot) -> SalePlan:
        """Resolve accounts, lots and destination without touching the store.

        Raises:
            InputValidationError: Malformed request or a stock transfer destination.
            NotFoundError: No matching position, lot or destination.
            AmbiguityError: Several accounts or destinations match.
            InsufficientSharesError: A lot date holds fewer shares than requested.
        """
        if not isinstance(request, SellSharesInput):
            request = parse_tool_input("sell_shares", request)

        if request.transfer_amount is not None and not request.transfer_to:
            raise InputValidationError("transfer_amount was given without transfer_to")

        lots = self._merge_lots(request)
        assets = self._resolve_assets(snapshot, request.symbol, request.source_account)
        destination = self._resolve_destination(snapshot, request.transfer_to) if request.transfer_to else None

        plan = SalePlan(
            symbol=request.symbol,
            sale_price=_decimal(request.sale_price),
            assets=assets,
            lots=lots,
            destination=destination,
        )
        for purchase_date, count in lots:
            plan.depletions.extend(self._plan_lot(request.symbol, assets, purchase_date, count))

        if destination is not None:
            plan.transfer_amount = (
                to_cents(_decimal(request.transfer_amount)) if request.transfer_amount is not None
                else plan.proceeds
            )
        return plan

    @staticmethod
    def _merge_lots(request: SellSharesInput) -> List[Tuple[date, Decimal]]:
        merged: Dict[date, Decimal] = {}
        for lot in request.resolved_lots():
            count = _decimal(lot.count)
            if count <= 0:
                raise InputValidationError(f"Lot {lot.purchase_date} count must be greater than 0")
            merged[lot.purchase_date] = merged.get(lot.purchase_date, Decimal("0")) + count
        return list(merged.items())

    @staticmethod
    def _resolve_assets(snapshot: PortfolioSnapshot, symbol: str, source_account: Optional[str]) -> List[Asset]:
        candidates = snapshot.stock_assets_for_symbol(symbol)
        if not candidates:
            raise NotFoundError(f"No {symbol} position found in the portfolio.")

        if source_account and source_account.strip():
            needle = source_account.strip().lower()
            matches = [a for a in candidates
                       if needle in a.name.lower() or needle in a.location_name.lower()]
            if not matches:
                accounts = sorted({a.location_name for a in candidates})
                raise NotFoundError(
                    f"No {symbol} position matches account '{source_account}'. "
                    f"{symbol} is held at: {', '.join(accounts)}."
                )
        else:
            matches = candidates

        locations = sorted({a.location_name for a in matches})
        if len(locations) > 1:
            raise AmbiguityError(
                f"{symbol} is held in several accounts; say which one the shares were sold from.",
                candidates=locations,
            )
        return matches

    @staticmethod
    def _resolve_destination(snapshot: PortfolioSnapshot, transfer_to: str) -> Asset:
        wanted = transfer_to.strip().lower()
        matches = [a for a in snapshot.assets if a.name.strip().lower() == wanted]
        if not matches:
            raise NotFoundError(f"No asset named \"{transfer_to}\" to receive the proceeds.")
        if len(matches) > 1:
            raise AmbiguityError(
                f"Several assets are named \"{transfer_to}\".",
                candidates=[f"{a.name} ({a.location_name})" for a in matches],
            )
        destination = matches[0]
        if destination.is_stock:
            raise InputValidationError(
                f"\"{destination.name}\" is a stock position; proceeds can only go to a cash-like asset."
            )
        return destination

    @staticmethod
    def _rows_for_date(assets: List[Asset], purchase_date: date) -> List[Tuple[Asset, Transaction]]:
        rows = []
        for asset in assets:
            for subtype in asset.stock_subtypes:
                for tx in subtype.transactions:
                    if tx.purchase_date == purchase_date:
                        rows.append((asset, tx))
        # Stable: rows sharing created_at keep store order
        rows.sort(key=lambda pair: pair[1].created_at or "")
        return rows

    def _plan_lot(self, symbol: str, assets: List[Asset], purchase_date: date, count: Decimal) -> List[LotDepletion]:
        rows = self._rows_for_date(assets, purchase_date)
        available = sum((tx.count for _, tx in rows), Decimal("0"))
        if not rows:
            raise NotFoundError(f"No {symbol} lot purchased on {purchase_date.isoformat()}.")
        if available < count:
            raise InsufficientSharesError(symbol, purchase_date.isoformat(), count, available)

        depletions = []
        remaining_to_sell = count
        for asset, tx in rows:
            if remaining_to_sell <= 0:
                break
            sold = min(tx.count, remaining_to_sell)
            depletions.append(LotDepletion(
                transaction_id=tx.id,
                asset_id=asset.id,
                purchase_date=purchase_date,
                sold=sold,
                remaining=tx.count - sold,
            ))
            remaining_to_sell -= sold
        return depletions

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, request: Union[SellSharesInput, Dict[str, Any]],
                snapshot: Optional[PortfolioSnapshot] = None) -> SaleOutcome:
        """Plan against a fresh snapshot, then apply every mutation in one atomic block."""
        if not isinstance(request, SellSharesInput):
            request = parse_tool_input("sell_shares", request)
        snapshot = snapshot or self.store.fetch_snapshot()
        plan = self.plan(request, snapshot)
        return self.apply(plan, snapshot)

    def apply(self, plan: SalePlan, snapshot: PortfolioSnapshot) -> SaleOutcome:
        outcome = SaleOutcome(
            symbol=plan.symbol,
            shares_sold=plan.shares_sold,
            sale_price=plan.sale_price,
            proceeds=plan.proceeds,
            source=plan.source_label,
        )
        logger.info(
            f"[Sale Resolver] Selling {plan.shares_sold} {plan.symbol} across "
            f"{len(plan.depletions)} lot row(s) from {plan.source_label}"
        )

        with self.store.atomic():
            for depletion in plan.depletions:
                if depletion.removes_row:
                    self.store.delete("transactions", depletion.transaction_id)
                    outcome.deleted_transaction_ids.append(depletion.transaction_id)
                else:
                    self.store.update("transactions", depletion.transaction_id,
                                      {"count": float(depletion.remaining)})
                    outcome.updated_transaction_ids.append(depletion.transaction_id)

            sold_by_asset: Dict[str, Decimal] = {}
            for depletion in plan.depletions:
                sold_by_asset[depletion.asset_id] = sold_by_asset.get(depletion.asset_id, Decimal("0")) + depletion.sold

            for asset in plan.assets:
                remaining_shares = asset.total_shares - sold_by_asset.get(asset.id, Decimal("0"))
                has_active_grant = any(not g.ended for g in asset.rsu_grants)
                if remaining_shares <= 0 and not has_active_grant:
                    self.store.delete("assets", asset.id)
                    outcome.deleted_asset_ids.append(asset.id)
                    logger.info(f"[Sale Resolver] Removed fully divested asset {asset.id} ({asset.name})")

            ticker = plan.assets[0].ticker
            if ticker is not None:
                still_owned = any(
                    a.is_stock and a.ticker and a.ticker.id == ticker.id and a.id not in outcome.deleted_asset_ids
                    for a in snapshot.assets
                )
                outcome.watchlist_only = not still_owned
                self.store.update("tickers", ticker.id, {"watchlist_only": outcome.watchlist_only})

            if plan.destination is not None:
                current = plan.destination.price or Decimal("0")
                new_value = to_cents(current + plan.transfer_amount)
                self.store.update("assets", plan.destination.id, {"price": float(new_value)})
                outcome.transfer_to = plan.destination.name
                outcome.transfer_amount = plan.transfer_amount
                logger.info(
                    f"[Sale Resolver] Credited ${plan.transfer_amount} to {plan.destination.name} "
                    f"(now ${new_value})"
                )

        return outcome
