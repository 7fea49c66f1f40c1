"""
Portfolio analytics over an immutable snapshot.

Every method is a pure read of the snapshot: position and lot projections,
exposure breakdowns, tax-lot analysis and the net-worth time series. Results
are plain JSON-ready dictionaries because they are fed straight back to the
reasoning service as tool results.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

import pandas as pd

from mne_agents.errors import InputValidationError
from mne_agents.tools.grant_reconciliation import GrantReconciliation, reconcile_ticker
from mne_agents.tools.ledger import (
    classify, cost_basis, market_value, to_cents, unrealized_gain
)
from mne_agents.types.portfolio_types import (
    Asset, CapitalGainsStatus, NetWorthPoint, PortfolioSnapshot, StockSubtypeKind
)

logger = logging.getLogger(__name__)

MAX_POSITION_ROWS = 500
MAX_TRANSACTION_ROWS = 1000
DEFAULT_POSITION_ROWS = 100
DEFAULT_TRANSACTION_ROWS = 200
TOP_HOLDINGS = 5
TAX_LOT_LIST_SIZE = 10
UNCATEGORIZED_THEME = "Uncategorized"
CASH_BUCKET = "Cash & Equivalents"

TIMESERIES_RANGES = {
    "1M": pd.DateOffset(months=1),
    "3M": pd.DateOffset(months=3),
    "6M": pd.DateOffset(months=6),
    "1Y": pd.DateOffset(years=1),
    "ALL": None,
}
EXPOSURE_DIMENSIONS = ("ticker", "theme", "asset_type", "location")


def _money(value: Decimal) -> float:
    return float(to_cents(value))


def _pct(part: Decimal, whole: Decimal) -> float:
    if not whole:
        return 0.0
    return round(float(Decimal(part) / Decimal(whole) * 100), 2)


def _clamp_limit(limit: Optional[int], default: int, maximum: int) -> int:
    if limit is None:
        return default
    return max(1, min(int(limit), maximum))


def _normalized(values: Optional[Iterable[str]]) -> Optional[set]:
    if not values:
        return None
    return {str(v).strip().lower() for v in values if str(v).strip()}


def theme_distribution(assets: Iterable[Asset]) -> Dict[str, Decimal]:
    """Split each stock's value equally across the themes of its ticker.

    Stocks whose ticker has no themes land in the "Uncategorized" bucket.
    """
    buckets: Dict[str, Decimal] = {}
    for asset in assets:
        if not asset.is_stock:
            continue
        value = market_value(asset)
        if value <= 0:
            continue
        themes = asset.ticker.theme_names if asset.ticker else []
        if not themes:
            buckets[UNCATEGORIZED_THEME] = buckets.get(UNCATEGORIZED_THEME, Decimal("0")) + value
            continue
        share = value / len(themes)
        for theme in themes:
            buckets[theme] = buckets.get(theme, Decimal("0")) + share
    return buckets


def backfill_net_worth_history(
    assets: Sequence[Asset],
    existing_dates: Iterable[date],
    today: Optional[date] = None,
) -> List[NetWorthPoint]:
    """Reconstruct one history point per past purchase date.

    Each point values the shares held on that date at today's prices. Dates
    that already have a point, and today or later, are skipped.
    """
    today = today or date.today()
    existing = set(existing_dates)
    purchase_dates = sorted({t.purchase_date for a in assets if a.is_stock for t in a.transactions})

    points: List[NetWorthPoint] = []
    for day in purchase_dates:
        if day >= today or day in existing:
            continue
        value = Decimal("0")
        for asset in assets:
            if not asset.is_stock or asset.ticker is None or not asset.ticker.current_price:
                continue
            shares = sum((t.count for t in asset.transactions if t.purchase_date <= day), Decimal("0"))
            value += asset.ticker.current_price * shares
        if value > 0:
            points.append(NetWorthPoint(date=day, value=to_cents(value)))
    return points


class PortfolioAnalyticsEngine:
    """Read-only aggregations over one PortfolioSnapshot."""

    def __init__(
        self,
        snapshot: PortfolioSnapshot,
        history: Optional[Sequence[NetWorthPoint]] = None,
        today: Optional[date] = None,
    ):
        self.snapshot = snapshot
        self.history = list(history or [])
        self.today = today or date.today()
        self._reconciliations: Dict[str, GrantReconciliation] = {}

    # ------------------------------------------------------------------
    # Totals
    # ------------------------------------------------------------------

    @property
    def net_worth(self) -> Decimal:
        return sum((market_value(a) for a in self.snapshot.assets), Decimal("0"))

    @property
    def stock_value(self) -> Decimal:
        return sum((market_value(a) for a in self.snapshot.stock_assets), Decimal("0"))

    def _reconciliation(self, symbol: str) -> GrantReconciliation:
        if symbol not in self._reconciliations:
            self._reconciliations[symbol] = reconcile_ticker(self.snapshot.assets, symbol)
        return self._reconciliations[symbol]

    def _position_row(self, asset: Asset, net_worth: Decimal) -> Dict:
        value = market_value(asset)
        row = {
            "asset_id": asset.id,
            "name": asset.name,
            "asset_type": asset.asset_type,
            "symbol": asset.symbol,
            "location": asset.location_name,
            "ownership": asset.ownership,
            "market_value": _money(value),
            "allocation_pct": _pct(value, net_worth),
        }
        if asset.is_stock:
            basis = cost_basis(asset)
            gain = unrealized_gain(asset)
            price = asset.ticker.current_price if asset.ticker else None
            row.update({
                "shares": float(asset.total_shares),
                "current_price": float(price) if price is not None else None,
                "cost_basis": _money(basis),
                "unrealized_gain": _money(gain),
                "unrealized_gain_pct": _pct(gain, basis),
                "subtypes": sorted({st.subtype.value for st in asset.stock_subtypes if st.transactions}),
            })
            if asset.rsu_grants and asset.symbol:
                reconciliation = self._reconciliation(asset.symbol)
                vestings = (reconciliation.for_grant(g.id) for g in asset.rsu_grants)
                row["rsu_grants"] = [v.to_dict() for v in vestings if v is not None]
        return row

    def position_summary(self) -> Dict:
        """Net worth, stock vs cash-like split, unrealized stock P&L and top-5 holdings."""
        net_worth = self.net_worth
        stock_value = self.stock_value
        cash_like_value = net_worth - stock_value
        unrealized = sum((unrealized_gain(a) for a in self.snapshot.stock_assets), Decimal("0"))

        rows = [self._position_row(a, net_worth) for a in self.snapshot.assets]
        rows.sort(key=lambda r: (-r["market_value"], r["name"]))
        top_holdings = [
            {
                "name": r["name"],
                "symbol": r["symbol"],
                "asset_type": r["asset_type"],
                "market_value": r["market_value"],
                "allocation_pct": r["allocation_pct"],
            }
            for r in rows[:TOP_HOLDINGS]
            if r["market_value"] > 0
        ]

        return {
            "as_of": self.today.isoformat(),
            "net_worth": _money(net_worth),
            "stock_value": _money(stock_value),
            "cash_like_value": _money(cash_like_value),
            "stock_allocation_pct": _pct(stock_value, net_worth),
            "unrealized_stock_pnl": _money(unrealized),
            "asset_count": len(self.snapshot.assets),
            "stock_position_count": len(self.snapshot.stock_assets),
            "top_holdings": top_holdings,
        }

    # ------------------------------------------------------------------
    # Row projections
    # ------------------------------------------------------------------

    def positions(
        self,
        symbols: Optional[Sequence[str]] = None,
        asset_types: Optional[Sequence[str]] = None,
        location_names: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> Dict:
        """Position rows, largest value first, capped at 500 rows."""
        limit = _clamp_limit(limit, DEFAULT_POSITION_ROWS, MAX_POSITION_ROWS)
        wanted_symbols = _normalized(symbols)
        wanted_types = _normalized(asset_types)
        wanted_locations = _normalized(location_names)

        net_worth = self.net_worth
        rows = []
        for asset in self.snapshot.assets:
            if wanted_symbols is not None and (asset.symbol or "").lower() not in wanted_symbols:
                continue
            if wanted_types is not None and asset.asset_type.lower() not in wanted_types:
                continue
            if wanted_locations is not None and asset.location_name.lower() not in wanted_locations:
                continue
            rows.append(self._position_row(asset, net_worth))

        rows.sort(key=lambda r: (-r["market_value"], r["name"], r["asset_id"]))
        return {
            "total_matches": len(rows),
            "truncated": len(rows) > limit,
            "positions": rows[:limit],
        }

    def _lot_rows(self, symbols: Optional[Sequence[str]] = None) -> List[Dict]:
        wanted_symbols = _normalized(symbols)
        rows = []
        for asset in self.snapshot.stock_assets:
            if wanted_symbols is not None and (asset.symbol or "").lower() not in wanted_symbols:
                continue
            price = asset.ticker.current_price if asset.ticker else None
            for subtype in asset.stock_subtypes:
                for tx in subtype.transactions:
                    basis = tx.count * tx.cost_price
                    days_held = (self.today - tx.purchase_date).days
                    row = {
                        "transaction_id": tx.id,
                        "symbol": asset.symbol,
                        "asset_name": asset.name,
                        "location": asset.location_name,
                        "subtype": subtype.subtype.value,
                        "count": float(tx.count),
                        "cost_price": float(tx.cost_price),
                        "purchase_date": tx.purchase_date.isoformat(),
                        "capital_gains_status": classify(tx.purchase_date, self.today).value,
                        "days_held": days_held,
                        "days_to_long_term": max(0, 365 - days_held),
                        "cost_basis": _money(basis),
                        "current_price": float(price) if price is not None else None,
                        "market_value": None,
                        "unrealized_gain": None,
                        "gain_pct": None,
                    }
                    if price:
                        value = tx.count * price
                        gain = value - basis
                        row["market_value"] = _money(value)
                        row["unrealized_gain"] = _money(gain)
                        row["gain_pct"] = _pct(gain, basis) if basis > 0 else None
                    rows.append(row)
        return rows

    def transactions(
        self,
        symbols: Optional[Sequence[str]] = None,
        subtypes: Optional[Sequence[str]] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> Dict:
        """Lot rows, newest purchase first, capped at 1000 rows."""
        limit = _clamp_limit(limit, DEFAULT_TRANSACTION_ROWS, MAX_TRANSACTION_ROWS)
        wanted_subtypes = _normalized(subtypes)

        rows = []
        for row in self._lot_rows(symbols):
            if wanted_subtypes is not None and row["subtype"].lower() not in wanted_subtypes:
                continue
            purchased = date.fromisoformat(row["purchase_date"])
            if start_date and purchased < start_date:
                continue
            if end_date and purchased > end_date:
                continue
            rows.append(row)

        # Stable secondary keys keep equal-date lots in a deterministic order
        rows.sort(key=lambda r: (r["symbol"] or "", r["transaction_id"]))
        rows.sort(key=lambda r: r["purchase_date"], reverse=True)
        return {
            "total_matches": len(rows),
            "truncated": len(rows) > limit,
            "transactions": rows[:limit],
        }

    # ------------------------------------------------------------------
    # Time series and exposure
    # ------------------------------------------------------------------

    def net_worth_timeseries(self, range_key: str = "1Y") -> Dict:
        """History points inside the window ending at the latest point.

        Fewer than two points after filtering falls back to the last two raw
        points (or everything when the history is shorter).
        """
        range_key = (range_key or "1Y").upper()
        if range_key not in TIMESERIES_RANGES:
            raise InputValidationError(
                f"Unknown range '{range_key}'. Use one of {', '.join(TIMESERIES_RANGES)}."
            )

        points = sorted(self.history, key=lambda p: p.date)
        offset = TIMESERIES_RANGES[range_key]
        if points and offset is not None:
            start = (pd.Timestamp(points[-1].date) - offset).date()
            filtered = [p for p in points if p.date >= start]
        else:
            filtered = list(points)

        fallback = False
        if len(filtered) < 2:
            fallback = len(points) >= 2
            filtered = points[-2:]

        series = [{"date": p.date.isoformat(), "value": _money(p.value)} for p in filtered]
        result = {"range": range_key, "points": series, "fallback_to_last_points": fallback}
        if len(filtered) >= 2:
            start_value, end_value = filtered[0].value, filtered[-1].value
            result.update({
                "start_value": _money(start_value),
                "end_value": _money(end_value),
                "change": _money(end_value - start_value),
                "change_pct": _pct(end_value - start_value, start_value),
            })
        return result

    def exposure_breakdown(self, dimension: str, include_cash: bool = True) -> Dict:
        """Bucket portfolio value by ticker, theme, asset type or location."""
        if dimension not in EXPOSURE_DIMENSIONS:
            raise InputValidationError(
                f"Unknown dimension '{dimension}'. Use one of {', '.join(EXPOSURE_DIMENSIONS)}."
            )

        assets = self.snapshot.assets if include_cash else self.snapshot.stock_assets
        cash_like = sum((market_value(a) for a in self.snapshot.assets if not a.is_stock), Decimal("0"))
        buckets: Dict[str, Decimal] = {}

        if dimension == "theme":
            buckets = theme_distribution(self.snapshot.stock_assets)
            if include_cash and cash_like > 0:
                buckets[CASH_BUCKET] = cash_like
        elif dimension == "ticker":
            for asset in self.snapshot.stock_assets:
                key = asset.symbol or asset.name
                buckets[key] = buckets.get(key, Decimal("0")) + market_value(asset)
            if include_cash and cash_like > 0:
                buckets[CASH_BUCKET] = cash_like
        else:
            for asset in assets:
                key = asset.asset_type if dimension == "asset_type" else asset.location_name
                buckets[key] = buckets.get(key, Decimal("0")) + market_value(asset)

        total = sum(buckets.values(), Decimal("0"))
        rows = [
            {"name": name, "value": _money(value), "pct": _pct(value, total)}
            for name, value in buckets.items()
            if value > 0
        ]
        rows.sort(key=lambda r: (-r["value"], r["name"]))
        return {
            "dimension": dimension,
            "include_cash": include_cash,
            "total_value": _money(total),
            "buckets": rows,
        }

    # ------------------------------------------------------------------
    # Tax lots
    # ------------------------------------------------------------------

    def tax_lot_analysis(
        self,
        symbols: Optional[Sequence[str]] = None,
        harvest_threshold_pct: float = -5.0,
        upcoming_long_term_days: int = 45,
    ) -> Dict:
        """Harvest candidates, upcoming long-term promotions and top winners/losers."""
        lots = self._lot_rows(symbols)
        priced = [lot for lot in lots if lot["unrealized_gain"] is not None]

        harvest = [
            lot for lot in priced
            if lot["gain_pct"] is not None and lot["gain_pct"] <= harvest_threshold_pct
        ]
        harvest.sort(key=lambda lot: lot["gain_pct"])

        upcoming = [
            lot for lot in priced
            if lot["capital_gains_status"] == CapitalGainsStatus.SHORT_TERM.value
            and lot["days_to_long_term"] <= upcoming_long_term_days
            and lot["unrealized_gain"] > 0
        ]
        upcoming.sort(key=lambda lot: lot["days_to_long_term"])

        winners = sorted((lot for lot in priced if lot["unrealized_gain"] > 0),
                         key=lambda lot: lot["unrealized_gain"], reverse=True)
        losers = sorted((lot for lot in priced if lot["unrealized_gain"] < 0),
                        key=lambda lot: lot["unrealized_gain"])

        short_term = sum(lot["unrealized_gain"] for lot in priced
                         if lot["capital_gains_status"] == CapitalGainsStatus.SHORT_TERM.value)
        long_term = sum(lot["unrealized_gain"] for lot in priced
                        if lot["capital_gains_status"] == CapitalGainsStatus.LONG_TERM.value)

        return {
            "as_of": self.today.isoformat(),
            "harvest_threshold_pct": harvest_threshold_pct,
            "upcoming_long_term_days": upcoming_long_term_days,
            "lot_count": len(lots),
            "lots_without_price": len(lots) - len(priced),
            "harvest_candidates": harvest[:TAX_LOT_LIST_SIZE],
            "upcoming_long_term": upcoming[:TAX_LOT_LIST_SIZE],
            "top_winners": winners[:TAX_LOT_LIST_SIZE],
            "top_losers": losers[:TAX_LOT_LIST_SIZE],
            "capital_gains_exposure": {
                "short_term_unrealized": round(short_term, 2),
                "long_term_unrealized": round(long_term, 2),
            },
        }

    def rsu_vesting(self) -> List[Dict]:
        """Reconciled vesting progress for every RSU grant, one row per grant."""
        rows = []
        symbols = sorted({a.symbol for a in self.snapshot.stock_assets
                          if a.symbol and any(st.subtype == StockSubtypeKind.RSU for st in a.stock_subtypes)})
        for symbol in symbols:
            for vesting in self._reconciliation(symbol).vesting:
                row = vesting.to_dict()
                row["symbol"] = symbol
                rows.append(row)
        return rows

    # ------------------------------------------------------------------
    # Prompt context
    # ------------------------------------------------------------------

    def portfolio_context(self, symbols: Optional[Sequence[str]] = None) -> Dict:
        """Compact projection handed to the reasoning service.

        With ``symbols`` only the matching positions and lots are included;
        without, the full unfiltered projection.
        """
        return {
            "summary": self.position_summary(),
            "positions": self.positions(symbols=symbols, limit=MAX_POSITION_ROWS)["positions"],
            "lots": self.transactions(symbols=symbols, limit=MAX_TRANSACTION_ROWS)["transactions"],
            "watchlist": sorted(t.symbol for t in self.snapshot.tickers
                                if self.snapshot.is_watchlist_only(t.id)),
        }
