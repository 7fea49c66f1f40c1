"""
Applies confirmed writes.

A write-tool invocation is validated into a ``PendingWrite`` (its pydantic
input dumped to JSON) and shown to the user as a one-line confirmation. Only
after approval does ``apply_pending_write`` run it against the store.
"""

import logging
import re
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from mne_agents.errors import AmbiguityError, InputValidationError, NotFoundError
from mne_agents.services.portfolio_store import PortfolioStore
from mne_agents.services.sale_resolver import SaleLotResolver
from mne_agents.tools.ledger import classify
from mne_agents.tools.tool_catalog import (
    AddCashAssetInput, AddRsuGrantInput, AddStockTransactionInput, AddTickerThemesInput,
    AddTickerToWatchlistInput, SellSharesInput, UpdateAssetValueInput, WRITE_TOOL_NAMES, parse_tool_input
)
from mne_agents.types.action_types import PendingWrite, WriteConfirmResult
from mne_agents.types.portfolio_types import (
    Asset, PortfolioSnapshot, STOCK_ASSET_TYPE, StockSubtypeKind, Theme
)

logger = logging.getLogger(__name__)

DEFAULT_LOCATION = "Unknown"
MOCK_WRITE = "mock"


def _fmt_number(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else f"{value:g}"


def _money(value: float) -> str:
    return f"${float(value):,.2f}"


# ----------------------------------------------------------------------
# Confirmation messages
# ----------------------------------------------------------------------

def confirmation_message_for(kind: str, payload: Dict[str, Any], today: Optional[date] = None) -> str:
    """One-line, human-readable summary of a pending write."""
    if kind == "add_stock_transaction":
        purchase_date = date.fromisoformat(payload["purchase_date"])
        status = classify(purchase_date, today).value
        message = (
            f"Add {_fmt_number(payload['count'])} {payload['symbol']} shares at "
            f"{_money(payload['cost_price'])}/share purchased on {payload['purchase_date']} "
            f"({status}, {payload.get('subtype') or 'Market'})"
        )
        if payload.get("location_name"):
            message += f" at {payload['location_name']}"
        return message

    if kind == "add_cash_asset":
        return (
            f"Add {payload['asset_type']} account \"{payload['name']}\" at {payload['location_name']} "
            f"worth {_money(payload['price'])}"
        )

    if kind == "add_ticker_to_watchlist":
        return f"Add {payload['symbol']} to watchlist"

    if kind == "add_ticker_themes":
        return f"Tag {payload['symbol']} with themes: {', '.join(payload['themes'])}"

    if kind == "add_rsu_grant":
        return (
            f"Add RSU grant of {_fmt_number(payload['total_shares'])} {payload['symbol']} shares granted "
            f"{payload['grant_date']}, vesting {payload['vest_start']} to {payload['vest_end']}"
        )

    if kind == "sell_shares":
        lots = payload.get("lots") or [{"purchase_date": payload["purchase_date"], "count": payload["count"]}]
        total = sum(float(lot["count"]) for lot in lots)
        lot_text = ", ".join(f"{lot['purchase_date']}×{_fmt_number(lot['count'])}" for lot in lots)
        message = f"Sell {_fmt_number(total)} {payload['symbol']} shares @ {_money(payload['sale_price'])}"
        if payload.get("source_account"):
            message += f" from {payload['source_account']}"
        message += f" (lots: {lot_text})"
        if payload.get("transfer_to"):
            amount = payload.get("transfer_amount")
            if amount is None:
                amount = round(total * float(payload["sale_price"]), 2)
            message += f"; transfer {_money(amount)} to \"{payload['transfer_to']}\""
        else:
            message += "; no proceeds transfer"
        return message

    if kind == "update_asset_value":
        return f"Set \"{payload['asset_name']}\" value to {_money(payload['price'])}"

    return f"Execute {kind}"


def build_write_confirmation(tool_name: str, raw_input: Optional[Dict[str, Any]],
                             today: Optional[date] = None) -> WriteConfirmResult:
    """Validate a write-tool invocation and wrap it for confirmation.

    Raises:
        InputValidationError: Not a write tool, or the input is invalid.
    """
    if tool_name not in WRITE_TOOL_NAMES:
        raise InputValidationError(f"'{tool_name}' is not a write tool")
    params = parse_tool_input(tool_name, raw_input)
    payload = params.model_dump(mode="json", exclude_none=True)
    pending = PendingWrite(kind=tool_name, payload=payload)
    return WriteConfirmResult(
        confirmation_message=confirmation_message_for(tool_name, payload, today),
        pending_write=pending,
    )


# ----------------------------------------------------------------------
# Themes
# ----------------------------------------------------------------------

def normalize_theme_key(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", " ", (name or "").lower()).strip()


def match_theme(name: str, themes: Iterable[Theme]) -> Optional[Theme]:
    """Existing theme for ``name``: exact normalised key first, then containment either way."""
    key = normalize_theme_key(name)
    if not key:
        return None
    by_key = {normalize_theme_key(t.name): t for t in themes if normalize_theme_key(t.name)}
    if key in by_key:
        return by_key[key]
    for existing_key, theme in by_key.items():
        if existing_key in key or key in existing_key:
            return theme
    return None


def link_ticker_themes(
    store: PortfolioStore,
    ticker_id: str,
    names: Iterable[str],
    themes: Iterable[Theme],
    linked_theme_ids: Iterable[str],
) -> Tuple[List[str], List[str]]:
    """Link themes to a ticker, reusing the user's vocabulary.

    Returns:
        (linked theme names, theme names that were already linked)
    """
    known: List[Theme] = list(themes)
    linked: Set[str] = set(linked_theme_ids)
    added, skipped = [], []

    for name in names:
        if not normalize_theme_key(name):
            continue
        theme = match_theme(name, known)
        if theme is None:
            row = store.upsert("themes", {"name": name.strip()}, on_conflict="user_id,name")
            theme = Theme.from_row(row)
            known.append(theme)
            logger.info(f"[Write Executor] Created theme '{theme.name}'")
        if theme.id in linked:
            skipped.append(theme.name)
            continue
        store.upsert("ticker_themes", {"ticker_id": ticker_id, "theme_id": theme.id},
                     on_conflict="ticker_id,theme_id")
        linked.add(theme.id)
        added.append(theme.name)
    return added, skipped


# ----------------------------------------------------------------------
# Find-or-create helpers
# ----------------------------------------------------------------------

def _ensure_ticker(store: PortfolioStore, snapshot: PortfolioSnapshot, symbol: str, owned: bool,
                   background=None, today: Optional[date] = None, auto_theme: bool = True) -> Tuple[str, bool]:
    ticker = snapshot.ticker_for_symbol(symbol)
    if ticker is not None:
        if owned and ticker.watchlist_only:
            store.update("tickers", ticker.id, {"watchlist_only": False})
        return ticker.id, False

    row = store.upsert("tickers", {"symbol": symbol, "watchlist_only": not owned}, on_conflict="user_id,symbol")
    logger.info(f"[Write Executor] Tracking new ticker {symbol}")
    if background is not None:
        background.refresh_price(store, row["id"], symbol, today)
        if auto_theme:
            background.assign_industry_theme(store, row["id"], symbol)
    return row["id"], True


def _ensure_stock_asset(store: PortfolioStore, snapshot: PortfolioSnapshot, ticker_id: str, symbol: str,
                        asset_name: Optional[str], location_name: Optional[str], account_type: str,
                        ownership: str) -> Tuple[str, Optional[Asset]]:
    existing = [a for a in snapshot.assets if a.is_stock and a.ticker and a.ticker.id == ticker_id]
    if location_name:
        at_location = [a for a in existing if a.location_name.lower() == location_name.strip().lower()]
        if at_location:
            return at_location[0].id, at_location[0]
    elif existing:
        return existing[0].id, existing[0]

    location_id = store.find_or_create_location(location_name or DEFAULT_LOCATION, account_type)
    row = store.insert("assets", {
        "name": asset_name or f"{symbol} Stock",
        "asset_type": STOCK_ASSET_TYPE,
        "location_id": location_id,
        "ownership": ownership,
        "ticker_id": ticker_id,
    })
    logger.info(f"[Write Executor] Created stock asset {row['id']} for {symbol}")
    return row["id"], None


def _ensure_subtype(store: PortfolioStore, asset: Optional[Asset], asset_id: str, kind: str) -> str:
    if asset is not None:
        for subtype in asset.stock_subtypes:
            if subtype.subtype.value == kind:
                return subtype.id
    row = store.insert("stock_subtypes", {"asset_id": asset_id, "subtype": kind})
    return row["id"]


# ----------------------------------------------------------------------
# Handlers
# ----------------------------------------------------------------------

def _add_stock_transaction(store, snapshot, params: AddStockTransactionInput, today, background) -> str:
    ticker_id, _ = _ensure_ticker(store, snapshot, params.symbol, owned=True, background=background, today=today)
    asset_id, asset = _ensure_stock_asset(
        store, snapshot, ticker_id, params.symbol, params.asset_name,
        params.location_name, params.account_type, params.ownership,
    )
    subtype_id = _ensure_subtype(store, asset, asset_id, params.subtype)
    status = classify(params.purchase_date, today)
    store.insert("transactions", {
        "subtype_id": subtype_id,
        "count": params.count,
        "cost_price": params.cost_price,
        "purchase_date": params.purchase_date.isoformat(),
        "capital_gains_status": status.value,
    })
    return (
        f"Added {_fmt_number(params.count)} {params.symbol} shares at {_money(params.cost_price)}/share "
        f"({status.value}, {params.subtype})."
    )


def _add_cash_asset(store, snapshot, params: AddCashAssetInput, today, background) -> str:
    location_id = store.find_or_create_location(params.location_name, params.account_type)
    store.insert("assets", {
        "name": params.name,
        "asset_type": params.asset_type,
        "location_id": location_id,
        "ownership": params.ownership,
        "price": params.price,
        "notes": params.notes,
    })
    return f"Added {params.asset_type} account \"{params.name}\" worth {_money(params.price)}."


def _add_ticker_to_watchlist(store, snapshot, params: AddTickerToWatchlistInput, today, background) -> str:
    if snapshot.ticker_for_symbol(params.symbol) is not None:
        return f"{params.symbol} is already tracked."
    _ensure_ticker(store, snapshot, params.symbol, owned=False, background=background, today=today)
    return f"Added {params.symbol} to the watchlist."


def _add_ticker_themes(store, snapshot, params: AddTickerThemesInput, today, background) -> str:
    ticker = snapshot.ticker_for_symbol(params.symbol)
    if ticker is None:
        ticker_id, _ = _ensure_ticker(store, snapshot, params.symbol, owned=False, background=background, today=today,
                                      auto_theme=False)
        linked_ids: List[str] = []
    else:
        ticker_id, linked_ids = ticker.id, [t.id for t in ticker.themes]

    added, skipped = link_ticker_themes(store, ticker_id, params.themes, snapshot.themes, linked_ids)
    parts = []
    if added:
        parts.append(f"Tagged {params.symbol} with {', '.join(added)}.")
    if skipped:
        parts.append(f"Already tagged: {', '.join(skipped)}.")
    return " ".join(parts) or f"No new themes for {params.symbol}."


def _add_rsu_grant(store, snapshot, params: AddRsuGrantInput, today, background) -> str:
    ticker_id, _ = _ensure_ticker(store, snapshot, params.symbol, owned=True, background=background, today=today)
    asset_id, asset = _ensure_stock_asset(
        store, snapshot, ticker_id, params.symbol, params.asset_name,
        params.location_name, params.account_type, params.ownership,
    )
    subtype_id = _ensure_subtype(store, asset, asset_id, StockSubtypeKind.RSU.value)
    store.insert("rsu_grants", {
        "subtype_id": subtype_id,
        "grant_date": params.grant_date.isoformat(),
        "total_shares": params.total_shares,
        "vest_start": params.vest_start.isoformat(),
        "vest_end": params.vest_end.isoformat(),
        "cliff_date": params.cliff_date.isoformat() if params.cliff_date else None,
    })
    return f"Added RSU grant of {_fmt_number(params.total_shares)} {params.symbol} shares."


def _sell_shares(store, snapshot, params: SellSharesInput, today, background) -> str:
    return SaleLotResolver(store).execute(params, snapshot).message()


def _update_asset_value(store, snapshot, params: UpdateAssetValueInput, today, background) -> str:
    wanted = params.asset_name.strip().lower()
    named = [a for a in snapshot.assets if a.name.strip().lower() == wanted]
    matches = [a for a in named if not a.is_stock]
    if not matches:
        if named:
            raise InputValidationError(
                f"\"{params.asset_name}\" is a stock position; its value comes from the share price."
            )
        raise NotFoundError(f"No asset named \"{params.asset_name}\".")
    if len(matches) > 1:
        raise AmbiguityError(
            f"Several assets are named \"{params.asset_name}\".",
            candidates=[f"{a.name} ({a.location_name})" for a in matches],
        )
    asset = matches[0]
    store.update("assets", asset.id, {"price": params.price})
    return f"Updated \"{asset.name}\" to {_money(params.price)}."


HANDLERS: Dict[str, Callable[..., str]] = {
    "add_stock_transaction": _add_stock_transaction,
    "add_cash_asset": _add_cash_asset,
    "add_ticker_to_watchlist": _add_ticker_to_watchlist,
    "add_ticker_themes": _add_ticker_themes,
    "add_rsu_grant": _add_rsu_grant,
    "sell_shares": _sell_shares,
    "update_asset_value": _update_asset_value,
}


def apply_pending_write(store: PortfolioStore, pending: PendingWrite, today: Optional[date] = None,
                        background=None) -> str:
    """Run a confirmed write against the store.

    Args:
        store: Target PortfolioStore
        pending: The confirmed PendingWrite
        today: Ledger date used for capital-gains classification
        background: Optional BackgroundTaskRunner for price/theme side calls

    Returns:
        str: Outcome message for the user

    Raises:
        LedgerError: Validation, lookup or store failure. Nothing is retried.
    """
    if pending.kind == MOCK_WRITE:
        logger.info("[Write Executor] Mock write, store untouched")
        return "[MOCK] No changes were made."

    handler = HANDLERS.get(pending.kind)
    if handler is None:
        raise InputValidationError(f"Unknown write '{pending.kind}'")

    params = parse_tool_input(pending.kind, pending.payload)
    today = today or date.today()
    snapshot = store.fetch_snapshot()

    logger.info(f"[Write Executor] Applying {pending.kind}")
    with store.atomic():
        message = handler(store, snapshot, params, today, background)
    logger.info(f"[Write Executor] {pending.kind} done: {message}")
    return message
