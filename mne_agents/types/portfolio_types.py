"""
Type definitions for the portfolio ledger.

This module contains the entities read from the portfolio store:
- Locations (brokerages / banks), tickers and themes
- Assets, their stock subtype buckets, tax lots (transactions) and RSU grants
- The immutable PortfolioSnapshot a single command works against
- Conversation turns exchanged with the reasoning service

Every entity has a ``from_row`` constructor that validates the raw store row,
so nothing downstream has to deal with untyped dictionaries.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


STOCK_ASSET_TYPE = "Stock"
CASH_LIKE_ASSET_TYPES = ("Cash", "401k", "CD", "Deposit", "HSA")


class StockSubtypeKind(Enum):
    """How the shares in a bucket were acquired."""
    MARKET = "Market"
    ESPP = "ESPP"
    RSU = "RSU"


class CapitalGainsStatus(Enum):
    """Holding-period classification of a lot."""
    SHORT_TERM = "Short Term"
    LONG_TERM = "Long Term"


class Ownership(Enum):
    INDIVIDUAL = "Individual"
    JOINT = "Joint"


class AccountType(Enum):
    INVESTMENT = "Investment"
    CHECKING = "Checking"
    SAVINGS = "Savings"
    MISC = "Misc"


def to_decimal(value: Any, field_name: str, allow_none: bool = False) -> Optional[Decimal]:
    """Convert a numeric store value (str, int, float, Decimal) to Decimal."""
    if value is None or value == "":
        if allow_none:
            return None
        raise ValueError(f"{field_name} is required")
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be numeric, got {value!r}")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"{field_name} must be numeric, got {value!r}")
    if not result.is_finite():
        raise ValueError(f"{field_name} must be finite, got {value!r}")
    return result


def to_date(value: Any, field_name: str, allow_none: bool = False) -> Optional[date]:
    """Convert an ISO date / timestamp string (or date) to a date."""
    if value is None or value == "":
        if allow_none:
            return None
        raise ValueError(f"{field_name} is required")
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        raise ValueError(f"{field_name} must be an ISO date (YYYY-MM-DD), got {value!r}")


@dataclass(frozen=True)
class Location:
    id: str
    name: str
    account_type: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Location':
        return cls(
            id=str(row.get("id", "")),
            name=str(row.get("name") or "Unknown"),
            account_type=row.get("account_type"),
        )


@dataclass(frozen=True)
class Theme:
    id: str
    name: str

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Theme':
        if not row.get("name"):
            raise ValueError("theme name is required")
        return cls(id=str(row.get("id", "")), name=str(row["name"]).strip())


@dataclass(frozen=True)
class Ticker:
    """A tracked symbol. Watchlist-only tickers have no Stock asset referencing them."""
    id: str
    symbol: str
    current_price: Optional[Decimal] = None
    last_updated: Optional[date] = None
    themes: Tuple[Theme, ...] = ()
    watchlist_only: bool = False

    @property
    def theme_names(self) -> List[str]:
        return [theme.name for theme in self.themes]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Ticker':
        symbol = str(row.get("symbol") or "").strip().upper()
        if not symbol:
            raise ValueError("ticker symbol is required")

        themes: List[Theme] = []
        # Supabase returns the join table; each link nests its theme
        for link in row.get("ticker_themes") or []:
            theme_row = link.get("theme") if isinstance(link, dict) else None
            if theme_row:
                themes.append(Theme.from_row(theme_row))

        return cls(
            id=str(row.get("id", "")),
            symbol=symbol,
            current_price=to_decimal(row.get("current_price"), "current_price", allow_none=True),
            last_updated=to_date(row.get("last_updated"), "last_updated", allow_none=True),
            themes=tuple(themes),
            watchlist_only=bool(row.get("watchlist_only", False)),
        )


@dataclass(frozen=True)
class Transaction:
    """A tax lot: shares acquired on one date at one price."""
    id: str
    count: Decimal
    cost_price: Decimal
    purchase_date: date
    capital_gains_status: CapitalGainsStatus = CapitalGainsStatus.SHORT_TERM
    subtype_id: Optional[str] = None
    created_at: Optional[str] = None

    def __post_init__(self):
        if self.count <= 0:
            raise ValueError(f"transaction {self.id} count must be positive, got {self.count}")

    @property
    def cost_basis(self) -> Decimal:
        return self.count * self.cost_price

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Transaction':
        status_raw = row.get("capital_gains_status") or CapitalGainsStatus.SHORT_TERM.value
        try:
            status = CapitalGainsStatus(status_raw)
        except ValueError:
            raise ValueError(f"unknown capital_gains_status {status_raw!r}")
        return cls(
            id=str(row.get("id", "")),
            count=to_decimal(row.get("count"), "count"),
            cost_price=to_decimal(row.get("cost_price"), "cost_price"),
            purchase_date=to_date(row.get("purchase_date"), "purchase_date"),
            capital_gains_status=status,
            subtype_id=row.get("subtype_id"),
            created_at=row.get("created_at"),
        )


@dataclass(frozen=True)
class RsuGrant:
    id: str
    grant_date: date
    total_shares: Decimal
    vest_start: date
    vest_end: date
    cliff_date: Optional[date] = None
    ended_at: Optional[date] = None
    subtype_id: Optional[str] = None

    @property
    def ended(self) -> bool:
        return self.ended_at is not None

    @property
    def effective_vest_end(self) -> date:
        """Vest window end, truncated at the end date of a terminated grant."""
        if self.ended_at is not None:
            return min(self.vest_end, self.ended_at)
        return self.vest_end

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'RsuGrant':
        total = to_decimal(row.get("total_shares"), "total_shares")
        if total < 0:
            raise ValueError("total_shares cannot be negative")
        return cls(
            id=str(row.get("id", "")),
            grant_date=to_date(row.get("grant_date"), "grant_date"),
            total_shares=total,
            vest_start=to_date(row.get("vest_start"), "vest_start"),
            vest_end=to_date(row.get("vest_end"), "vest_end"),
            cliff_date=to_date(row.get("cliff_date"), "cliff_date", allow_none=True),
            ended_at=to_date(row.get("ended_at"), "ended_at", allow_none=True),
            subtype_id=row.get("subtype_id"),
        )


@dataclass(frozen=True)
class StockSubtype:
    """Bucket of a stock asset by acquisition mechanism."""
    id: str
    subtype: StockSubtypeKind
    transactions: Tuple[Transaction, ...] = ()
    rsu_grants: Tuple[RsuGrant, ...] = ()
    asset_id: Optional[str] = None

    @property
    def total_shares(self) -> Decimal:
        return sum((t.count for t in self.transactions), Decimal("0"))

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'StockSubtype':
        try:
            kind = StockSubtypeKind(row.get("subtype"))
        except ValueError:
            raise ValueError(f"unknown stock subtype {row.get('subtype')!r}")
        transactions = [Transaction.from_row(t) for t in row.get("transactions") or []]
        # Stable insertion order; rows without created_at keep their store order
        transactions = sorted(transactions, key=lambda t: t.created_at or "")
        return cls(
            id=str(row.get("id", "")),
            subtype=kind,
            transactions=tuple(transactions),
            rsu_grants=tuple(RsuGrant.from_row(g) for g in row.get("rsu_grants") or []),
            asset_id=row.get("asset_id"),
        )


@dataclass(frozen=True)
class Asset:
    id: str
    name: str
    asset_type: str
    location: Optional[Location] = None
    ownership: str = Ownership.INDIVIDUAL.value
    price: Optional[Decimal] = None
    ticker: Optional[Ticker] = None
    stock_subtypes: Tuple[StockSubtype, ...] = ()
    notes: Optional[str] = None

    @property
    def is_stock(self) -> bool:
        return self.asset_type == STOCK_ASSET_TYPE

    @property
    def symbol(self) -> Optional[str]:
        return self.ticker.symbol if self.ticker else None

    @property
    def location_name(self) -> str:
        return self.location.name if self.location else "Unknown"

    @property
    def transactions(self) -> List[Transaction]:
        return [t for st in self.stock_subtypes for t in st.transactions]

    @property
    def total_shares(self) -> Decimal:
        return sum((st.total_shares for st in self.stock_subtypes), Decimal("0"))

    @property
    def rsu_grants(self) -> List[RsuGrant]:
        return [g for st in self.stock_subtypes for g in st.rsu_grants]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Asset':
        if not row.get("name"):
            raise ValueError(f"asset {row.get('id')} has no name")
        if not row.get("asset_type"):
            raise ValueError(f"asset {row.get('id')} has no asset_type")

        location = None
        if isinstance(row.get("location"), dict):
            location = Location.from_row(row["location"])
        elif row.get("location_name"):
            location = Location(id="", name=str(row["location_name"]), account_type=row.get("account_type"))

        ticker = Ticker.from_row(row["ticker"]) if isinstance(row.get("ticker"), dict) else None

        return cls(
            id=str(row.get("id", "")),
            name=str(row["name"]),
            asset_type=str(row["asset_type"]),
            location=location,
            ownership=str(row.get("ownership") or Ownership.INDIVIDUAL.value),
            price=to_decimal(row.get("price"), "price", allow_none=True),
            ticker=ticker,
            stock_subtypes=tuple(StockSubtype.from_row(st) for st in row.get("stock_subtypes") or []),
            notes=row.get("notes"),
        )


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Read-only view of the portfolio for the duration of one command."""
    assets: Tuple[Asset, ...] = ()
    tickers: Tuple[Ticker, ...] = ()
    themes: Tuple[Theme, ...] = ()

    @property
    def stock_assets(self) -> List[Asset]:
        return [a for a in self.assets if a.is_stock]

    def ticker_for_symbol(self, symbol: str) -> Optional[Ticker]:
        wanted = (symbol or "").strip().upper()
        for ticker in self.tickers:
            if ticker.symbol == wanted:
                return ticker
        for asset in self.assets:
            if asset.ticker and asset.ticker.symbol == wanted:
                return asset.ticker
        return None

    def stock_assets_for_symbol(self, symbol: str) -> List[Asset]:
        wanted = (symbol or "").strip().upper()
        return [a for a in self.assets if a.is_stock and a.symbol == wanted]

    def is_watchlist_only(self, ticker_id: str) -> bool:
        """True iff no Stock asset references the ticker."""
        return not any(a.is_stock and a.ticker and a.ticker.id == ticker_id for a in self.assets)

    @classmethod
    def from_rows(
        cls,
        asset_rows: Iterable[Dict[str, Any]],
        ticker_rows: Iterable[Dict[str, Any]] = (),
        theme_rows: Iterable[Dict[str, Any]] = (),
    ) -> 'PortfolioSnapshot':
        return cls(
            assets=tuple(Asset.from_row(r) for r in asset_rows),
            tickers=tuple(Ticker.from_row(r) for r in ticker_rows),
            themes=tuple(Theme.from_row(r) for r in theme_rows),
        )


@dataclass(frozen=True)
class NetWorthPoint:
    date: date
    value: Decimal

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'NetWorthPoint':
        return cls(date=to_date(row.get("date"), "date"), value=to_decimal(row.get("value"), "value"))


@dataclass(frozen=True)
class ConversationTurn:
    role: str  # 'user' | 'assistant'
    content: str

    def __post_init__(self):
        if self.role not in ("user", "assistant"):
            raise ValueError(f"role must be 'user' or 'assistant', got {self.role!r}")

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}
