"""
Abstract portfolio store.

The agent, the sale resolver and the write executor only talk to this
interface; the store handle is passed in explicitly rather than looked up from
a module-level client.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Sequence

from mne_agents.types.portfolio_types import NetWorthPoint, PortfolioSnapshot

# Tables owned by a user; rows in the remaining tables hang off one of these
USER_SCOPED_TABLES = ("assets", "locations", "tickers", "themes", "net_worth_snapshots")
CHILD_TABLES = ("stock_subtypes", "transactions", "rsu_grants", "ticker_themes")
ALL_TABLES = USER_SCOPED_TABLES + CHILD_TABLES


class PortfolioStore(ABC):
    """Persistence contract for the portfolio ledger."""

    @abstractmethod
    def fetch_snapshot(self) -> PortfolioSnapshot:
        """Assets (with location, ticker + themes, subtypes, lots, grants), all tickers and themes."""
        pass

    @abstractmethod
    def fetch_net_worth_history(self) -> List[NetWorthPoint]:
        """Recorded net-worth points ordered by date."""
        pass

    @abstractmethod
    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert one row and return it as stored (including its id)."""
        pass

    @abstractmethod
    def upsert(self, table: str, row: Dict[str, Any], on_conflict: str) -> Dict[str, Any]:
        """Insert or update on the given unique columns and return the stored row."""
        pass

    @abstractmethod
    def update(self, table: str, row_id: str, fields: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def delete(self, table: str, row_id: str) -> None:
        """Delete a row by id. Deleting an asset also removes its subtypes, lots and grants."""
        pass

    @abstractmethod
    def find_or_create_location(self, name: str, account_type: str) -> str:
        """Id of the location with this name and account type; the lowest id wins on duplicates."""
        pass

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Group several writes. Stores without transactions just run them in order."""
        yield

    def record_net_worth_snapshot(self, day: date, value: Decimal) -> Dict[str, Any]:
        return self.upsert(
            "net_worth_snapshots",
            {"date": day.isoformat(), "value": float(value)},
            on_conflict="user_id,date",
        )

    def record_net_worth_points(self, points: Sequence[NetWorthPoint]) -> int:
        for point in points:
            self.record_net_worth_snapshot(point.date, point.value)
        return len(points)


def validate_table(table: str) -> None:
    if table not in ALL_TABLES:
        raise ValueError(f"Unknown table '{table}'")
