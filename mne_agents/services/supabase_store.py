"""
Supabase-backed portfolio store.

The snapshot is fetched with one nested select per root table, the same shape
the app reads. Writes are keyed by id; rows of user-owned tables are stamped
with ``user_id`` and every update/delete on them is scoped to that user.
Child rows (subtypes, lots, grants, theme links) are scoped through their
parents.

Supabase's REST API cannot span several calls in one transaction, so
``atomic()`` is a plain passthrough here and callers keep every row operation
idempotent (absolute counts, deletes by id).
"""

import logging
from typing import Any, Dict, List

from supabase import Client

from mne_agents.errors import ExternalServiceError
from mne_agents.services.portfolio_store import PortfolioStore, USER_SCOPED_TABLES, validate_table
from mne_agents.types.portfolio_types import NetWorthPoint, PortfolioSnapshot
from utils.supabase.db_client import get_supabase_client, to_json_row

logger = logging.getLogger(__name__)

ASSET_SELECT = (
    "*, location:locations(*), "
    "ticker:tickers(*, ticker_themes(theme:themes(*))), "
    "stock_subtypes(*, transactions(*), rsu_grants(*))"
)
TICKER_SELECT = "*, ticker_themes(theme:themes(*))"

# Child tables carry no user_id; writes to them are limited to rows under the user's parents
PARENT_SCOPE = {
    "stock_subtypes": ("asset_id", "assets"),
    "transactions": ("subtype_id", "stock_subtypes"),
    "rsu_grants": ("subtype_id", "stock_subtypes"),
    "ticker_themes": ("ticker_id", "tickers"),
}


class SupabasePortfolioStore(PortfolioStore):
    """PortfolioStore over a supabase-py client for one user."""

    def __init__(self, client: Client, user_id: str):
        if not user_id:
            raise ValueError("user_id is required")
        self.client = client
        self.user_id = user_id

    @classmethod
    def from_env(cls, user_id: str) -> 'SupabasePortfolioStore':
        return cls(get_supabase_client(), user_id)

    def _scoped(self, table: str, query):
        if table in USER_SCOPED_TABLES:
            return query.eq("user_id", self.user_id)
        if table in PARENT_SCOPE:
            column, parent = PARENT_SCOPE[table]
            return query.in_(column, self._owned_ids(parent))
        return query

    def _owned_ids(self, table: str) -> List[str]:
        """Ids of this user's rows in ``table``, resolved through parent tables for child rows."""
        query = self._scoped(table, self.client.table(table).select("id"))
        return [row["id"] for row in self._execute(f"load owned {table} ids", query)]

    def _stamp(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        row = to_json_row(row)
        if table in USER_SCOPED_TABLES:
            row["user_id"] = self.user_id
        return row

    def _execute(self, description: str, query) -> List[Dict[str, Any]]:
        try:
            response = query.execute()
        except Exception as e:
            logger.error(f"[Supabase Store] {description} failed: {e}")
            raise ExternalServiceError(f"Portfolio store error while trying to {description}: {e}") from e
        return response.data or []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def fetch_snapshot(self) -> PortfolioSnapshot:
        assets = self._execute(
            "load assets",
            self.client.table("assets").select(ASSET_SELECT).eq("user_id", self.user_id).order("name"),
        )
        tickers = self._execute(
            "load tickers",
            self.client.table("tickers").select(TICKER_SELECT).eq("user_id", self.user_id).order("symbol"),
        )
        themes = self._execute(
            "load themes",
            self.client.table("themes").select("*").eq("user_id", self.user_id).order("name"),
        )
        logger.info(f"[Supabase Store] Loaded {len(assets)} assets, {len(tickers)} tickers, {len(themes)} themes")
        try:
            return PortfolioSnapshot.from_rows(assets, tickers, themes)
        except ValueError as e:
            raise ExternalServiceError(f"Portfolio store returned an invalid row: {e}") from e

    def fetch_net_worth_history(self) -> List[NetWorthPoint]:
        rows = self._execute(
            "load net worth history",
            self.client.table("net_worth_snapshots").select("date, value")
            .eq("user_id", self.user_id).order("date"),
        )
        try:
            return [NetWorthPoint.from_row(r) for r in rows]
        except ValueError as e:
            raise ExternalServiceError(f"Portfolio store returned an invalid history row: {e}") from e

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        validate_table(table)
        data = self._execute(f"insert into {table}", self.client.table(table).insert(self._stamp(table, row)))
        if not data:
            raise ExternalServiceError(f"Portfolio store returned no row after inserting into {table}")
        return data[0]

    def upsert(self, table: str, row: Dict[str, Any], on_conflict: str) -> Dict[str, Any]:
        validate_table(table)
        data = self._execute(
            f"upsert into {table}",
            self.client.table(table).upsert(self._stamp(table, row), on_conflict=on_conflict),
        )
        if not data:
            raise ExternalServiceError(f"Portfolio store returned no row after upserting into {table}")
        return data[0]

    def update(self, table: str, row_id: str, fields: Dict[str, Any]) -> None:
        validate_table(table)
        query = self.client.table(table).update(to_json_row(fields)).eq("id", row_id)
        self._execute(f"update {table} {row_id}", self._scoped(table, query))

    def delete(self, table: str, row_id: str) -> None:
        validate_table(table)
        if table == "assets":
            self._delete_asset_children(row_id)
        query = self.client.table(table).delete().eq("id", row_id)
        self._execute(f"delete from {table} {row_id}", self._scoped(table, query))

    def _delete_asset_children(self, asset_id: str) -> None:
        subtypes = self._execute(
            "load subtypes of deleted asset",
            self._scoped("stock_subtypes",
                         self.client.table("stock_subtypes").select("id").eq("asset_id", asset_id)),
        )
        subtype_ids = [row["id"] for row in subtypes]
        if not subtype_ids:
            return
        for child in ("transactions", "rsu_grants"):
            self._execute(
                f"delete {child} of asset {asset_id}",
                self.client.table(child).delete().in_("subtype_id", subtype_ids),
            )
        self._execute(
            f"delete subtypes of asset {asset_id}",
            self.client.table("stock_subtypes").delete().in_("id", subtype_ids),
        )

    def find_or_create_location(self, name: str, account_type: str) -> str:
        existing = self._execute(
            "look up location",
            self.client.table("locations").select("id")
            .eq("user_id", self.user_id)
            .eq("name", name)
            .eq("account_type", account_type)
            .order("id")
            .limit(1),
        )
        if existing:
            return existing[0]["id"]

        created = self.insert("locations", {"name": name, "account_type": account_type})
        logger.info(f"[Supabase Store] Created location '{name}' ({account_type})")
        return created["id"]
