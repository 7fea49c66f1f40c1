"""
Pytest configuration for the mne agents tests

Provides an in-memory PortfolioStore that returns the same nested row shape
as the Supabase store, and a scripted reasoning service.
"""

import copy
import itertools
import sys
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytest
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Add the project root to Python path for imports
project_dir = Path(__file__).parent.parent
if str(project_dir) not in sys.path:
    sys.path.insert(0, str(project_dir))

from mne_agents.errors import ExternalServiceError
from mne_agents.reasoning import ReasoningResponse, ReasoningService, TextBlock, ToolUseBlock
from mne_agents.services.portfolio_store import ALL_TABLES, PortfolioStore, USER_SCOPED_TABLES, validate_table
from mne_agents.types.portfolio_types import NetWorthPoint, PortfolioSnapshot

TEST_USER_ID = "user-1"
TODAY = date(2025, 6, 15)


class InMemoryPortfolioStore(PortfolioStore):
    """Dict-backed store; ``atomic()`` rolls every table back on error."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {table: [] for table in ALL_TABLES}
        self.write_log: List[tuple] = []
        self.fail_on: set = set()  # {(operation, table)} pairs that raise
        self._ids = itertools.count(1)
        self._atomic_depth = 0

    # -- helpers ---------------------------------------------------------

    def _next_id(self, table: str) -> str:
        return f"{table}-{next(self._ids)}"

    def _maybe_fail(self, operation: str, table: str) -> None:
        if (operation, table) in self.fail_on:
            raise ExternalServiceError(f"simulated {operation} failure on {table}")

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables[table]

    def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        return next((r for r in self.tables[table] if r["id"] == row_id), None)

    # -- reads -----------------------------------------------------------

    def _theme_links(self, ticker_id: str) -> List[Dict[str, Any]]:
        links = []
        for link in self.tables["ticker_themes"]:
            if link["ticker_id"] == ticker_id:
                theme = self.get("themes", link["theme_id"])
                if theme:
                    links.append({"theme": dict(theme)})
        return links

    def _ticker_row(self, ticker: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(ticker)
        row["ticker_themes"] = self._theme_links(ticker["id"])
        return row

    def _asset_row(self, asset: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(asset)
        location = self.get("locations", asset.get("location_id"))
        row["location"] = dict(location) if location else None
        ticker = self.get("tickers", asset.get("ticker_id"))
        row["ticker"] = self._ticker_row(ticker) if ticker else None
        row["stock_subtypes"] = [
            dict(
                subtype,
                transactions=[dict(t) for t in self.tables["transactions"] if t["subtype_id"] == subtype["id"]],
                rsu_grants=[dict(g) for g in self.tables["rsu_grants"] if g["subtype_id"] == subtype["id"]],
            )
            for subtype in self.tables["stock_subtypes"] if subtype["asset_id"] == asset["id"]
        ]
        return row

    def fetch_snapshot(self) -> PortfolioSnapshot:
        self._maybe_fail("fetch", "assets")
        return PortfolioSnapshot.from_rows(
            [self._asset_row(a) for a in self.tables["assets"]],
            [self._ticker_row(t) for t in sorted(self.tables["tickers"], key=lambda t: t["symbol"])],
            [dict(t) for t in self.tables["themes"]],
        )

    def fetch_net_worth_history(self) -> List[NetWorthPoint]:
        rows = sorted(self.tables["net_worth_snapshots"], key=lambda r: r["date"])
        return [NetWorthPoint.from_row(r) for r in rows]

    # -- writes ----------------------------------------------------------

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        validate_table(table)
        self._maybe_fail("insert", table)
        stored = dict(row)
        stored.setdefault("id", self._next_id(table))
        if table in USER_SCOPED_TABLES:
            stored["user_id"] = TEST_USER_ID
        if table == "transactions":
            stored.setdefault("created_at", f"2020-01-01T00:00:00.{next(self._ids):06d}")
        self.tables[table].append(stored)
        self.write_log.append(("insert", table, stored["id"]))
        return dict(stored)

    def upsert(self, table: str, row: Dict[str, Any], on_conflict: str) -> Dict[str, Any]:
        validate_table(table)
        self._maybe_fail("upsert", table)
        keys = [k.strip() for k in on_conflict.split(",") if k.strip() != "user_id"]
        for existing in self.tables[table]:
            if all(existing.get(k) == row.get(k) for k in keys):
                existing.update(row)
                self.write_log.append(("upsert", table, existing["id"]))
                return dict(existing)
        return self.insert(table, row)

    def update(self, table: str, row_id: str, fields: Dict[str, Any]) -> None:
        validate_table(table)
        self._maybe_fail("update", table)
        row = self.get(table, row_id)
        if row is not None:
            row.update(fields)
            self.write_log.append(("update", table, row_id))

    def delete(self, table: str, row_id: str) -> None:
        validate_table(table)
        self._maybe_fail("delete", table)
        if table == "assets":
            subtype_ids = {s["id"] for s in self.tables["stock_subtypes"] if s["asset_id"] == row_id}
            for child in ("transactions", "rsu_grants"):
                self.tables[child] = [r for r in self.tables[child] if r["subtype_id"] not in subtype_ids]
            self.tables["stock_subtypes"] = [s for s in self.tables["stock_subtypes"] if s["id"] not in subtype_ids]
        self.tables[table] = [r for r in self.tables[table] if r["id"] != row_id]
        self.write_log.append(("delete", table, row_id))

    def find_or_create_location(self, name: str, account_type: str) -> str:
        matches = sorted(
            (r for r in self.tables["locations"] if r["name"] == name and r.get("account_type") == account_type),
            key=lambda r: r["id"],
        )
        if matches:
            return matches[0]["id"]
        return self.insert("locations", {"name": name, "account_type": account_type})["id"]

    @contextmanager
    def atomic(self):
        saved = copy.deepcopy(self.tables) if self._atomic_depth == 0 else None
        self._atomic_depth += 1
        try:
            yield
        except Exception:
            if saved is not None:
                self.tables = saved
            raise
        finally:
            self._atomic_depth -= 1

    # -- seeding ---------------------------------------------------------

    def add_ticker(self, symbol: str, price: Optional[float] = None, themes: Sequence[str] = (),
                   watchlist_only: bool = False) -> str:
        ticker = self.insert("tickers", {
            "symbol": symbol, "current_price": price, "watchlist_only": watchlist_only,
        })
        for theme_name in themes:
            theme = next((t for t in self.tables["themes"] if t["name"] == theme_name), None)
            if theme is None:
                theme = self.insert("themes", {"name": theme_name})
            self.insert("ticker_themes", {"ticker_id": ticker["id"], "theme_id": theme["id"]})
        return ticker["id"]

    def add_stock(self, symbol: str, price: Optional[float] = None, lots: Sequence[tuple] = (),
                  location: str = "Fidelity", subtype: str = "Market", name: Optional[str] = None,
                  grants: Sequence[Dict[str, Any]] = (), themes: Sequence[str] = ()) -> str:
        """Seed a Stock asset. ``lots`` are (purchase_date, count, cost_price) tuples."""
        ticker = next((t for t in self.tables["tickers"] if t["symbol"] == symbol), None)
        ticker_id = ticker["id"] if ticker else self.add_ticker(symbol, price, themes)
        location_id = self.find_or_create_location(location, "Investment")
        asset = self.insert("assets", {
            "name": name or f"{symbol} Stock",
            "asset_type": "Stock",
            "location_id": location_id,
            "ownership": "Individual",
            "ticker_id": ticker_id,
        })
        subtype_row = self.insert("stock_subtypes", {"asset_id": asset["id"], "subtype": subtype})
        for purchase_date, count, cost_price in lots:
            self.insert("transactions", {
                "subtype_id": subtype_row["id"],
                "count": count,
                "cost_price": cost_price,
                "purchase_date": str(purchase_date),
                "capital_gains_status": "Short Term",
            })
        for grant in grants:
            self.insert("rsu_grants", dict(grant, subtype_id=subtype_row["id"]))
        self.write_log.clear()
        return asset["id"]

    def subtype_ids(self, asset_id: str) -> List[str]:
        return [s["id"] for s in self.tables["stock_subtypes"] if s["asset_id"] == asset_id]

    def add_lot(self, subtype_id: str, purchase_date, count: float, cost_price: float) -> str:
        row = self.insert("transactions", {
            "subtype_id": subtype_id, "count": count, "cost_price": cost_price,
            "purchase_date": str(purchase_date), "capital_gains_status": "Short Term",
        })
        self.write_log.clear()
        return row["id"]

    def add_cash(self, name: str, value: float, asset_type: str = "Cash", location: str = "Chase") -> str:
        location_id = self.find_or_create_location(location, "Checking")
        asset = self.insert("assets", {
            "name": name, "asset_type": asset_type, "location_id": location_id,
            "ownership": "Individual", "price": value,
        })
        self.write_log.clear()
        return asset["id"]

    def add_history(self, points: Sequence[tuple]) -> None:
        for day, value in points:
            self.insert("net_worth_snapshots", {"date": str(day), "value": value})
        self.write_log.clear()


class ScriptedReasoningService(ReasoningService):
    """Returns queued responses in order and records every call."""

    def __init__(self, responses: Sequence[ReasoningResponse] = ()):
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def respond(self, system_prompt, tools, messages):
        self.calls.append({
            "system_prompt": system_prompt,
            "tool_names": [t["name"] for t in tools],
            "messages": list(messages),
        })
        if not self.responses:
            raise AssertionError("reasoning service called more times than scripted")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def text_response(text: str) -> ReasoningResponse:
    return ReasoningResponse(content=(TextBlock(text=text),))


def tool_response(*calls: tuple, text: Optional[str] = None) -> ReasoningResponse:
    """``calls`` are (tool_name, input_dict) pairs."""
    blocks = [TextBlock(text=text)] if text else []
    blocks.extend(ToolUseBlock(name=name, input=payload, id=f"toolu_{i}") for i, (name, payload) in enumerate(calls))
    return ReasoningResponse(content=tuple(blocks))


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
def store():
    return InMemoryPortfolioStore()


@pytest.fixture
def scripted_reasoning():
    """Factory: scripted_reasoning(resp1, resp2, ...) -> ScriptedReasoningService."""
    def _build(*responses):
        return ScriptedReasoningService(responses)
    return _build
