"""
Best-effort side calls that run after a write has been applied.

A price refresh for a newly tracked ticker or an industry theme lookup must
never block or fail the write that triggered it. Tasks run on a small thread
pool; failures are logged and collected in ``BackgroundTaskRunner.errors``
instead of being raised.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Optional

import requests

from mne_agents.errors import ExternalServiceError
from mne_agents.services.write_executor import link_ticker_themes

logger = logging.getLogger(__name__)

FINNHUB_BASE_URL = "https://finnhub.io/api/v1"


class FinnhubClient:
    """Minimal Finnhub quote/profile client."""

    def __init__(self, api_key: str, session: Optional[requests.Session] = None, timeout: float = 10):
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def _get(self, path: str, symbol: str) -> Dict[str, Any]:
        try:
            response = self.session.get(
                f"{FINNHUB_BASE_URL}/{path}",
                params={"symbol": symbol, "token": self.api_key},
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json() or {}
        except (requests.RequestException, ValueError) as e:
            raise ExternalServiceError(f"Finnhub {path} request for {symbol} failed: {e}") from e

    def quote_price(self, symbol: str) -> Optional[float]:
        """Last traded price, or None when Finnhub has no quote."""
        price = self._get("quote", symbol).get("c")
        return float(price) if price else None

    def industry(self, symbol: str) -> Optional[str]:
        industry = str(self._get("stock/profile2", symbol).get("finnhubIndustry") or "").strip()
        return industry or None


@dataclass(frozen=True)
class BackgroundTaskError:
    task: str
    error: str


class BackgroundTaskRunner:
    """Runs fire-and-forget tasks with their own error channel.

    Args:
        market_data: Quote/profile client; price and theme tasks are skipped without one
        max_workers: Pool size
        synchronous: Run tasks inline (CLI and tests)
    """

    def __init__(self, market_data: Optional[FinnhubClient] = None, max_workers: int = 2,
                 synchronous: bool = False):
        self.market_data = market_data
        self.synchronous = synchronous
        self._executor = None if synchronous else ThreadPoolExecutor(max_workers=max_workers)
        self._futures: List[Future] = []
        self._lock = threading.Lock()
        self.errors: List[BackgroundTaskError] = []

    def _run(self, name: str, fn: Callable, *args, **kwargs) -> None:
        try:
            fn(*args, **kwargs)
        except Exception as e:
            logger.warning(f"[Background] Task '{name}' failed: {e}")
            with self._lock:
                self.errors.append(BackgroundTaskError(task=name, error=str(e)))

    def submit(self, name: str, fn: Callable, *args, **kwargs) -> None:
        if self._executor is None:
            self._run(name, fn, *args, **kwargs)
            return
        self._futures.append(self._executor.submit(self._run, name, fn, *args, **kwargs))

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until submitted tasks finish (used before shutdown)."""
        if self._futures:
            wait(self._futures, timeout=timeout)
            self._futures = [f for f in self._futures if not f.done()]

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Ticker side calls
    # ------------------------------------------------------------------

    def refresh_price(self, store, ticker_id: str, symbol: str, today: Optional[date] = None) -> None:
        if self.market_data is None:
            logger.debug(f"[Background] No market data client, skipping price refresh for {symbol}")
            return
        self.submit(f"refresh_price:{symbol}", _refresh_price, self.market_data, store, ticker_id, symbol,
                    today or date.today())

    def assign_industry_theme(self, store, ticker_id: str, symbol: str) -> None:
        if self.market_data is None:
            return
        self.submit(f"industry_theme:{symbol}", _assign_industry_theme, self.market_data, store, ticker_id, symbol)


def _refresh_price(market_data: FinnhubClient, store, ticker_id: str, symbol: str, today: date) -> None:
    price = market_data.quote_price(symbol)
    if price is None:
        logger.info(f"[Background] No quote for {symbol}")
        return
    store.update("tickers", ticker_id, {"current_price": price, "last_updated": today.isoformat()})
    logger.info(f"[Background] Refreshed {symbol} price: ${price:,.2f}")


def _assign_industry_theme(market_data: FinnhubClient, store, ticker_id: str, symbol: str) -> None:
    industry = market_data.industry(symbol)
    if not industry:
        return
    snapshot = store.fetch_snapshot()
    ticker = next((t for t in snapshot.tickers if t.id == ticker_id), None)
    linked = [theme.id for theme in ticker.themes] if ticker else []
    if linked:
        return
    link_ticker_themes(store, ticker_id, [industry], snapshot.themes, linked)
    logger.info(f"[Background] Tagged {symbol} with industry theme '{industry}'")
