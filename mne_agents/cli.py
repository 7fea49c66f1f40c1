#!/usr/bin/env python3
"""
Command-line entry point.

Usage:
    # Run one natural-language command (asks before applying any write)
    python -m mne_agents.cli run "I bought 10 AAPL at 180 on 2024-03-01 at Fidelity"

    # Apply writes without prompting
    python -m mne_agents.cli run --yes "add NVDA to my watchlist"

    # Record today's net worth point
    python -m mne_agents.cli snapshot

    # Reconstruct history points from past purchase dates
    python -m mne_agents.cli backfill
"""

import argparse
import json
import logging
import sys
from datetime import date

from mne_agents.command_agent import CommandAgent
from mne_agents.config import AgentSettings
from mne_agents.errors import LedgerError
from mne_agents.reasoning import AnthropicReasoningService
from mne_agents.services.background_tasks import BackgroundTaskRunner, FinnhubClient
from mne_agents.services.supabase_store import SupabasePortfolioStore
from mne_agents.tools.ledger import total_net_worth
from mne_agents.tools.portfolio_analysis import backfill_net_worth_history
from mne_agents.types.action_types import AgentTrace, WriteConfirmQueueResult, WriteConfirmResult
from utils.supabase.db_client import get_supabase_client

logger = logging.getLogger(__name__)


def _build_store(settings: AgentSettings) -> SupabasePortfolioStore:
    if not settings.user_id:
        raise SystemExit("MNE_USER_ID must be set")
    client = get_supabase_client(settings.supabase_url, settings.supabase_service_role_key)
    return SupabasePortfolioStore(client, settings.user_id)


def _confirm(message: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    answer = input(f"{message}\nApply this change? [y/N] ").strip().lower()
    return answer in ("y", "yes")


def _apply(confirmations, store, background, assume_yes: bool) -> int:
    failures = 0
    for confirmation in confirmations:
        if not _confirm(confirmation.confirmation_message, assume_yes):
            print("Skipped.")
            continue
        try:
            print(confirmation.execute(store, background=background))
        except LedgerError as e:
            failures += 1
            print(f"Failed: {e}")
    return failures


def run_command(args, settings: AgentSettings) -> int:
    store = _build_store(settings)
    agent = CommandAgent(store, AnthropicReasoningService(settings), settings)
    trace = AgentTrace()
    result = agent.run_command(args.query, trace=trace)

    if args.trace:
        for entry in trace.entries:
            print(f"  - {entry.label}" + (f": {entry.detail}" if entry.detail else ""))

    if isinstance(result, WriteConfirmResult):
        confirmations = [result]
    elif isinstance(result, WriteConfirmQueueResult):
        confirmations = result.confirmations
    else:
        print(json.dumps(result.to_dict(), indent=2))
        return 0

    market_data = FinnhubClient(settings.finnhub_api_key) if settings.finnhub_api_key else None
    background = BackgroundTaskRunner(market_data=market_data, synchronous=True)
    failures = _apply(confirmations, store, background, args.yes)
    for error in background.errors:
        logger.warning(f"Background task {error.task} failed: {error.error}")
    return 1 if failures else 0


def record_snapshot(args, settings: AgentSettings) -> int:
    store = _build_store(settings)
    snapshot = store.fetch_snapshot()
    value = total_net_worth(snapshot.assets)
    store.record_net_worth_snapshot(date.today(), value)
    print(f"Recorded net worth ${value:,.2f} for {date.today().isoformat()}")
    return 0


def backfill(args, settings: AgentSettings) -> int:
    store = _build_store(settings)
    snapshot = store.fetch_snapshot()
    existing = [point.date for point in store.fetch_net_worth_history()]
    points = backfill_net_worth_history(snapshot.assets, existing, date.today())
    count = store.record_net_worth_points(points)
    print(f"Backfilled {count} net worth point(s)")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Manage a portfolio with natural-language commands")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run one command")
    run_parser.add_argument("query", help="Natural-language command")
    run_parser.add_argument("--yes", "-y", action="store_true", help="Apply writes without prompting")
    run_parser.add_argument("--trace", action="store_true", help="Print the orchestration trace")
    run_parser.set_defaults(handler=run_command)

    snapshot_parser = subparsers.add_parser("snapshot", help="Record today's net worth")
    snapshot_parser.set_defaults(handler=record_snapshot)

    backfill_parser = subparsers.add_parser("backfill", help="Backfill net worth history from purchase dates")
    backfill_parser.set_defaults(handler=backfill)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    settings = AgentSettings.from_env()
    try:
        return args.handler(args, settings)
    except LedgerError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
