"""
Tests for the sale / lot resolver.

Every rejected sale must leave the store untouched; accepted sales deplete
lots in insertion order and clean up fully divested positions.
"""

from decimal import Decimal

import pytest

from mne_agents.errors import (
    AmbiguityError, ExternalServiceError, InputValidationError, InsufficientSharesError, NotFoundError
)
from mne_agents.services.sale_resolver import SaleLotResolver


def _sell(store, **request):
    request.setdefault("symbol", "AAPL")
    request.setdefault("sale_price", 200)
    return SaleLotResolver(store).execute(request)


class TestSaleExecution:
    """Accepted sales."""

    def test_selling_whole_lot_removes_row_and_asset(self, store):
        asset_id = store.add_stock("AAPL", price=190, lots=[("2024-01-01", 6, 150)])
        ticker_id = store.rows("tickers")[0]["id"]

        outcome = _sell(store, purchase_date="2024-01-01", count=6)

        assert store.rows("transactions") == []
        assert store.get("assets", asset_id) is None
        assert outcome.deleted_asset_ids == [asset_id]
        assert outcome.watchlist_only is True
        assert store.get("tickers", ticker_id)["watchlist_only"] is True
        assert "fully sold and removed" in outcome.message()

    def test_partial_sale_decrements_lot(self, store):
        asset_id = store.add_stock("AAPL", price=190, lots=[("2024-01-01", 10, 150)])

        outcome = _sell(store, purchase_date="2024-01-01", count=4)

        assert [t["count"] for t in store.rows("transactions")] == [6.0]
        assert store.get("assets", asset_id) is not None
        assert outcome.watchlist_only is False
        assert outcome.proceeds == Decimal("800.00")
        assert outcome.message() == "Sold 4 AAPL shares @ $200.00 from Fidelity for $800.00."

    def test_same_date_rows_deplete_in_insertion_order(self, store):
        asset_id = store.add_stock("AAPL", price=190, lots=[("2024-01-01", 3, 150)])
        first_id = store.rows("transactions")[0]["id"]
        second_id = store.add_lot(store.subtype_ids(asset_id)[0], "2024-01-01", 5, 160)

        outcome = _sell(store, purchase_date="2024-01-01", count=4)

        assert outcome.deleted_transaction_ids == [first_id]
        assert outcome.updated_transaction_ids == [second_id]
        assert store.get("transactions", second_id)["count"] == 4.0

    def test_multi_lot_sale_with_duplicate_dates_merged(self, store):
        store.add_stock("AAPL", price=190, lots=[("2024-01-01", 5, 150), ("2024-02-01", 5, 160)])

        outcome = _sell(store, lots=[
            {"purchase_date": "2024-01-01", "count": 2},
            {"purchase_date": "2024-02-01", "count": 5},
            {"purchase_date": "2024-01-01", "count": 1},
        ])

        assert outcome.shares_sold == Decimal("8")
        assert [t["count"] for t in store.rows("transactions")] == [2.0]

    def test_asset_with_active_grant_is_kept(self, store):
        asset_id = store.add_stock(
            "GOOG", price=150, subtype="RSU", lots=[("2024-03-01", 10, 0)],
            grants=[{"grant_date": "2023-01-01", "total_shares": 40,
                     "vest_start": "2023-01-01", "vest_end": "2027-01-01"}],
        )
        outcome = _sell(store, symbol="GOOG", purchase_date="2024-03-01", count=10)

        assert store.get("assets", asset_id) is not None
        assert outcome.deleted_asset_ids == []
        assert outcome.watchlist_only is False

    def test_proceeds_transferred_to_cash(self, store):
        store.add_stock("AAPL", price=190, lots=[("2024-01-01", 10, 150)])
        cash_id = store.add_cash("Brokerage Cash", 1000)

        outcome = _sell(store, purchase_date="2024-01-01", count=5, transfer_to="brokerage cash")

        assert store.get("assets", cash_id)["price"] == 2000.0
        assert outcome.transfer_amount == Decimal("1000.00")
        assert 'Moved $1,000.00 to "Brokerage Cash".' in outcome.message()

    def test_transfer_amount_override(self, store):
        store.add_stock("AAPL", price=190, lots=[("2024-01-01", 10, 150)])
        cash_id = store.add_cash("Brokerage Cash", 0)

        _sell(store, purchase_date="2024-01-01", count=5, transfer_to="Brokerage Cash", transfer_amount=750.5)

        assert store.get("assets", cash_id)["price"] == 750.5

    def test_source_account_selects_location(self, store):
        store.add_stock("AAPL", price=190, lots=[("2024-01-01", 10, 150)], location="Fidelity")
        schwab_id = store.add_stock("AAPL", lots=[("2024-01-01", 10, 150)], location="Schwab")

        outcome = _sell(store, purchase_date="2024-01-01", count=10, source_account="schwab")

        assert outcome.deleted_asset_ids == [schwab_id]
        assert outcome.watchlist_only is False
        assert outcome.source == "Schwab"


class TestSaleRejection:
    """Rejected sales never mutate the store."""

    def test_insufficient_shares(self, store):
        store.add_stock("AAPL", price=190, lots=[("2024-01-01", 10, 150)])
        before = store.rows("transactions")[0].copy()

        with pytest.raises(InsufficientSharesError) as exc_info:
            _sell(store, purchase_date="2024-01-01", count=15)

        assert "10 available, 15 requested" in str(exc_info.value)
        assert store.write_log == []
        assert store.rows("transactions") == [before]

    def test_shortfall_on_second_lot_aborts_whole_sale(self, store):
        store.add_stock("AAPL", price=190, lots=[("2024-01-01", 10, 150), ("2024-02-01", 1, 150)])

        with pytest.raises(InsufficientSharesError):
            _sell(store, lots=[{"purchase_date": "2024-01-01", "count": 10},
                               {"purchase_date": "2024-02-01", "count": 2}])
        assert store.write_log == []

    def test_no_position(self, store):
        with pytest.raises(NotFoundError, match="No AAPL position"):
            _sell(store, purchase_date="2024-01-01", count=1)

    def test_no_lot_on_date(self, store):
        store.add_stock("AAPL", price=190, lots=[("2024-01-01", 10, 150)])
        with pytest.raises(NotFoundError, match="No AAPL lot purchased on 2024-01-02"):
            _sell(store, purchase_date="2024-01-02", count=1)

    def test_unknown_source_account(self, store):
        store.add_stock("AAPL", price=190, lots=[("2024-01-01", 10, 150)])
        with pytest.raises(NotFoundError, match="AAPL is held at: Fidelity"):
            _sell(store, purchase_date="2024-01-01", count=1, source_account="Vanguard")

    def test_several_accounts_without_source(self, store):
        store.add_stock("AAPL", price=190, lots=[("2024-01-01", 10, 150)], location="Fidelity")
        store.add_stock("AAPL", lots=[("2024-01-01", 10, 150)], location="Schwab")

        with pytest.raises(AmbiguityError) as exc_info:
            _sell(store, purchase_date="2024-01-01", count=1)
        assert exc_info.value.candidates == ["Fidelity", "Schwab"]
        assert store.write_log == []

    def test_transfer_amount_without_destination(self, store):
        store.add_stock("AAPL", price=190, lots=[("2024-01-01", 10, 150)])
        with pytest.raises(InputValidationError, match="without transfer_to"):
            _sell(store, purchase_date="2024-01-01", count=1, transfer_amount=100)

    def test_missing_destination(self, store):
        store.add_stock("AAPL", price=190, lots=[("2024-01-01", 10, 150)])
        with pytest.raises(NotFoundError, match='No asset named "Savings"'):
            _sell(store, purchase_date="2024-01-01", count=1, transfer_to="Savings")
        assert store.write_log == []

    def test_ambiguous_destination(self, store):
        store.add_stock("AAPL", price=190, lots=[("2024-01-01", 10, 150)])
        store.add_cash("Savings", 10, location="Chase")
        store.add_cash("Savings", 20, location="Ally")
        with pytest.raises(AmbiguityError, match="Savings \\(Chase\\), Savings \\(Ally\\)"):
            _sell(store, purchase_date="2024-01-01", count=1, transfer_to="Savings")

    def test_stock_destination_rejected(self, store):
        store.add_stock("AAPL", price=190, lots=[("2024-01-01", 10, 150)])
        store.add_stock("MSFT", price=300, lots=[("2024-01-01", 1, 150)])
        with pytest.raises(InputValidationError, match="is a stock position"):
            _sell(store, purchase_date="2024-01-01", count=1, transfer_to="MSFT Stock")

    def test_store_failure_rolls_back(self, store):
        store.add_stock("AAPL", price=190, lots=[("2024-01-01", 6, 150)])
        cash_id = store.add_cash("Brokerage Cash", 100)
        store.fail_on.add(("update", "assets"))

        with pytest.raises(ExternalServiceError):
            _sell(store, purchase_date="2024-01-01", count=6, transfer_to="Brokerage Cash")

        assert len(store.rows("transactions")) == 1
        assert len(store.rows("assets")) == 2
        assert store.get("assets", cash_id)["price"] == 100
