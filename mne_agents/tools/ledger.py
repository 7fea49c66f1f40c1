"""
Ledger primitives: value, cost basis, unrealized gain and capital-gains status.

All money values are Decimals rounded to cents.
"""

from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

import pandas as pd

from mne_agents.types.portfolio_types import Asset, CapitalGainsStatus

CENTS = Decimal("0.01")


def to_cents(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def market_value(asset: Asset) -> Decimal:
    """Current value of an asset.

    Stock assets are worth ``current_price x total shares``, or 0 while the
    ticker has no price. Every other asset carries its value directly.
    """
    if not asset.is_stock:
        return to_cents(asset.price) if asset.price is not None else Decimal("0.00")
    if asset.ticker is None or not asset.ticker.current_price:
        return Decimal("0.00")
    return to_cents(asset.ticker.current_price * asset.total_shares)


def cost_basis(asset: Asset) -> Decimal:
    """Sum of count x cost price over every lot of the asset."""
    return to_cents(sum((t.count * t.cost_price for t in asset.transactions), Decimal("0")))


def unrealized_gain(asset: Asset) -> Decimal:
    return market_value(asset) - cost_basis(asset)


def total_net_worth(assets: Iterable[Asset]) -> Decimal:
    return sum((market_value(a) for a in assets), Decimal("0.00"))


def one_year_before(today: date) -> date:
    """Same calendar day one year earlier (Feb 29 falls back to Feb 28)."""
    return (pd.Timestamp(today) - pd.DateOffset(years=1)).date()


def classify(purchase_date: date, today: Optional[date] = None) -> CapitalGainsStatus:
    """Long Term iff the lot was bought before the same calendar day last year."""
    today = today or date.today()
    if purchase_date < one_year_before(today):
        return CapitalGainsStatus.LONG_TERM
    return CapitalGainsStatus.SHORT_TERM
