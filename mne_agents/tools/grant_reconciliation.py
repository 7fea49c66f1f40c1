"""
Assigns RSU vest transactions to the grant they most likely came from.

There is no stored link between a vest lot and its grant, so the assignment is
recomputed on every read with the following cascade, per transaction:

1. In-window: purchase date inside [vest_start, effective_vest_end]; the grant
   with the latest vest_start wins.
2. Granted-before: any grant with grant_date <= purchase date; the latest
   grant_date wins.
3. Otherwise the grant whose grant_date is closest to the purchase date.

If vest windows are edited after the fact, assignments can shift retroactively.
Ties keep the first grant in store order.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from mne_agents.types.portfolio_types import Asset, RsuGrant, StockSubtypeKind, Transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GrantVesting:
    grant: RsuGrant
    vested_shares: Decimal
    unvested_shares: Decimal

    def to_dict(self) -> Dict:
        return {
            "grant_id": self.grant.id,
            "grant_date": self.grant.grant_date.isoformat(),
            "total_shares": float(self.grant.total_shares),
            "vested_shares": float(self.vested_shares),
            "unvested_shares": float(self.unvested_shares),
            "vest_start": self.grant.vest_start.isoformat(),
            "vest_end": self.grant.vest_end.isoformat(),
            "ended_at": self.grant.ended_at.isoformat() if self.grant.ended_at else None,
        }


@dataclass
class GrantReconciliation:
    assignments: Dict[str, Optional[str]] = field(default_factory=dict)  # transaction id -> grant id
    vesting: List[GrantVesting] = field(default_factory=list)

    def for_grant(self, grant_id: str) -> Optional[GrantVesting]:
        return next((v for v in self.vesting if v.grant.id == grant_id), None)


def assign_transaction(transaction: Transaction, grants: Sequence[RsuGrant]) -> Optional[RsuGrant]:
    """Pick the grant a single vest transaction belongs to, or None without grants."""
    if not grants:
        return None
    tx_date = transaction.purchase_date

    in_window = [g for g in grants if g.vest_start <= tx_date <= g.effective_vest_end]
    if in_window:
        return max(in_window, key=lambda g: g.vest_start)

    granted_before = [g for g in grants if g.grant_date <= tx_date]
    if granted_before:
        return max(granted_before, key=lambda g: g.grant_date)

    return min(grants, key=lambda g: abs((g.grant_date - tx_date).days))


def reconcile_grants(
    grants: Sequence[RsuGrant],
    transactions: Iterable[Transaction],
) -> GrantReconciliation:
    """Assign every vest transaction of one ticker and compute per-grant vesting.

    Args:
        grants: All RSU grants for the ticker
        transactions: The ticker's RSU vest transactions

    Returns:
        GrantReconciliation with the assignment map and clamped vested/unvested
        share counts per grant.
    """
    result = GrantReconciliation()
    assigned_totals: Dict[str, Decimal] = {g.id: Decimal("0") for g in grants}

    for tx in transactions:
        grant = assign_transaction(tx, grants)
        result.assignments[tx.id] = grant.id if grant else None
        if grant is not None:
            assigned_totals[grant.id] += tx.count

    for grant in grants:
        vested = min(max(assigned_totals[grant.id], Decimal("0")), grant.total_shares)
        unvested = Decimal("0") if grant.ended else grant.total_shares - vested
        result.vesting.append(GrantVesting(grant=grant, vested_shares=vested, unvested_shares=unvested))

    if grants and any(v is None for v in result.assignments.values()):
        logger.warning("[Grant Reconciliation] Some vest transactions could not be assigned")
    return result


def reconcile_ticker(assets: Iterable[Asset], symbol: str) -> GrantReconciliation:
    """Reconcile all RSU buckets of every asset holding ``symbol``."""
    grants: List[RsuGrant] = []
    transactions: List[Transaction] = []
    for asset in assets:
        if not asset.is_stock or asset.symbol != symbol:
            continue
        for subtype in asset.stock_subtypes:
            if subtype.subtype != StockSubtypeKind.RSU:
                continue
            grants.extend(subtype.rsu_grants)
            transactions.extend(subtype.transactions)
    return reconcile_grants(grants, transactions)
