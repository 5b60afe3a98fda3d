"""Debt simplification: turn net balances into a short list of transfers.

The matcher is a greedy heuristic. It is deterministic and never produces
more than ``nonzero participants - 1`` transfers, but it does not always find
the plan with the fewest transfers; that problem is NP-hard in general
(it contains subset-sum).
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from .balances import check_conservation
from .models import PairwiseBalance, SimplificationResult, SimplificationStats, Transfer
from .splits import TOLERANCE_CENTS

logger = logging.getLogger(__name__)


@dataclass
class _Position:
    identity: str
    remaining: int  # cents, always positive


def simplify_debts(
    balances: Mapping[str, int], tolerance_cents: int = TOLERANCE_CENTS
) -> list[Transfer]:
    """
    Compute a transfer plan that zeroes out a closed set of net balances.

    Steps:
    1. Refuse to run unless the balances sum to zero (within tolerance)
    2. Sort debtors and creditors by magnitude, largest first; ties keep the
       input order
    3. Repeatedly match the largest debtor with the largest creditor for the
       smaller of the two amounts

    Debtors and creditors are picked in exact cents, not within the
    tolerance: a one-cent balance still gets a transfer. Dropping balances
    at or below the tolerance would leave several of them unsettled, and
    their sum can exceed the tolerance. The tolerance only applies to the
    zero-sum check in step 1.

    Args:
        balances: Participant -> signed cents (positive: is owed money)
        tolerance_cents: Allowed discrepancy of the balance sum

    Returns:
        Transfers in the order they were matched

    Raises:
        ConsistencyError: If the balances do not sum to zero
    """
    check_conservation(balances, tolerance_cents)

    # sorted() is stable, so equal magnitudes stay in input order
    debtors = sorted(
        (_Position(p, -b) for p, b in balances.items() if b < 0),
        key=lambda pos: pos.remaining,
        reverse=True,
    )
    creditors = sorted(
        (_Position(p, b) for p, b in balances.items() if b > 0),
        key=lambda pos: pos.remaining,
        reverse=True,
    )

    transfers = []
    i = j = 0
    while i < len(debtors) and j < len(creditors):
        debtor = debtors[i]
        creditor = creditors[j]

        amount = min(debtor.remaining, creditor.remaining)
        if amount > 0:
            transfers.append(
                Transfer(
                    from_user=debtor.identity,
                    to_user=creditor.identity,
                    amount_cents=amount,
                )
            )

        debtor.remaining -= amount
        creditor.remaining -= amount

        if debtor.remaining == 0:
            i += 1
        if creditor.remaining == 0:
            j += 1

    logger.debug(
        f"Simplified {len(debtors)} debtors / {len(creditors)} creditors "
        f"into {len(transfers)} transfers"
    )
    return transfers


def original_debts(pairwise: Iterable[PairwiseBalance]) -> list[Transfer]:
    """Express pairwise balances as transfers, one per non-zero pair."""
    debts = []
    for pair in pairwise:
        if pair.amount_cents > 0:
            debts.append(
                Transfer(from_user=pair.user_b, to_user=pair.user_a, amount_cents=pair.amount_cents)
            )
        elif pair.amount_cents < 0:
            debts.append(
                Transfer(from_user=pair.user_a, to_user=pair.user_b, amount_cents=-pair.amount_cents)
            )
    return debts


def net_balances_from_pairs(pairwise: Iterable[PairwiseBalance]) -> dict[str, int]:
    """Net balance of every user appearing in a set of pairwise balances."""
    nets: dict[str, int] = {}
    for pair in pairwise:
        nets[pair.user_a] = nets.get(pair.user_a, 0) + pair.amount_cents
        nets[pair.user_b] = nets.get(pair.user_b, 0) - pair.amount_cents
    return nets


def simplify_pairwise(
    pairwise: list[PairwiseBalance],
    tolerance_cents: int = TOLERANCE_CENTS,
    group_id: str | None = None,
) -> SimplificationResult:
    """Simplify a set of pairwise balances, keeping the originals alongside."""
    balances = net_balances_from_pairs(pairwise)
    return SimplificationResult(
        original=original_debts(pairwise),
        simplified=simplify_debts(balances, tolerance_cents),
        balances=balances,
        group_id=group_id,
    )


def validate_simplification(
    balances: Mapping[str, int],
    transfers: Iterable[Transfer],
    tolerance_cents: int = TOLERANCE_CENTS,
) -> bool:
    """Check that applying ``transfers`` brings every balance to zero."""
    remaining = dict(balances)
    for transfer in transfers:
        remaining[transfer.from_user] = remaining.get(transfer.from_user, 0) + transfer.amount_cents
        remaining[transfer.to_user] = remaining.get(transfer.to_user, 0) - transfer.amount_cents

    return all(abs(b) <= tolerance_cents for b in remaining.values())


def get_simplification_stats(result: SimplificationResult) -> SimplificationStats:
    """Compare the original debts with the simplified plan."""
    original_count = len(result.original)
    simplified_count = len(result.simplified)
    saved = original_count - simplified_count

    return SimplificationStats(
        original_count=original_count,
        simplified_count=simplified_count,
        transactions_saved=saved,
        savings_percentage=round(saved / original_count * 100) if original_count else 0,
        original_total_cents=sum(t.amount_cents for t in result.original),
        simplified_total_cents=sum(t.amount_cents for t in result.simplified),
    )
