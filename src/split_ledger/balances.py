"""Balance aggregation over a snapshot of expenses and settlements.

Every function here is pure. All arithmetic goes through ``expense_debts`` and
``settlement_debt``: each turns one ledger record into (creditor, debtor,
cents) triples, and both the full recomputation and the incremental cache path
fold those same triples. A confirmed settlement P->R is the triple (P, R, amount):
it cancels that much of what P owed R.
"""

import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from typing import NamedTuple

from .exceptions import ConsistencyError
from .models import (
    BalanceBreakdown,
    BreakdownLine,
    GroupBalance,
    MemberBalance,
    PairwiseBalance,
    Settlement,
    SharedExpense,
    UserSummary,
)
from .splits import TOLERANCE_CENTS

logger = logging.getLogger(__name__)


class Debt(NamedTuple):
    """``debtor`` owes ``creditor`` ``cents``."""

    creditor: str
    debtor: str
    cents: int


def active_view(expenses: Iterable[SharedExpense]) -> list[SharedExpense]:
    """Drop soft-deleted expenses. Historical records are never modified."""
    return [e for e in expenses if e.active]


def expense_debts(expense: SharedExpense) -> list[Debt]:
    """Debts created by one expense: each non-payer owes the payer their share."""
    if not expense.active:
        return []
    return [
        Debt(expense.payer, p.identity, p.share_cents)
        for p in expense.participants
        if p.identity != expense.payer and p.share_cents
    ]


def settlement_debt(settlement: Settlement) -> Debt | None:
    """Effect of a settlement. Only confirmed settlements count."""
    if settlement.status != "confirmed":
        return None
    return Debt(settlement.payer, settlement.recipient, settlement.amount_cents)


def ledger_debts(
    expenses: Iterable[SharedExpense], settlements: Iterable[Settlement]
) -> Iterator[Debt]:
    for expense in expenses:
        yield from expense_debts(expense)
    for settlement in settlements:
        debt = settlement_debt(settlement)
        if debt is not None:
            yield debt


# ============================================================================
# Per-record contributions (shared by full and incremental paths)
# ============================================================================


def debt_pair_delta(debt: Debt, user_a: str, user_b: str) -> int:
    """Change to balance(user_a, user_b); positive means user_b owes user_a more."""
    if debt.creditor == user_a and debt.debtor == user_b:
        return debt.cents
    if debt.creditor == user_b and debt.debtor == user_a:
        return -debt.cents
    return 0


def expense_pair_delta(expense: SharedExpense, user_a: str, user_b: str) -> int:
    """
    Contribution of one expense to the pairwise balance.

    Expenses paid by a third party contribute nothing to the pair, even when
    both users took part. This is a known limitation of pairwise balances;
    closed-set net balances account for them.
    """
    return sum(debt_pair_delta(d, user_a, user_b) for d in expense_debts(expense))


def settlement_pair_delta(settlement: Settlement, user_a: str, user_b: str) -> int:
    debt = settlement_debt(settlement)
    return debt_pair_delta(debt, user_a, user_b) if debt else 0


def debt_net_deltas(debt: Debt) -> dict[str, int]:
    return {debt.creditor: debt.cents, debt.debtor: -debt.cents}


def expense_group_deltas(expense: SharedExpense) -> dict[str, int]:
    """Contribution of one expense to members' net balances."""
    deltas: dict[str, int] = {}
    for debt in expense_debts(expense):
        for member, cents in debt_net_deltas(debt).items():
            deltas[member] = deltas.get(member, 0) + cents
    return deltas


def settlement_group_deltas(settlement: Settlement) -> dict[str, int]:
    debt = settlement_debt(settlement)
    return debt_net_deltas(debt) if debt else {}


def apply_deltas(balances: dict[str, int], deltas: Mapping[str, int]) -> dict[str, int]:
    """Return a copy of ``balances`` with ``deltas`` added."""
    updated = dict(balances)
    for member, cents in deltas.items():
        updated[member] = updated.get(member, 0) + cents
    return updated


# ============================================================================
# Full computations
# ============================================================================


def check_conservation(
    balances: Mapping[str, int], tolerance_cents: int = TOLERANCE_CENTS
) -> int:
    """
    Verify that a closed set of net balances sums to zero.

    Returns:
        The (tolerated) discrepancy in cents

    Raises:
        ConsistencyError: If the sum is off by more than the tolerance
    """
    total = sum(balances.values())
    if abs(total) > tolerance_cents:
        logger.error(f"Balance set does not sum to zero: off by {total} cents")
        raise ConsistencyError(total)
    return total


def compute_pairwise_balance(
    user_a: str,
    user_b: str,
    expenses: Iterable[SharedExpense],
    settlements: Iterable[Settlement],
) -> PairwiseBalance:
    """
    Compute the signed balance between two users from scratch.

    Positive: user_b owes user_a. Negative: user_a owes user_b.
    """
    amount = sum(
        debt_pair_delta(debt, user_a, user_b)
        for debt in ledger_debts(expenses, settlements)
    )
    return PairwiseBalance.from_amount(user_a, user_b, amount)


def compute_pairwise_balances(
    participants: Sequence[str],
    expenses: Iterable[SharedExpense],
    settlements: Iterable[Settlement],
) -> list[PairwiseBalance]:
    """
    Compute every pairwise balance within a participant set in one pass.

    Pairs are ordered by participant position; ``user_a`` is always the
    earlier participant. Pairs with a zero balance are included.
    """
    order = {p: i for i, p in enumerate(dict.fromkeys(participants))}
    amounts: dict[tuple[str, str], int] = {}

    for debt in ledger_debts(expenses, settlements):
        if debt.creditor not in order or debt.debtor not in order:
            continue
        if order[debt.creditor] < order[debt.debtor]:
            key, cents = (debt.creditor, debt.debtor), debt.cents
        else:
            key, cents = (debt.debtor, debt.creditor), -debt.cents
        amounts[key] = amounts.get(key, 0) + cents

    members = list(order)
    return [
        PairwiseBalance.from_amount(a, b, amounts.get((a, b), 0))
        for i, a in enumerate(members)
        for b in members[i + 1 :]
    ]


def compute_net_balances(
    participants: Sequence[str],
    expenses: Iterable[SharedExpense],
    settlements: Iterable[Settlement],
) -> dict[str, int]:
    """
    Net balance of each participant within a closed participant set.

    ``net(M)`` is the sum of M's pairwise balances with every other member of
    the set, so the result always sums to exactly zero. Debts with anyone
    outside the set are ignored.
    """
    nets = {p: 0 for p in participants}
    for pair in compute_pairwise_balances(participants, expenses, settlements):
        nets[pair.user_a] += pair.amount_cents
        nets[pair.user_b] -= pair.amount_cents
    return nets


def compute_group_balances(
    group_id: str,
    members: Sequence[str],
    expenses: Iterable[SharedExpense],
    settlements: Iterable[Settlement],
    tolerance_cents: int = TOLERANCE_CENTS,
) -> GroupBalance:
    """
    Compute every member's net balance in a group.

    ``net(M) = Σ [payer == M ? others' shares : -M.share]`` over active group
    expenses, plus the effect of confirmed group settlements (paying raises the
    payer's net, receiving lowers the recipient's). Identities that appear in
    the group's ledger without being listed members are included so the set
    stays closed.

    Raises:
        ConsistencyError: If the net balances do not sum to zero
    """
    nets: dict[str, int] = {m: 0 for m in members}

    for expense in expenses:
        if expense.group_id == group_id:
            nets = apply_deltas(nets, expense_group_deltas(expense))
    for settlement in settlements:
        if settlement.group_id == group_id:
            nets = apply_deltas(nets, settlement_group_deltas(settlement))

    member_set = set(members)
    outsiders = [m for m in nets if m not in member_set]
    if outsiders:
        logger.warning(
            f"Group {group_id} ledger references non-members: {', '.join(outsiders)}"
        )

    check_conservation(nets, tolerance_cents)

    return GroupBalance(
        group_id=group_id,
        balances=[MemberBalance(member=m, net_balance_cents=c) for m, c in nets.items()],
    )


# ============================================================================
# Reports
# ============================================================================


def compute_balance_breakdown(
    user_a: str,
    user_b: str,
    expenses: Iterable[SharedExpense],
    settlements: Iterable[Settlement],
) -> BalanceBreakdown:
    """
    Per-expense view of the balance between two users.

    Positive amounts: user_b owes user_a.
    """
    lines = []
    unsettled = 0
    for expense in active_view(expenses):
        if not (expense.involves(user_a) and expense.involves(user_b)):
            continue
        delta = expense_pair_delta(expense, user_a, user_b)
        a_share = expense.get_share(user_a)
        b_share = expense.get_share(user_b)
        settled = all(s.settled for s in (a_share, b_share) if s is not None)
        if not settled:
            unsettled += abs(delta)
        lines.append(
            BreakdownLine(
                expense_id=expense.id,
                description=expense.description,
                date=expense.date,
                payer=expense.payer,
                a_share_cents=a_share.share_cents if a_share else 0,
                b_share_cents=b_share.share_cents if b_share else 0,
                balance_cents=delta,
                settled=settled,
            )
        )

    adjustment = sum(settlement_pair_delta(s, user_a, user_b) for s in settlements)
    total = sum(line.balance_cents for line in lines) + adjustment

    return BalanceBreakdown(
        user_a=user_a,
        user_b=user_b,
        total_cents=total,
        unsettled_cents=unsettled,
        expense_count=len(lines),
        settlement_adjustment_cents=adjustment,
        lines=lines,
    )


def compute_user_summary(
    user: str,
    expenses: Iterable[SharedExpense],
    settlements: Iterable[Settlement],
) -> UserSummary:
    """Summarize what a user is owed and owes, per counterparty."""
    expenses = active_view(expenses)
    counterparties: dict[str, int] = {}
    for debt in ledger_debts(expenses, settlements):
        if debt.creditor == user:
            counterparties[debt.debtor] = counterparties.get(debt.debtor, 0) + debt.cents
        elif debt.debtor == user:
            counterparties[debt.creditor] = (
                counterparties.get(debt.creditor, 0) - debt.cents
            )

    return UserSummary(
        user=user,
        owed_to_user_cents=sum(c for c in counterparties.values() if c > 0),
        owed_by_user_cents=-sum(c for c in counterparties.values() if c < 0),
        expense_count=sum(1 for e in expenses if e.involves(user)),
        counterparty_balances=counterparties,
    )
