"""Balance cache: a materialized view over the ledger with explicit recompute."""

import logging
from collections.abc import Callable, Iterable

from .balances import (
    Debt,
    apply_deltas,
    check_conservation,
    compute_group_balances,
    compute_pairwise_balance,
    expense_debts,
    expense_group_deltas,
    expense_pair_delta,
    settlement_debt,
    settlement_group_deltas,
    settlement_pair_delta,
)
from .exceptions import NotFoundError
from .models import (
    GroupBalance,
    LedgerFilters,
    MemberBalance,
    PairwiseBalance,
    Settlement,
    SharedExpense,
    utcnow,
)
from .splits import TOLERANCE_CENTS
from .store import LedgerStore

logger = logging.getLogger(__name__)


def _touched_pairs(debts: Iterable[Debt]) -> list[tuple[str, str]]:
    """Canonically ordered pairs affected by a set of debts."""
    pairs = (tuple(sorted((d.creditor, d.debtor))) for d in debts)
    return list(dict.fromkeys(pairs))  # type: ignore[arg-type]


class BalanceCache:
    """
    Cached pairwise and group balances.

    The cache is never authoritative. ``recompute_*`` rebuilds a record from
    the ledger and overwrites it; ``apply_*`` folds a single record into the
    cached value using the same per-record functions the full computation
    uses, so both paths agree.
    """

    def __init__(self, store: LedgerStore, tolerance_cents: int = TOLERANCE_CENTS):
        """Initialize the cache."""
        self.store = store
        self.tolerance_cents = tolerance_cents

    # ========================================================================
    # Pairwise balances
    # ========================================================================

    def get_pairwise(self, user_a: str, user_b: str) -> PairwiseBalance | None:
        """Cached balance, or None if the pair was never computed."""
        return self.store.get_pairwise_balance(user_a, user_b)

    def compute_pairwise(self, user_a: str, user_b: str) -> PairwiseBalance:
        """Compute a pairwise balance from the ledger without touching the cache."""
        participants = [user_a, user_b]
        expenses = self.store.fetch_shared_expenses(participants)
        settlements = self.store.fetch_confirmed_settlements(participants)
        return compute_pairwise_balance(user_a, user_b, expenses, settlements)

    def recompute_pairwise(self, user_a: str, user_b: str) -> PairwiseBalance:
        """Rebuild a pairwise balance and overwrite the cached record."""
        balance = self.compute_pairwise(user_a, user_b)
        self.store.save_pairwise_balance(balance)
        logger.debug(
            f"Recomputed balance {user_a}/{user_b}: {balance.amount_cents} cents "
            f"({balance.direction})"
        )
        return balance

    def get_or_compute_pairwise(self, user_a: str, user_b: str) -> PairwiseBalance:
        cached = self.get_pairwise(user_a, user_b)
        return cached if cached is not None else self.recompute_pairwise(user_a, user_b)

    def verify_pairwise(self, user_a: str, user_b: str) -> bool:
        """
        Compare the cached balance with a fresh computation.

        Returns:
            True if the cache was correct. On drift the cache is overwritten
            with the fresh value and False is returned.
        """
        fresh = self.compute_pairwise(user_a, user_b)
        cached = self.get_pairwise(user_a, user_b)
        if cached is not None and cached.amount_cents == fresh.amount_cents:
            return True

        logger.warning(
            f"Balance cache drift for {user_a}/{user_b}: cached "
            f"{cached.amount_cents if cached else None}, actual {fresh.amount_cents}"
        )
        self.store.save_pairwise_balance(fresh)
        return False

    def _shift_pair(self, user_a: str, user_b: str, delta: int):
        cached = self.get_pairwise(user_a, user_b)
        # Uncached pairs are built from the ledger on first read
        if cached is None or delta == 0:
            return
        self.store.save_pairwise_balance(
            PairwiseBalance.from_amount(user_a, user_b, cached.amount_cents + delta)
        )

    # ========================================================================
    # Group balances
    # ========================================================================

    def get_group(self, group_id: str) -> GroupBalance | None:
        return self.store.get_group_balance(group_id)

    def compute_group(self, group_id: str) -> GroupBalance:
        """
        Compute a group's net balances from the ledger without touching the cache.

        Raises:
            NotFoundError: If the group does not exist
            ConsistencyError: If the balances do not sum to zero
        """
        group = self.store.get_group(group_id)
        if group is None:
            raise NotFoundError("Group", group_id)

        filters = LedgerFilters(group_id=group_id)
        expenses = self.store.fetch_shared_expenses(None, filters)
        settlements = self.store.fetch_confirmed_settlements(None, filters)
        return compute_group_balances(
            group_id,
            [m.identity for m in group.members],
            expenses,
            settlements,
            self.tolerance_cents,
        )

    def recompute_group(self, group_id: str) -> GroupBalance:
        """Rebuild a group's balances and overwrite the cached record."""
        balance = self.compute_group(group_id)
        self.store.save_group_balance(balance)
        logger.debug(f"Recomputed balances for group {group_id}")
        return balance

    def get_or_compute_group(self, group_id: str) -> GroupBalance:
        cached = self.get_group(group_id)
        return cached if cached is not None else self.recompute_group(group_id)

    def verify_group(self, group_id: str) -> bool:
        """Like ``verify_pairwise``, for a group's net balances."""
        fresh = self.compute_group(group_id)
        cached = self.get_group(group_id)
        if cached is not None and cached.as_mapping() == fresh.as_mapping():
            return True

        logger.warning(f"Balance cache drift for group {group_id}; overriding")
        self.store.save_group_balance(fresh)
        return False

    def _shift_group(self, group_id: str, deltas: dict[str, int]):
        cached = self.get_group(group_id)
        if cached is None or not deltas:
            return

        nets = apply_deltas(cached.as_mapping(), deltas)
        check_conservation(nets, self.tolerance_cents)
        self.store.save_group_balance(
            GroupBalance(
                group_id=group_id,
                balances=[
                    MemberBalance(member=m, net_balance_cents=c) for m, c in nets.items()
                ],
                last_updated=utcnow(),
            )
        )

    # ========================================================================
    # Incremental updates
    # ========================================================================

    def _apply(
        self,
        debts: list[Debt],
        pair_delta: Callable[[str, str], int],
        group_id: str | None,
        group_deltas: dict[str, int],
        sign: int,
    ):
        for user_a, user_b in _touched_pairs(debts):
            self._shift_pair(user_a, user_b, sign * pair_delta(user_a, user_b))
        if group_id is not None:
            self._shift_group(group_id, {m: sign * c for m, c in group_deltas.items()})

    def apply_expense(self, expense: SharedExpense, sign: int = 1):
        """
        Fold one expense into the cached balances.

        Args:
            expense: The expense as it contributes to the ledger (active)
            sign: 1 to add its effect, -1 to take it back out
        """
        self._apply(
            expense_debts(expense),
            lambda a, b: expense_pair_delta(expense, a, b),
            expense.group_id,
            expense_group_deltas(expense),
            sign,
        )

    def apply_settlement(self, settlement: Settlement, sign: int = 1):
        """Fold one confirmed settlement into the cached balances."""
        debt = settlement_debt(settlement)
        if debt is None:
            return
        self._apply(
            [debt],
            lambda a, b: settlement_pair_delta(settlement, a, b),
            settlement.group_id,
            settlement_group_deltas(settlement),
            sign,
        )
