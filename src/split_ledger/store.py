"""Interface of the ledger store collaborator.

The engine only relies on single-record atomicity: one expense, settlement or
cache record is read or written at a time. Nothing here implies cross-record
transactions.
"""

from collections.abc import Collection
from typing import Protocol

from .models import (
    Group,
    GroupBalance,
    LedgerFilters,
    PairwiseBalance,
    Relationship,
    Settlement,
    SettlementStatus,
    SharedExpense,
)


class LedgerStore(Protocol):
    """Read/write access to persisted ledger records."""

    # Queries consumed by the balance aggregator

    def fetch_shared_expenses(
        self,
        participants: Collection[str] | None,
        filters: LedgerFilters | None = None,
    ) -> list[SharedExpense]:
        """Active expenses involving any of ``participants`` (None: no restriction)."""
        ...

    def fetch_confirmed_settlements(
        self,
        participants: Collection[str] | None,
        filters: LedgerFilters | None = None,
    ) -> list[Settlement]:
        """Confirmed settlements paid or received by any of ``participants``."""
        ...

    # Records

    def get_expense(self, expense_id: int) -> SharedExpense | None: ...

    def save_expense(self, expense: SharedExpense) -> int: ...

    def update_expense(self, expense: SharedExpense) -> None: ...

    def get_settlement(self, settlement_id: int) -> Settlement | None: ...

    def save_settlement(self, settlement: Settlement) -> int: ...

    def transition_settlement(
        self, settlement: Settlement, expected_status: SettlementStatus = "pending"
    ) -> bool:
        """Write a status change only if the stored status still matches."""
        ...

    def list_settlements_for_user(
        self,
        user: str,
        status: SettlementStatus | None = None,
        filters: LedgerFilters | None = None,
    ) -> list[Settlement]: ...

    def get_relationship(self, user_a: str, user_b: str) -> Relationship | None: ...

    def get_group(self, group_id: str) -> Group | None: ...

    # Derived balance caches

    def get_pairwise_balance(self, user_a: str, user_b: str) -> PairwiseBalance | None: ...

    def save_pairwise_balance(self, balance: PairwiseBalance) -> None: ...

    def get_group_balance(self, group_id: str) -> GroupBalance | None: ...

    def save_group_balance(self, balance: GroupBalance) -> None: ...
