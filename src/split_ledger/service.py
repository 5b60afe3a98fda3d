"""Service layer that composes the ledger store, balance cache and settlements.

The balance and simplification math lives in pure modules; this layer loads
the ledger snapshot, calls them, and keeps the cached balances in step with
every write.
"""

import logging
from collections.abc import Sequence
from datetime import datetime

from .balances import (
    compute_balance_breakdown,
    compute_pairwise_balances,
    compute_user_summary,
)
from .cache import BalanceCache
from .config import Settings
from .db import Database
from .exceptions import ConsistencyError, NotFoundError, StateError, ValidationError
from .models import (
    BalanceBreakdown,
    EqualSplit,
    Group,
    GroupBalance,
    GroupMember,
    LedgerFilters,
    PairwiseBalance,
    Participant,
    ParticipantShare,
    Relationship,
    Settlement,
    SettlementStats,
    SettlementStatus,
    SharedExpense,
    SimplificationResult,
    SimplificationStats,
    SplitStrategy,
    SplitValidationResult,
    UserSummary,
    utcnow,
)
from .settlements import SettlementRecorder
from .simplifier import get_simplification_stats, simplify_pairwise, validate_simplification
from .splits import Amount, compute_shares, format_amount, to_cents, validate_split

logger = logging.getLogger(__name__)


def _as_participants(participants: Sequence[Participant | str]) -> list[Participant]:
    return [p if isinstance(p, Participant) else Participant(identity=p) for p in participants]


class LedgerService:
    """Service for recording shared expenses and settling the balances they create."""

    def __init__(self, settings: Settings, database: Database):
        """Initialize the ledger service."""
        self.settings = settings
        self.db = database
        self.cache = BalanceCache(database, settings.tolerance_cents)
        self.settlements = SettlementRecorder(database, self.cache, settings)

    # ========================================================================
    # Balances
    # ========================================================================

    def recompute_pairwise_balance(self, user_a: str, user_b: str) -> PairwiseBalance:
        """Rebuild the cached balance of a pair from the ledger."""
        return self.cache.recompute_pairwise(user_a, user_b)

    def recompute_group_balances(self, group_id: str) -> GroupBalance:
        """Rebuild the cached net balances of a group from the ledger."""
        return self.cache.recompute_group(group_id)

    def get_pairwise_balance(self, user_a: str, user_b: str) -> PairwiseBalance:
        """Cached balance of a pair, computed on first use."""
        return self.cache.get_or_compute_pairwise(user_a, user_b).oriented(user_a)

    def get_group_balances(self, group_id: str) -> GroupBalance:
        return self.cache.get_or_compute_group(group_id)

    def get_detailed_balance(self, user_a: str, user_b: str) -> BalanceBreakdown:
        """Per-expense breakdown of what two users owe each other."""
        participants = [user_a, user_b]
        return compute_balance_breakdown(
            user_a,
            user_b,
            self.db.fetch_shared_expenses(participants),
            self.db.fetch_confirmed_settlements(participants),
        )

    def get_user_summary(self, user: str) -> UserSummary:
        return compute_user_summary(
            user,
            self.db.fetch_shared_expenses([user]),
            self.db.fetch_confirmed_settlements([user]),
        )

    # ========================================================================
    # Splits and expenses
    # ========================================================================

    def validate_split(
        self,
        amount: Amount,
        strategy: SplitStrategy,
        participants: Sequence[Participant | str],
        payer: str | None = None,
    ) -> SplitValidationResult:
        return validate_split(
            amount, strategy, _as_participants(participants), payer=payer
        )

    def _check_group_members(self, group_id: str, identities: Sequence[str]):
        group = self.db.get_group(group_id)
        if group is None:
            raise NotFoundError("Group", group_id)
        members = set(group.active_members)
        outsiders = [i for i in identities if i not in members]
        if outsiders:
            raise ValidationError(
                [f"{i}: Not an active member of group {group.name}" for i in outsiders]
            )

    def _get_expense(self, expense_id: int) -> SharedExpense:
        expense = self.db.get_expense(expense_id)
        if expense is None:
            raise NotFoundError("Expense", expense_id)
        return expense

    def create_expense(
        self,
        payer: str,
        amount: Amount,
        participants: Sequence[Participant | str],
        strategy: SplitStrategy | None = None,
        group_id: str | None = None,
        description: str = "",
        category: str | None = None,
        date: datetime | None = None,
    ) -> SharedExpense:
        """
        Split an expense and add it to the ledger.

        The payer must be one of the participants; their own share is marked
        settled straight away.

        Args:
            payer: Who paid
            amount: Total in currency units
            participants: Who shares the cost, in split order
            strategy: How to split (defaults to equal)
            group_id: Group the expense belongs to
            description: Free text
            category: Optional category label
            date: When the expense happened (defaults to now)

        Returns:
            The saved expense

        Raises:
            ValidationError: With every problem if the split is invalid
            NotFoundError: If the group does not exist
        """
        strategy = strategy or EqualSplit()
        people = _as_participants(participants)
        shares = compute_shares(amount, strategy, people, payer=payer)

        if group_id is not None:
            self._check_group_members(group_id, [payer, *(p.identity for p in people)])

        now = utcnow()
        shares = [
            s.model_copy(update={"settled": True, "settled_at": now})
            if s.identity == payer
            else s
            for s in shares
        ]
        expense = SharedExpense(
            amount_cents=to_cents(amount),
            payer=payer,
            split=strategy,
            participants=shares,
            group_id=group_id,
            description=description,
            category=category,
            date=date or now,
        )
        self.db.save_expense(expense)
        self.cache.apply_expense(expense)

        logger.info(
            f"Created expense {expense.id}: {payer} paid "
            f"{format_amount(expense.amount_cents)} split {strategy.kind} "
            f"among {len(shares)}"
        )
        return expense

    def update_expense_split(
        self,
        expense_id: int,
        strategy: SplitStrategy,
        participants: Sequence[Participant | str] | None = None,
        amount: Amount | None = None,
    ) -> SharedExpense:
        """
        Re-split an existing expense.

        Settled flags are kept for participants who stay in the split.

        Raises:
            NotFoundError: If the expense does not exist
            StateError: If the expense was deleted
            ValidationError: If the new split is invalid
        """
        old = self._get_expense(expense_id)
        if not old.active:
            raise StateError(f"Cannot re-split deleted expense {expense_id}")

        people = (
            _as_participants(participants)
            if participants is not None
            else [Participant(identity=i) for i in old.identities]
        )
        total = amount if amount is not None else old.amount
        shares = compute_shares(total, strategy, people, payer=old.payer)

        if old.group_id is not None:
            self._check_group_members(old.group_id, [old.payer, *(p.identity for p in people)])

        merged: list[ParticipantShare] = []
        for share in shares:
            previous = old.get_share(share.identity)
            if share.identity == old.payer:
                share = share.model_copy(update={"settled": True, "settled_at": utcnow()})
            elif previous is not None and previous.settled:
                share = share.model_copy(
                    update={"settled": True, "settled_at": previous.settled_at}
                )
            merged.append(share)

        updated = old.model_copy(
            update={
                "amount_cents": to_cents(total),
                "split": strategy,
                "participants": merged,
                "updated_at": utcnow(),
            }
        )
        self.db.update_expense(updated)
        self.cache.apply_expense(old, sign=-1)
        self.cache.apply_expense(updated)

        logger.info(f"Re-split expense {expense_id} ({strategy.kind})")
        return updated

    def remove_expense(self, expense_id: int) -> SharedExpense:
        """Soft-delete an expense. It stays in the database but stops counting."""
        expense = self._get_expense(expense_id)
        if not expense.active:
            raise StateError(f"Expense {expense_id} is already deleted")

        now = utcnow()
        removed = expense.model_copy(
            update={"active": False, "deleted_at": now, "updated_at": now}
        )
        self.db.update_expense(removed)
        self.cache.apply_expense(expense, sign=-1)

        logger.info(f"Removed expense {expense_id}")
        return removed

    def restore_expense(self, expense_id: int) -> SharedExpense:
        """Undo a soft delete."""
        expense = self._get_expense(expense_id)
        if expense.active:
            raise StateError(f"Expense {expense_id} is not deleted")

        restored = expense.model_copy(
            update={"active": True, "deleted_at": None, "updated_at": utcnow()}
        )
        self.db.update_expense(restored)
        self.cache.apply_expense(restored)

        logger.info(f"Restored expense {expense_id}")
        return restored

    def mark_participant_settled(self, expense_id: int, identity: str) -> SharedExpense:
        """
        Flag a participant's share as settled.

        This is bookkeeping only; balances change through confirmed
        settlements.
        """
        expense = self._get_expense(expense_id)
        share = expense.get_share(identity)
        if share is None:
            raise NotFoundError(
                "Participant", identity, f"{identity} is not part of expense {expense_id}"
            )
        if share.settled:
            return expense

        now = utcnow()
        updated = expense.model_copy(
            update={
                "participants": [
                    p.model_copy(update={"settled": True, "settled_at": now})
                    if p.identity == identity
                    else p
                    for p in expense.participants
                ],
                "updated_at": now,
            }
        )
        self.db.update_expense(updated)
        return updated

    # ========================================================================
    # Simplification
    # ========================================================================

    def _simplify(
        self,
        participants: Sequence[str],
        filters: LedgerFilters | None,
        group_id: str | None = None,
    ) -> SimplificationResult:
        if group_id is not None:
            expenses = self.db.fetch_shared_expenses(None, filters)
            settlements = self.db.fetch_confirmed_settlements(None, filters)
        else:
            expenses = self.db.fetch_shared_expenses(participants, filters)
            settlements = self.db.fetch_confirmed_settlements(participants, filters)

        pairwise = compute_pairwise_balances(participants, expenses, settlements)
        result = simplify_pairwise(pairwise, self.settings.tolerance_cents, group_id)

        if not validate_simplification(
            result.balances, result.simplified, self.settings.tolerance_cents
        ):
            raise ConsistencyError(
                0, "Simplified transfers do not settle every balance"
            )

        logger.info(
            f"Simplified {len(result.original)} debts into "
            f"{len(result.simplified)} transfers"
        )
        return result

    def get_simplified_settlements(
        self,
        participants: Sequence[str],
        filters: LedgerFilters | None = None,
    ) -> SimplificationResult:
        """
        Settle-up plan for a set of participants.

        Only debts between members of the set are considered, so the
        participants' net balances always form a closed set.
        """
        return self._simplify(list(dict.fromkeys(participants)), filters)

    def get_group_simplified_settlements(self, group_id: str) -> SimplificationResult:
        """Settle-up plan for everyone with a balance in a group."""
        balance = self.cache.compute_group(group_id)
        identities = [b.member for b in balance.balances]
        return self._simplify(identities, LedgerFilters(group_id=group_id), group_id)

    def get_simplification_stats(self, result: SimplificationResult) -> SimplificationStats:
        return get_simplification_stats(result)

    # ========================================================================
    # Settlements
    # ========================================================================

    def create_settlement(
        self,
        payer: str,
        recipient: str,
        amount: Amount,
        payment_method: str = "other",
        notes: str | None = None,
        group_id: str | None = None,
        related_expense_ids: list[int] | None = None,
        date: datetime | None = None,
    ) -> Settlement:
        return self.settlements.create_settlement(
            payer,
            recipient,
            amount,
            payment_method=payment_method,
            notes=notes,
            group_id=group_id,
            related_expense_ids=related_expense_ids,
            date=date,
        )

    def confirm_settlement(self, settlement_id: int, actor_id: str) -> Settlement:
        return self.settlements.confirm(settlement_id, actor_id)

    def dispute_settlement(self, settlement_id: int, actor_id: str, reason: str) -> Settlement:
        return self.settlements.dispute(settlement_id, actor_id, reason)

    def get_pending_settlements(self, user: str) -> list[Settlement]:
        return self.settlements.get_pending_for_user(user)

    def get_settlements_for_user(
        self,
        user: str,
        status: SettlementStatus | None = None,
        filters: LedgerFilters | None = None,
    ) -> list[Settlement]:
        return self.settlements.get_settlements_for_user(user, status, filters)

    def get_settlement_stats(self, user: str) -> SettlementStats:
        return self.settlements.get_settlement_stats(user)

    # ========================================================================
    # Relationships and groups
    # ========================================================================

    def request_relationship(self, requester: str, recipient: str) -> Relationship:
        """Ask another user to connect. Peer settlements need an accepted one."""
        if requester == recipient:
            raise ValidationError(["Cannot add yourself as a friend"])
        existing = self.db.get_relationship(requester, recipient)
        if existing is not None:
            raise StateError(
                f"Relationship between {requester} and {recipient} already "
                f"exists ({existing.status})"
            )
        relationship = Relationship(requester=requester, recipient=recipient)
        self.db.save_relationship(relationship)
        logger.info(f"{requester} sent a friend request to {recipient}")
        return relationship

    def respond_to_relationship(self, actor: str, other: str, accept: bool) -> Relationship:
        """
        Accept or decline a pending request. Only its recipient may respond.

        Raises:
            NotFoundError: If there is no request between the users
            StateError: If the actor is not the recipient or it is not pending
        """
        relationship = self.db.get_relationship(actor, other)
        if relationship is None or relationship.id is None:
            raise NotFoundError("Relationship", f"{actor}/{other}")
        if relationship.recipient != actor:
            raise StateError("Only the recipient can respond to a friend request")
        if relationship.status != "pending":
            raise StateError(f"Friend request is already {relationship.status}")

        status = "accepted" if accept else "declined"
        self.db.set_relationship_status(relationship.id, status)
        logger.info(f"{actor} {status} friend request from {other}")
        return relationship.model_copy(update={"status": status, "responded_at": utcnow()})

    def create_group(self, group_id: str, name: str, members: Sequence[str]) -> Group:
        if self.db.get_group(group_id) is not None:
            raise StateError(f"Group {group_id} already exists")
        group = Group(
            id=group_id,
            name=name,
            members=[GroupMember(identity=m) for m in dict.fromkeys(members)],
        )
        self.db.save_group(group)
        logger.info(f"Created group {group_id} with {len(group.members)} members")
        return group

    def add_group_member(self, group_id: str, identity: str) -> Group:
        group = self.db.get_group(group_id)
        if group is None:
            raise NotFoundError("Group", group_id)

        existing = next((m for m in group.members if m.identity == identity), None)
        if existing is not None and existing.active:
            return group
        if existing is not None:
            existing.active = True
        else:
            group.members.append(GroupMember(identity=identity))

        self.db.save_group(group)
        return group

    def list_groups(self) -> list[Group]:
        return self.db.list_groups()
