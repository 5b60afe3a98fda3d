"""Settlement lifecycle: record, confirm and dispute payments between users.

A settlement moves ``pending -> confirmed`` (recipient only) or
``pending -> disputed`` (payer or recipient). Both end states are terminal.
Every transition is written with a compare-and-set on the pending status, so
two racing actors can never both win.
"""

import logging
from datetime import datetime
from typing import get_args

from .balances import settlement_group_deltas
from .cache import BalanceCache
from .config import Settings
from .exceptions import NotFoundError, StateError, ValidationError
from .models import (
    LedgerFilters,
    PaymentMethod,
    Settlement,
    SettlementStats,
    SettlementStatus,
    utcnow,
)
from .splits import Amount, format_amount, to_cents
from .store import LedgerStore

logger = logging.getLogger(__name__)

PAYMENT_METHODS: tuple[str, ...] = get_args(PaymentMethod)
MAX_NOTES_LENGTH = 500


def settlement_impact(settlement: Settlement) -> dict[str, int]:
    """
    Effect a settlement has (or would have, once confirmed) on net balances.

    The payer's net rises by the amount and the recipient's falls by it.
    """
    confirmed = settlement.model_copy(update={"status": "confirmed"})
    return settlement_group_deltas(confirmed)


class SettlementRecorder:
    """Records settlements and drives their state machine."""

    def __init__(self, store: LedgerStore, cache: BalanceCache, settings: Settings):
        """Initialize the recorder."""
        self.store = store
        self.cache = cache
        self.settings = settings

    def _get(self, settlement_id: int) -> Settlement:
        settlement = self.store.get_settlement(settlement_id)
        if settlement is None:
            raise NotFoundError("Settlement", settlement_id)
        return settlement

    def _check_relationship(self, payer: str, recipient: str):
        relationship = self.store.get_relationship(payer, recipient)
        if relationship is None:
            raise NotFoundError(
                "Relationship",
                f"{payer}/{recipient}",
                f"No relationship between {payer} and {recipient}",
            )
        if not relationship.is_active:
            raise StateError(
                f"Relationship between {payer} and {recipient} is "
                f"{relationship.status}; it must be accepted to settle up"
            )

    def _outstanding_cents(self, payer: str, recipient: str, group_id: str | None) -> int:
        """What the payer currently owes (pairwise, or to the group)."""
        if group_id is not None:
            return max(-self.cache.compute_group(group_id).get(payer), 0)
        return max(self.cache.compute_pairwise(recipient, payer).amount_cents, 0)

    def _recompute(self, settlement: Settlement):
        self.cache.recompute_pairwise(settlement.payer, settlement.recipient)
        if settlement.group_id is not None:
            self.cache.recompute_group(settlement.group_id)

    # ========================================================================
    # Creation
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
        """
        Record a pending settlement from ``payer`` to ``recipient``.

        Args:
            payer: User making the payment
            recipient: User receiving the payment
            amount: Amount in currency units
            payment_method: One of cash, upi, card, bank_transfer, other
            notes: Optional note (at most 500 characters)
            group_id: Group the settlement belongs to; peer settlements
                (no group) require an accepted relationship
            related_expense_ids: Expenses this payment is meant to cover
            date: When the payment was made (defaults to now)

        Returns:
            The saved settlement, status ``pending``

        Raises:
            ValidationError: If any input is invalid (all problems listed)
            NotFoundError: If there is no relationship or group
            StateError: If the relationship is not accepted
        """
        errors: list[str] = []
        amount_cents = to_cents(amount)
        if amount_cents <= 0:
            errors.append("Settlement amount must be positive")
        if payer == recipient:
            errors.append("Payer and recipient cannot be the same user")
        if payment_method not in PAYMENT_METHODS:
            errors.append(
                f"Invalid payment method '{payment_method}' "
                f"(expected one of: {', '.join(PAYMENT_METHODS)})"
            )
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            errors.append(f"Notes cannot exceed {MAX_NOTES_LENGTH} characters")
        if errors:
            raise ValidationError(errors)

        if group_id is not None:
            if self.store.get_group(group_id) is None:
                raise NotFoundError("Group", group_id)
        elif self.settings.require_relationship:
            self._check_relationship(payer, recipient)

        outstanding = self._outstanding_cents(payer, recipient, group_id)
        if amount_cents > outstanding + self.settings.tolerance_cents:
            message = (
                f"Settlement of {format_amount(amount_cents)} exceeds the "
                f"{format_amount(outstanding)} {payer} owes"
            )
            if self.settings.reject_overpayment:
                raise ValidationError([message])
            logger.warning(message)

        settlement = Settlement(
            payer=payer,
            recipient=recipient,
            amount_cents=amount_cents,
            payment_method=payment_method,  # type: ignore[arg-type]
            notes=notes,
            group_id=group_id,
            related_expense_ids=related_expense_ids or [],
            date=date or utcnow(),
        )
        self.store.save_settlement(settlement)

        logger.info(
            f"Recorded settlement {settlement.id}: {payer} -> {recipient} "
            f"{format_amount(amount_cents)} (pending)"
        )
        return settlement

    # ========================================================================
    # Transitions
    # ========================================================================

    def confirm(self, settlement_id: int, actor_id: str) -> Settlement:
        """
        Confirm a pending settlement. Only the recipient may confirm.

        Confirming again once confirmed is a no-op. On success the pairwise
        balance (and the group's, if any) is recomputed.

        Raises:
            NotFoundError: If the settlement does not exist
            StateError: If the actor is not the recipient or the settlement
                is not pending
        """
        settlement = self._get(settlement_id)

        if actor_id != settlement.recipient:
            raise StateError("Only the recipient can confirm a settlement")
        if settlement.status == "confirmed":
            logger.info(f"Settlement {settlement_id} already confirmed")
            return settlement
        if settlement.status != "pending":
            raise StateError(f"Cannot confirm a {settlement.status} settlement")

        confirmed = settlement.model_copy(
            update={
                "status": "confirmed",
                "confirmed_at": utcnow(),
                "confirmed_by": actor_id,
            }
        )
        if not self.store.transition_settlement(confirmed, expected_status="pending"):
            current = self._get(settlement_id)
            if current.status == "confirmed":
                logger.info(f"Settlement {settlement_id} confirmed concurrently")
                return current
            raise StateError(f"Cannot confirm a {current.status} settlement")

        logger.info(f"Settlement {settlement_id} confirmed by {actor_id}")
        self._recompute(confirmed)
        return confirmed

    def dispute(self, settlement_id: int, actor_id: str, reason: str) -> Settlement:
        """
        Dispute a pending settlement. Either party may dispute.

        Balances are left untouched: a pending settlement never counted.

        Raises:
            ValidationError: If the reason is blank or too long
            NotFoundError: If the settlement does not exist
            StateError: If the actor is not a party or the settlement is not
                pending
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError(["Dispute reason is required"])
        if len(reason) > MAX_NOTES_LENGTH:
            raise ValidationError(
                [f"Dispute reason cannot exceed {MAX_NOTES_LENGTH} characters"]
            )

        settlement = self._get(settlement_id)
        if not settlement.involves(actor_id):
            raise StateError("Only the payer or recipient can dispute a settlement")
        if settlement.status != "pending":
            raise StateError(f"Cannot dispute a {settlement.status} settlement")

        disputed = settlement.model_copy(
            update={
                "status": "disputed",
                "disputed_at": utcnow(),
                "disputed_by": actor_id,
                "dispute_reason": reason,
            }
        )
        if not self.store.transition_settlement(disputed, expected_status="pending"):
            current = self._get(settlement_id)
            raise StateError(f"Cannot dispute a {current.status} settlement")

        logger.info(f"Settlement {settlement_id} disputed by {actor_id}: {reason}")
        return disputed

    # ========================================================================
    # Queries
    # ========================================================================

    def get_settlement(self, settlement_id: int) -> Settlement:
        return self._get(settlement_id)

    def get_pending_for_user(self, user: str) -> list[Settlement]:
        """Pending settlements the user pays or receives, newest first."""
        return self.store.list_settlements_for_user(user, status="pending")

    def get_settlements_for_user(
        self,
        user: str,
        status: SettlementStatus | None = None,
        filters: LedgerFilters | None = None,
    ) -> list[Settlement]:
        return self.store.list_settlements_for_user(user, status, filters)

    def get_settlements_between(
        self, user_a: str, user_b: str, status: SettlementStatus | None = None
    ) -> list[Settlement]:
        return [
            s
            for s in self.store.list_settlements_for_user(user_a, status)
            if s.involves(user_b)
        ]

    def get_settlement_stats(self, user: str) -> SettlementStats:
        """
        Summarize a user's settlement activity.

        Average time to confirmation is in whole days, rounded.
        """
        settlements = self.store.list_settlements_for_user(user)
        stats = SettlementStats(total=len(settlements))

        confirm_seconds = 0.0
        confirmed_count = 0
        for settlement in settlements:
            if settlement.status == "pending":
                stats.pending += 1
            elif settlement.status == "confirmed":
                stats.confirmed += 1
            elif settlement.status == "disputed":
                stats.disputed += 1

            if settlement.payer == user:
                stats.total_paid_cents += settlement.amount_cents
            else:
                stats.total_received_cents += settlement.amount_cents

            if settlement.status == "confirmed" and settlement.confirmed_at:
                delta = settlement.confirmed_at - settlement.created_at
                confirm_seconds += delta.total_seconds()
                confirmed_count += 1

        if confirmed_count:
            stats.average_days_to_confirm = round(confirm_seconds / confirmed_count / 86400)

        return stats
