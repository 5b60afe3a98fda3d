"""Pydantic domain models for SplitLedger.

Money is carried as integer cents everywhere in this module. The ``Decimal``
properties exist for display and are never fed back into arithmetic.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(UTC)


def _cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


# ============================================================================
# Split strategies
# ============================================================================


class EqualSplit(BaseModel):
    """Divide the total evenly; leftover cents go to the first participants."""

    kind: Literal["equal"] = "equal"


class PercentageSplit(BaseModel):
    """Divide the total by percentage, one value per participant."""

    kind: Literal["percentage"] = "percentage"
    percentages: list[Decimal]


class CustomSplit(BaseModel):
    """Explicit amount per participant."""

    kind: Literal["custom"] = "custom"
    shares: list[Decimal]


SplitStrategy = Annotated[
    EqualSplit | PercentageSplit | CustomSplit, Field(discriminator="kind")
]

SplitKind = Literal["equal", "percentage", "custom"]


class Participant(BaseModel):
    """A person taking part in a split, before shares are assigned."""

    identity: str
    name: str | None = None

    def display_name(self, index: int) -> str:
        """Name used in error messages (1-based fallback)."""
        return self.name or f"Participant {index + 1}"


class SplitError(BaseModel):
    """One problem found while validating a split."""

    message: str
    participant: str | None = None  # display name of the offender
    field: str | None = None  # 'share', 'percentage', 'amount', ...
    value: str | None = None  # offending value as entered

    def __str__(self) -> str:
        return self.message


class SplitValidationResult(BaseModel):
    """Outcome of validate_split: every error, never just the first."""

    is_valid: bool
    errors: list[SplitError] = Field(default_factory=list)

    @property
    def messages(self) -> list[str]:
        return [e.message for e in self.errors]


# ============================================================================
# Ledger records
# ============================================================================


class ParticipantShare(BaseModel):
    """A participant's share in a shared expense."""

    identity: str
    share_cents: int = Field(ge=0)
    settled: bool = False
    settled_at: datetime | None = None

    @property
    def share(self) -> Decimal:
        return _cents_to_decimal(self.share_cents)


class SharedExpense(BaseModel):
    """An amount paid by one party and split among several."""

    id: int | None = None
    amount_cents: int = Field(gt=0)
    payer: str
    split: SplitStrategy
    participants: list[ParticipantShare] = Field(min_length=1)
    group_id: str | None = None
    description: str = ""
    category: str | None = None
    date: datetime = Field(default_factory=utcnow)
    active: bool = True  # False = soft-deleted
    deleted_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def _check_split(self) -> "SharedExpense":
        total = sum(p.share_cents for p in self.participants)
        if abs(total - self.amount_cents) > 1:
            raise ValueError(
                f"Shares sum to {total} cents but expense amount is "
                f"{self.amount_cents} cents"
            )
        identities = [p.identity for p in self.participants]
        if len(set(identities)) != len(identities):
            raise ValueError("Duplicate participants are not allowed")
        if isinstance(self.split, PercentageSplit):
            if len(self.split.percentages) != len(self.participants):
                raise ValueError("One percentage is required per participant")
            if abs(sum(self.split.percentages) - 100) > Decimal("0.01"):
                raise ValueError("Percentages must sum to 100")
        if isinstance(self.split, CustomSplit):
            if len(self.split.shares) != len(self.participants):
                raise ValueError("One custom share is required per participant")
        return self

    @property
    def amount(self) -> Decimal:
        return _cents_to_decimal(self.amount_cents)

    @property
    def identities(self) -> list[str]:
        return [p.identity for p in self.participants]

    def get_share(self, identity: str) -> ParticipantShare | None:
        """Get a participant's share, or None if they are not in the split."""
        for participant in self.participants:
            if participant.identity == identity:
                return participant
        return None

    def involves(self, identity: str) -> bool:
        return identity == self.payer or self.get_share(identity) is not None

    def is_fully_settled(self) -> bool:
        return all(p.settled for p in self.participants)


SettlementStatus = Literal["pending", "confirmed", "disputed"]
PaymentMethod = Literal["cash", "upi", "card", "bank_transfer", "other"]


class Settlement(BaseModel):
    """A recorded payment from payer to recipient."""

    id: int | None = None
    payer: str
    recipient: str
    amount_cents: int = Field(gt=0)
    status: SettlementStatus = "pending"
    payment_method: PaymentMethod = "other"
    notes: str | None = Field(default=None, max_length=500)
    date: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    confirmed_at: datetime | None = None
    confirmed_by: str | None = None
    disputed_at: datetime | None = None
    disputed_by: str | None = None
    dispute_reason: str | None = Field(default=None, max_length=500)
    group_id: str | None = None
    related_expense_ids: list[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_parties(self) -> "Settlement":
        if self.payer == self.recipient:
            raise ValueError("Payer and recipient cannot be the same user")
        return self

    @property
    def amount(self) -> Decimal:
        return _cents_to_decimal(self.amount_cents)

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    @property
    def is_terminal(self) -> bool:
        return self.status in ("confirmed", "disputed")

    def involves(self, identity: str) -> bool:
        return identity in (self.payer, self.recipient)


RelationshipStatus = Literal["pending", "accepted", "declined", "blocked", "archived"]


class Relationship(BaseModel):
    """A peer relationship (friendship) between two identities."""

    id: int | None = None
    requester: str
    recipient: str
    status: RelationshipStatus = "pending"
    requested_at: datetime = Field(default_factory=utcnow)
    responded_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "accepted"

    def involves(self, identity: str) -> bool:
        return identity in (self.requester, self.recipient)


class GroupMember(BaseModel):
    identity: str
    active: bool = True


class Group(BaseModel):
    """A named set of members sharing expenses."""

    id: str
    name: str
    members: list[GroupMember] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def active_members(self) -> list[str]:
        return [m.identity for m in self.members if m.active]


class LedgerFilters(BaseModel):
    """Query filters understood by the ledger store."""

    start_date: datetime | None = None
    end_date: datetime | None = None
    group_id: str | None = None
    category: str | None = None


# ============================================================================
# Derived balances
# ============================================================================

BalanceDirection = Literal["a_owes_b", "b_owes_a", "settled"]


class PairwiseBalance(BaseModel):
    """Signed balance between two users. Positive: user_b owes user_a.

    Derived and cached; never the source of truth.
    """

    user_a: str
    user_b: str
    amount_cents: int
    direction: BalanceDirection
    last_updated: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_amount(cls, user_a: str, user_b: str, amount_cents: int) -> "PairwiseBalance":
        if amount_cents > 0:
            direction: BalanceDirection = "b_owes_a"
        elif amount_cents < 0:
            direction = "a_owes_b"
        else:
            direction = "settled"
        return cls(
            user_a=user_a, user_b=user_b, amount_cents=amount_cents, direction=direction
        )

    @property
    def amount(self) -> Decimal:
        return _cents_to_decimal(self.amount_cents)

    def oriented(self, user_a: str) -> "PairwiseBalance":
        """Same balance seen from ``user_a``'s side."""
        if user_a == self.user_a:
            return self
        return PairwiseBalance.from_amount(
            self.user_b, self.user_a, -self.amount_cents
        ).model_copy(update={"last_updated": self.last_updated})


class MemberBalance(BaseModel):
    member: str
    net_balance_cents: int  # positive: the group owes this member

    @property
    def net_balance(self) -> Decimal:
        return _cents_to_decimal(self.net_balance_cents)


class GroupBalance(BaseModel):
    """Per-member net balances of a group (derived, cached)."""

    group_id: str
    balances: list[MemberBalance]
    last_updated: datetime = Field(default_factory=utcnow)

    @property
    def is_settled(self) -> bool:
        return all(abs(b.net_balance_cents) <= 1 for b in self.balances)

    def as_mapping(self) -> dict[str, int]:
        return {b.member: b.net_balance_cents for b in self.balances}

    def get(self, member: str) -> int:
        for balance in self.balances:
            if balance.member == member:
                return balance.net_balance_cents
        return 0


class BreakdownLine(BaseModel):
    """One expense's effect on a pairwise balance."""

    expense_id: int | None
    description: str
    date: datetime
    payer: str
    a_share_cents: int
    b_share_cents: int
    balance_cents: int
    settled: bool


class BalanceBreakdown(BaseModel):
    """Detailed pairwise balance. Positive totals: user_b owes user_a."""

    user_a: str
    user_b: str
    total_cents: int
    unsettled_cents: int
    expense_count: int
    settlement_adjustment_cents: int
    lines: list[BreakdownLine]

    @property
    def a_owes_cents(self) -> int:
        return -self.total_cents if self.total_cents < 0 else 0

    @property
    def b_owes_cents(self) -> int:
        return self.total_cents if self.total_cents > 0 else 0

    @property
    def is_settled(self) -> bool:
        return abs(self.total_cents) <= 1


class UserSummary(BaseModel):
    """What a user is owed and owes across every counterparty."""

    user: str
    owed_to_user_cents: int
    owed_by_user_cents: int
    expense_count: int
    counterparty_balances: dict[str, int]  # positive: counterparty owes user

    @property
    def net_cents(self) -> int:
        return self.owed_to_user_cents - self.owed_by_user_cents


# ============================================================================
# Simplification
# ============================================================================


class Transfer(BaseModel):
    """A single payment instruction: from_user pays to_user."""

    from_user: str
    to_user: str
    amount_cents: int = Field(gt=0)

    @property
    def amount(self) -> Decimal:
        return _cents_to_decimal(self.amount_cents)


class SimplificationResult(BaseModel):
    """Original pairwise debts next to the simplified transfer plan."""

    original: list[Transfer]
    simplified: list[Transfer]
    balances: dict[str, int]
    group_id: str | None = None


class SimplificationStats(BaseModel):
    original_count: int
    simplified_count: int
    transactions_saved: int
    savings_percentage: int
    original_total_cents: int
    simplified_total_cents: int


class SettlementStats(BaseModel):
    """Settlement activity of one user."""

    total: int = 0
    pending: int = 0
    confirmed: int = 0
    disputed: int = 0
    total_paid_cents: int = 0
    total_received_cents: int = 0
    average_days_to_confirm: int = 0
