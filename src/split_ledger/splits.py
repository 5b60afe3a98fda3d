"""Split configuration: turn a total and a strategy into cent-exact shares."""

import logging
from collections.abc import Sequence
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import assert_never

from .exceptions import ConsistencyError, ValidationError
from .models import (
    CustomSplit,
    EqualSplit,
    Participant,
    ParticipantShare,
    PercentageSplit,
    SplitError,
    SplitStrategy,
    SplitValidationResult,
)

logger = logging.getLogger(__name__)

TOLERANCE_CENTS = 1  # 0.01 currency unit
PERCENT_TOLERANCE = Decimal("0.01")
CENT = Decimal("0.01")

Amount = Decimal | int | str


def _invalid_amount(amount: object) -> ValidationError:
    return ValidationError(
        [SplitError(message=f"Invalid amount: {amount!r}", field="amount", value=str(amount))]
    )


def _as_decimal(amount: Amount) -> Decimal:
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation as e:
        raise _invalid_amount(amount) from e
    if not value.is_finite():
        raise _invalid_amount(amount)
    return value


def to_cents(amount: Amount) -> int:
    """
    Convert a decimal currency amount to integer cents.
    Uses ROUND_HALF_UP for consistency.

    Args:
        amount: Amount in currency units

    Returns:
        Amount in cents (integer)

    Raises:
        ValidationError: If the amount is not a finite number
    """
    cents = _as_decimal(amount) * 100
    try:
        return int(cents.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation as e:
        raise _invalid_amount(amount) from e


def from_cents(cents: int) -> Decimal:
    """Convert integer cents back to a 2dp Decimal."""
    return (Decimal(cents) / 100).quantize(CENT)


def format_amount(cents: int) -> str:
    """Format cents as a plain amount, e.g. 123456 -> '1,234.56'."""
    return f"{from_cents(cents):,.2f}"


def _has_sub_cent_precision(amount: Decimal) -> bool:
    exponent = amount.normalize().as_tuple().exponent
    return isinstance(exponent, int) and exponent < -2


# ============================================================================
# Allocation (integer cents)
# ============================================================================


def allocate_equal(total_cents: int, count: int) -> list[int]:
    """
    Split cents evenly. The first ``total % count`` participants, in list
    order, receive one extra cent.
    """
    if count <= 0:
        raise ValueError("Participant count must be positive")

    base = total_cents // count
    remainder = total_cents - base * count
    return [base + 1 if i < remainder else base for i in range(count)]


def allocate_percentages(total_cents: int, percentages: Sequence[Decimal]) -> list[int]:
    """
    Split cents by percentage, rounding each share half-up.

    The rounding residual goes to the first participant. When a negative
    residual would push that share below zero it moves to the first share
    large enough to absorb it.
    """
    shares = [
        int(
            (Decimal(total_cents) * pct / 100).quantize(
                Decimal("1"), rounding=ROUND_HALF_UP
            )
        )
        for pct in percentages
    ]
    residual = total_cents - sum(shares)
    if residual == 0 or not shares:
        return shares

    target = 0
    if residual < 0:
        target = next(
            (i for i, share in enumerate(shares) if share + residual >= 0), 0
        )
    shares[target] += residual
    logger.debug(f"Percentage split residual {residual} cents -> participant {target}")
    return shares


# ============================================================================
# Public split helpers (Decimal in, Decimal out)
# ============================================================================


def compute_equal_split(total: Amount, count: int) -> list[Decimal]:
    """
    Compute ``count`` equal shares that sum exactly to ``total``.

    Example:
        compute_equal_split(Decimal("100.00"), 3) -> [33.34, 33.33, 33.33]
    """
    errors: list[SplitError] = []
    total_cents = to_cents(total)
    if count <= 0:
        errors.append(
            SplitError(
                message="Participant count must be positive",
                field="participants",
                value=str(count),
            )
        )
    if total_cents < 0:
        errors.append(
            SplitError(message="Amount cannot be negative", field="amount", value=str(total))
        )
    if errors:
        raise ValidationError(errors)

    return [from_cents(c) for c in allocate_equal(total_cents, count)]


def compute_percentage_split(
    total: Amount, percentages: Sequence[Amount]
) -> list[Decimal]:
    """
    Compute shares from percentages.

    Each share is ``round_half_up(total * pct / 100, 2dp)``; the rounding
    residual is assigned to the first participant.

    Raises:
        ValidationError: If the amount is not positive, or percentages are
            out of range or do not sum to 100
    """
    total_cents = to_cents(total)
    pcts = [_as_decimal(p) for p in percentages]
    participants = [Participant(identity=str(i)) for i in range(len(pcts))]
    errors = _amount_errors(total, total_cents) + _percentage_errors(pcts, participants)
    if errors:
        raise ValidationError(errors)

    return [from_cents(c) for c in allocate_percentages(total_cents, pcts)]


def compute_custom_split(total: Amount, shares: Sequence[Amount]) -> list[Decimal]:
    """
    Check explicit shares against the total and return them at 2dp.

    Raises:
        ValidationError: If the amount is not positive, any share is negative
            or exceeds the total, or the shares do not sum to the total within
            one cent
    """
    total_dec = _as_decimal(total)
    values = [_as_decimal(s) for s in shares]
    participants = [Participant(identity=str(i)) for i in range(len(values))]
    errors = _amount_errors(total, to_cents(total_dec)) + _custom_errors(
        total_dec, values, participants
    )
    if errors:
        raise ValidationError(errors)

    return [v.quantize(CENT, rounding=ROUND_HALF_UP) for v in values]


# ============================================================================
# Validation
# ============================================================================


def _amount_errors(total: Amount, total_cents: int) -> list[SplitError]:
    if total_cents <= 0:
        return [SplitError(message="Amount must be positive", field="amount", value=str(total))]
    return []


def _percentage_errors(
    percentages: Sequence[Decimal], participants: Sequence[Participant]
) -> list[SplitError]:
    errors = []
    for index, (pct, participant) in enumerate(zip(percentages, participants)):
        name = participant.display_name(index)
        if pct < 0:
            errors.append(
                SplitError(
                    message=f"{name}: Percentage cannot be negative",
                    participant=name,
                    field="percentage",
                    value=str(pct),
                )
            )
        if pct > 100:
            errors.append(
                SplitError(
                    message=f"{name}: Percentage cannot exceed 100%",
                    participant=name,
                    field="percentage",
                    value=str(pct),
                )
            )

    total_pct = sum(percentages, Decimal("0"))
    if abs(total_pct - 100) > PERCENT_TOLERANCE:
        errors.append(
            SplitError(
                message=f"Percentages must sum to 100%, got {total_pct:.2f}%",
                field="percentage",
                value=f"{total_pct:.2f}",
            )
        )
    return errors


def _custom_errors(
    total: Decimal | None, shares: Sequence[Decimal], participants: Sequence[Participant]
) -> list[SplitError]:
    """Per-share checks; checks against the total are skipped when it is unknown."""
    errors = []
    for index, (share, participant) in enumerate(zip(shares, participants)):
        name = participant.display_name(index)
        if share < 0:
            errors.append(
                SplitError(
                    message=f"{name}: Share cannot be negative",
                    participant=name,
                    field="share",
                    value=str(share),
                )
            )
        elif total is not None and share > total:
            errors.append(
                SplitError(
                    message=(
                        f"{name}: Share ({format_amount(to_cents(share))}) cannot "
                        f"exceed total amount ({format_amount(to_cents(total))})"
                    ),
                    participant=name,
                    field="share",
                    value=str(share),
                )
            )
        if _has_sub_cent_precision(share):
            errors.append(
                SplitError(
                    message=f"{name}: Share ({share}) has more than 2 decimal places",
                    participant=name,
                    field="share",
                    value=str(share),
                )
            )

    if total is None:
        return errors

    total_cents = to_cents(total)
    shares_cents = sum(to_cents(s) for s in shares)
    if abs(shares_cents - total_cents) > TOLERANCE_CENTS:
        errors.append(
            SplitError(
                message=(
                    f"Split amounts ({format_amount(shares_cents)}) must sum to "
                    f"total amount ({format_amount(total_cents)})"
                ),
                field="share",
                value=format_amount(shares_cents),
            )
        )
    return errors


def _length_error(kind: str, got: int, expected: int) -> SplitError:
    return SplitError(
        message=f"Expected {expected} {kind} values (one per participant), got {got}",
        field=kind,
        value=str(got),
    )


def validate_split(
    total: Amount,
    strategy: SplitStrategy,
    participants: Sequence[Participant],
    payer: str | None = None,
) -> SplitValidationResult:
    """
    Validate a split configuration.

    Every rule is checked; the result lists all failures, each naming the
    offending participant and value where there is one. An amount that is
    not a finite number is reported like any other error.

    Args:
        total: Expense amount in currency units
        strategy: Equal, percentage or custom split
        participants: People sharing the expense, in split order
        payer: Who paid; when given they must be one of the participants

    Returns:
        Validation result with ``is_valid`` and the complete error list
    """
    errors: list[SplitError] = []
    total_dec: Decimal | None = None
    total_cents = 0
    try:
        total_dec = _as_decimal(total)
        total_cents = to_cents(total_dec)
    except ValidationError as e:
        total_dec = None
        errors.extend(e.errors)

    if total_dec is not None:
        errors.extend(_amount_errors(total, total_cents))
        if total_cents > 0 and _has_sub_cent_precision(total_dec):
            errors.append(
                SplitError(
                    message=f"Amount ({total_dec}) has more than 2 decimal places",
                    field="amount",
                    value=str(total_dec),
                )
            )

    if not participants:
        errors.append(
            SplitError(message="At least one participant is required", field="participants")
        )

    seen: set[str] = set()
    for index, participant in enumerate(participants):
        if participant.identity in seen:
            name = participant.display_name(index)
            errors.append(
                SplitError(
                    message=f"{name}: Duplicate participants are not allowed",
                    participant=name,
                    field="identity",
                    value=participant.identity,
                )
            )
        seen.add(participant.identity)

    if payer is not None and participants and payer not in seen:
        errors.append(
            SplitError(
                message=f"Payer {payer} must be one of the participants",
                field="payer",
                value=payer,
            )
        )

    count = len(participants)
    allocated: list[int] | None = None

    if isinstance(strategy, EqualSplit):
        if count and total_cents > 0:
            allocated = allocate_equal(total_cents, count)
    elif isinstance(strategy, PercentageSplit):
        if len(strategy.percentages) != count:
            errors.append(_length_error("percentage", len(strategy.percentages), count))
        pct_errors = _percentage_errors(strategy.percentages, participants)
        errors.extend(pct_errors)
        if not pct_errors and len(strategy.percentages) == count and total_cents > 0:
            allocated = allocate_percentages(total_cents, strategy.percentages)
    elif isinstance(strategy, CustomSplit):
        if len(strategy.shares) != count:
            errors.append(_length_error("share", len(strategy.shares), count))
        errors.extend(_custom_errors(total_dec, strategy.shares, participants))
        allocated = [to_cents(s) for s in strategy.shares]
    else:
        assert_never(strategy)

    if allocated is not None and count and not any(c > 0 for c in allocated):
        errors.append(
            SplitError(
                message="At least one participant must have a non-zero share",
                field="share",
            )
        )

    return SplitValidationResult(is_valid=not errors, errors=errors)


def compute_shares(
    total: Amount,
    strategy: SplitStrategy,
    participants: Sequence[Participant],
    payer: str | None = None,
) -> list[ParticipantShare]:
    """
    Validate a split and allocate exact cents to each participant.

    Custom shares accepted within the one-cent tolerance are corrected so the
    stored split sums exactly to the total; the correction goes to the
    largest share.

    Raises:
        ValidationError: With the complete error list if the split is invalid
        ConsistencyError: If the allocation does not add up to the total
    """
    result = validate_split(total, strategy, participants, payer=payer)
    if not result.is_valid:
        raise ValidationError(result.errors)

    total_cents = to_cents(total)
    if isinstance(strategy, EqualSplit):
        cents = allocate_equal(total_cents, len(participants))
    elif isinstance(strategy, PercentageSplit):
        cents = allocate_percentages(total_cents, strategy.percentages)
    elif isinstance(strategy, CustomSplit):
        cents = [to_cents(s) for s in strategy.shares]
        residual = total_cents - sum(cents)
        if residual != 0:
            largest = max(range(len(cents)), key=lambda i: cents[i])
            cents[largest] += residual
            logger.info(
                f"Applied rounding adjustment: {residual} cents "
                f"to participant {participants[largest].identity}"
            )
    else:
        assert_never(strategy)

    if sum(cents) != total_cents:
        raise ConsistencyError(
            sum(cents) - total_cents,
            f"Allocation of {sum(cents)} cents does not match total {total_cents}",
        )

    return [
        ParticipantShare(identity=p.identity, share_cents=c)
        for p, c in zip(participants, cents)
    ]
