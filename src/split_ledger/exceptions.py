"""Custom exceptions for SplitLedger."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import SplitError


class SplitLedgerError(Exception):
    """Base exception for all SplitLedger errors."""

    pass


class ConfigurationError(SplitLedgerError):
    """Raised when configuration is invalid or missing."""

    pass


class ValidationError(SplitLedgerError):
    """Raised when a split or settlement input violates an invariant.

    Always carries the complete list of problems found, never just the first.
    """

    def __init__(self, errors: "list[SplitError] | list[str]", message: str | None = None):
        self.errors = list(errors)
        super().__init__(
            message or "Validation failed: " + "; ".join(str(e) for e in self.errors)
        )

    @property
    def messages(self) -> list[str]:
        """Human-readable text of every error."""
        return [str(e) for e in self.errors]


class ConsistencyError(SplitLedgerError):
    """Raised when a closed set of balances does not sum to zero.

    This points at a defect upstream in the ledger; nothing is clipped or
    corrected automatically.
    """

    def __init__(self, discrepancy_cents: int, message: str | None = None):
        self.discrepancy_cents = discrepancy_cents
        super().__init__(
            message
            or f"Balances do not sum to zero (off by {discrepancy_cents} cents)"
        )


class StateError(SplitLedgerError):
    """Raised on an illegal settlement or relationship state transition."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class NotFoundError(SplitLedgerError):
    """Raised when a referenced record does not exist."""

    def __init__(self, kind: str, record_id: object, message: str | None = None):
        self.kind = kind
        self.record_id = record_id
        super().__init__(message or f"{kind} not found: {record_id}")
