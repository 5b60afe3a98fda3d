"""SplitLedger - Shared-expense balances, settlements and debt simplification."""

__version__ = "0.1.0"

from .config import Settings, load_settings
from .db import Database
from .models import (
    CustomSplit,
    EqualSplit,
    Participant,
    PercentageSplit,
    Settlement,
    SharedExpense,
    Transfer,
)
from .service import LedgerService
from .simplifier import simplify_debts
from .splits import (
    compute_custom_split,
    compute_equal_split,
    compute_percentage_split,
    validate_split,
)

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "CustomSplit",
    "EqualSplit",
    "Participant",
    "PercentageSplit",
    "Settlement",
    "SharedExpense",
    "Transfer",
    "LedgerService",
    "simplify_debts",
    "compute_custom_split",
    "compute_equal_split",
    "compute_percentage_split",
    "validate_split",
]
