"""Interactive UI components for reviewing pending settlements."""

import logging
from typing import Any

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from .models import Settlement
from .splits import format_amount

logger = logging.getLogger(__name__)

REVIEW_ACTIONS = ("confirm", "dispute", "skip")


class ActionCompleter(Completer):
    """Prefix completer for review actions."""

    def __init__(self, actions: tuple[str, ...]):
        self.actions = actions

    def get_completions(self, document: Document, complete_event: Any):
        query = document.text.lower()
        for action in self.actions:
            if action.startswith(query):
                yield Completion(text=action, start_position=-len(document.text))


def describe_settlement(settlement: Settlement, current_user: str) -> str:
    """One-line description from the current user's point of view."""
    amount = format_amount(settlement.amount_cents)
    if settlement.payer == current_user:
        return f"You paid {settlement.recipient} {amount} ({settlement.payment_method})"
    return f"{settlement.payer} paid you {amount} ({settlement.payment_method})"


def select_settlement_interactive(
    pending: list[Settlement], current_user: str
) -> int | None:
    """
    Interactive selection of a pending settlement.

    Args:
        pending: Pending settlements, newest first
        current_user: Identity the CLI acts as

    Returns:
        Index of the selected settlement (0-based), or None to quit
    """
    if not pending:
        print("\n✅ No pending settlements")
        return None

    print("\n⏳ Pending Settlements:\n")
    for idx, settlement in enumerate(pending):
        date_str = settlement.date.strftime("%Y-%m-%d")
        print(f"  [{idx + 1}] #{settlement.id} {date_str}")
        print(f"      {describe_settlement(settlement, current_user)}")
        if settlement.notes:
            print(f"      Notes: {settlement.notes}")
        print()

    session: PromptSession[str] = PromptSession()
    try:
        while True:
            response = (
                session.prompt(f"Select settlement [1-{len(pending)}, or q to quit]: ")
                .strip()
                .lower()
            )
            if response in ("q", "quit", ""):
                return None

            try:
                selection = int(response) - 1
            except ValueError:
                print("❌ Please enter a number.")
                continue

            if 0 <= selection < len(pending):
                return selection
            print(f"❌ Please choose between 1 and {len(pending)}.")

    except (KeyboardInterrupt, EOFError):
        return None


def select_review_action(settlement: Settlement, current_user: str) -> str | None:
    """
    Ask what to do with a pending settlement.

    Only the recipient is offered ``confirm``; either party can dispute.

    Returns:
        'confirm', 'dispute' or 'skip'; None if cancelled
    """
    actions = REVIEW_ACTIONS
    if settlement.recipient != current_user:
        actions = tuple(a for a in REVIEW_ACTIONS if a != "confirm")

    session: PromptSession[str] = PromptSession(completer=ActionCompleter(actions))
    try:
        while True:
            result = session.prompt(
                f"Action ({'/'.join(actions)}): ", complete_while_typing=True
            ).strip().lower()
            if not result:
                return "skip"
            if result in actions:
                logger.debug(f"Review action for settlement {settlement.id}: {result}")
                return result
            print("❌ Unknown action. Press Tab to see the options.")

    except (KeyboardInterrupt, EOFError):
        print("\n⏭️  Skipped")
        return None


def prompt_dispute_reason() -> str | None:
    """Ask for a dispute reason. Blank input or Ctrl+C cancels."""
    session: PromptSession[str] = PromptSession()
    try:
        reason = session.prompt("Reason for dispute: ").strip()
    except (KeyboardInterrupt, EOFError):
        return None
    return reason or None


def confirm_action(message: str) -> bool:
    """Simple yes/no confirmation."""
    response = input(f"{message} [Y/n] ").strip().lower()
    return response in ("", "y", "yes")
