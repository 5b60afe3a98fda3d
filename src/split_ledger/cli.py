"""CLI for SplitLedger."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal

import typer
from rich.console import Console
from rich.table import Table

from .config import load_settings
from .db import Database
from .exceptions import ConfigurationError, ValidationError
from .models import (
    CustomSplit,
    EqualSplit,
    LedgerFilters,
    Participant,
    PercentageSplit,
    SimplificationResult,
    SplitStrategy,
)
from .service import LedgerService
from .splits import compute_shares, from_cents
from .ui import (
    confirm_action,
    describe_settlement,
    prompt_dispute_reason,
    select_review_action,
    select_settlement_interactive,
)

app = typer.Typer(
    name="split-ledger",
    help="Track shared expenses, settle up, and simplify who owes whom",
)
expense_app = typer.Typer(help="Record and edit shared expenses")
settle_app = typer.Typer(help="Record, confirm and dispute settlements")
group_app = typer.Typer(help="Manage expense groups")
friend_app = typer.Typer(help="Manage friend relationships")

app.add_typer(expense_app, name="expense")
app.add_typer(settle_app, name="settle")
app.add_typer(group_app, name="group")
app.add_typer(friend_app, name="friend")

console = Console()

CURRENCY_SYMBOL = "$"

VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Verbose output")
USER_OPTION = typer.Option(
    None, "--user", "-u", help="Act as this user (defaults to `split-ledger use`)"
)
PERCENT_OPTION = typer.Option(
    None, "--percent", "-p", help="Percentage per participant (repeat, in order)"
)
SHARE_OPTION = typer.Option(
    None, "--share", "-s", help="Exact amount per participant (repeat, in order)"
)


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@contextmanager
def ledger_service(verbose: bool) -> Iterator[LedgerService]:
    """
    Open the database and yield a service; report errors and exit 1 on failure.

    Validation errors are listed in full, other errors as a single message.
    With --verbose the original exception is re-raised.
    """
    global CURRENCY_SYMBOL
    setup_logging(verbose)

    db: Database | None = None
    try:
        settings = load_settings()
        CURRENCY_SYMBOL = settings.currency_symbol
        db = Database(settings.database_path)
        yield LedgerService(settings, db)
    except ValidationError as e:
        console.print("\n[bold red]Validation failed:[/bold red]")
        for message in e.messages:
            console.print(f"  [red]•[/red] {message}")
        if verbose:
            raise
        sys.exit(1)
    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if db is not None:
            db.close()


def _current_user(service: LedgerService, user: str | None) -> str:
    identity = user or service.db.get_current_user()
    if not identity:
        raise ConfigurationError(
            "No current user. Run `split-ledger use <name>` or pass --user."
        )
    return identity


def _build_strategy(percent: list[str] | None, share: list[str] | None) -> SplitStrategy:
    if percent and share:
        raise typer.BadParameter("Use either --percent or --share, not both")
    if percent:
        return PercentageSplit(percentages=[Decimal(p) for p in percent])
    if share:
        return CustomSplit(shares=[Decimal(s) for s in share])
    return EqualSplit()


def _participants(identities: list[str]) -> list[Participant]:
    return [Participant(identity=i, name=i) for i in identities]


def format_money(cents: int, use_color: bool = True) -> str:
    """
    Format money in accounting style with alignment.

    Negative amounts use parentheses: ($85.02)
    Positive amounts have spaces:      $85.02
    The spaces ensure decimal points align in tables.
    """
    abs_amount = abs(from_cents(cents))
    symbol = CURRENCY_SYMBOL
    if cents < 0:
        if use_color:
            formatted = f"({symbol}[red]{abs_amount:,.2f}[/red])"
        else:
            formatted = f"({symbol}{abs_amount:,.2f})"
    else:
        if use_color:
            formatted = f" [green]{symbol}{abs_amount:,.2f}[/green] "
        else:
            formatted = f" {symbol}{abs_amount:,.2f} "
    return formatted


# ============================================================================
# Top-level commands
# ============================================================================


@app.command()
def use(
    identity: str = typer.Argument(..., help="Identity to act as"),
    verbose: bool = VERBOSE_OPTION,
):
    """Set the user the CLI acts as."""
    with ledger_service(verbose) as service:
        service.db.set_current_user(identity)
        console.print(f"[green]✓ Now acting as {identity}[/green]")


@app.command()
def split(
    amount: str = typer.Argument(..., help="Total amount"),
    participants: list[str] = typer.Argument(..., help="Participants, in order"),
    percent: list[str] | None = PERCENT_OPTION,
    share: list[str] | None = SHARE_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """
    Preview a split without recording anything.

    Every problem with the split is reported, not just the first.
    """
    with ledger_service(verbose):
        strategy = _build_strategy(percent, share)
        shares = compute_shares(amount, strategy, _participants(participants))

        table = Table(title=f"{strategy.kind.title()} split", header_style="bold magenta")
        table.add_column("Participant", style="cyan")
        table.add_column("Share", justify="right")
        for s in shares:
            table.add_row(s.identity, format_money(s.share_cents))
        console.print(table)
        console.print(f"  Total: {format_money(sum(s.share_cents for s in shares))}")


@app.command()
def balance(
    other: str | None = typer.Argument(None, help="Show the balance with this user"),
    group: str | None = typer.Option(None, "--group", "-g", help="Show a group's balances"),
    detailed: bool = typer.Option(False, "--detailed", "-d", help="Per-expense breakdown"),
    recompute: bool = typer.Option(
        False, "--recompute", help="Rebuild the cached balance from the ledger"
    ),
    user: str | None = USER_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Show what you owe and are owed."""
    with ledger_service(verbose) as service:
        if group:
            group_balance = (
                service.recompute_group_balances(group)
                if recompute
                else service.get_group_balances(group)
            )
            display_group_balance(group, group_balance.as_mapping())
            if group_balance.is_settled:
                console.print("\n[green]✓ Everyone is settled up[/green]")
            return

        me = _current_user(service, user)
        if other is None:
            summary = service.get_user_summary(me)
            table = Table(title=f"Balances for {me}", header_style="bold magenta")
            table.add_column("With", style="cyan")
            table.add_column("Balance", justify="right")
            for counterparty, cents in sorted(summary.counterparty_balances.items()):
                if cents:
                    table.add_row(counterparty, format_money(cents))
            console.print(table)
            console.print(f"  You are owed: {format_money(summary.owed_to_user_cents)}")
            console.print(f"  You owe:      {format_money(-summary.owed_by_user_cents)}")
            return

        pair = (
            service.recompute_pairwise_balance(me, other)
            if recompute
            else service.get_pairwise_balance(me, other)
        )
        if pair.direction == "settled":
            console.print(f"[green]✓ You and {other} are settled up[/green]")
        elif pair.direction == "b_owes_a":
            console.print(f"{other} owes you {format_money(pair.amount_cents)}")
        else:
            console.print(f"You owe {other} {format_money(-pair.amount_cents)}")

        if detailed:
            breakdown = service.get_detailed_balance(me, other)
            table = Table(title="Breakdown", header_style="bold magenta")
            table.add_column("ID", style="dim")
            table.add_column("Date")
            table.add_column("Description", style="cyan")
            table.add_column("Paid by")
            table.add_column("Effect", justify="right")
            for line in breakdown.lines:
                table.add_row(
                    str(line.expense_id),
                    line.date.strftime("%Y-%m-%d"),
                    line.description[:40],
                    line.payer,
                    format_money(line.balance_cents),
                )
            console.print(table)
            console.print(
                f"  Settlements: {format_money(breakdown.settlement_adjustment_cents)}"
            )


@app.command()
def simplify(
    participants: list[str] | None = typer.Argument(
        None, help="Participants to settle among"
    ),
    group: str | None = typer.Option(None, "--group", "-g", help="Settle a whole group"),
    verbose: bool = VERBOSE_OPTION,
):
    """Compute the fewest practical transfers that settle everyone up."""
    with ledger_service(verbose) as service:
        if group:
            result = service.get_group_simplified_settlements(group)
        elif participants and len(participants) >= 2:
            result = service.get_simplified_settlements(participants)
        else:
            raise typer.BadParameter("Give at least two participants or --group")

        display_simplification(result)
        stats = service.get_simplification_stats(result)
        console.print()
        console.print("[bold]Summary:[/bold]")
        console.print(f"  Original debts:      {stats.original_count}")
        console.print(f"  Simplified transfers: {stats.simplified_count}")
        console.print(
            f"  Transactions saved:  {stats.transactions_saved} "
            f"({stats.savings_percentage}%)"
        )


def display_group_balance(group_id: str, balances: dict[str, int]):
    table = Table(title=f"Group {group_id}", header_style="bold magenta")
    table.add_column("Member", style="cyan")
    table.add_column("Net", justify="right")
    for member, cents in balances.items():
        table.add_row(member, format_money(cents))
    console.print(table)


def display_simplification(result: SimplificationResult):
    """Display original debts next to the simplified plan."""
    for title, transfers in (
        ("Original debts", result.original),
        ("Simplified transfers", result.simplified),
    ):
        table = Table(title=title, header_style="bold magenta")
        table.add_column("From", style="cyan")
        table.add_column("To", style="cyan")
        table.add_column("Amount", justify="right")
        for t in transfers:
            table.add_row(t.from_user, t.to_user, format_money(t.amount_cents))
        console.print(table)

    if not result.simplified:
        console.print("[green]✓ Nothing to settle[/green]")


# ============================================================================
# Expenses
# ============================================================================


@expense_app.command("add")
def expense_add(
    amount: str = typer.Argument(..., help="Total amount"),
    participants: list[str] = typer.Argument(..., help="Participants, in order"),
    payer: str | None = typer.Option(None, "--payer", help="Who paid (defaults to you)"),
    description: str = typer.Option("", "--description", "-d", help="Description"),
    group: str | None = typer.Option(None, "--group", "-g", help="Group ID"),
    category: str | None = typer.Option(None, "--category", "-c", help="Category"),
    percent: list[str] | None = PERCENT_OPTION,
    share: list[str] | None = SHARE_OPTION,
    user: str | None = USER_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Record a shared expense."""
    with ledger_service(verbose) as service:
        paid_by = payer or _current_user(service, user)
        expense = service.create_expense(
            paid_by,
            amount,
            _participants(participants),
            strategy=_build_strategy(percent, share),
            group_id=group,
            description=description,
            category=category,
        )
        console.print(
            f"[green]✓ Recorded expense #{expense.id}: {paid_by} paid "
            f"{format_money(expense.amount_cents)}[/green]"
        )


@expense_app.command("list")
def expense_list(
    group: str | None = typer.Option(None, "--group", "-g", help="Only this group"),
    user: str | None = USER_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """List active expenses you are part of."""
    with ledger_service(verbose) as service:
        me = _current_user(service, user)
        expenses = service.db.fetch_shared_expenses([me], LedgerFilters(group_id=group))

        table = Table(title="Expenses", header_style="bold magenta")
        table.add_column("ID", style="dim")
        table.add_column("Date")
        table.add_column("Description", style="cyan")
        table.add_column("Paid by")
        table.add_column("Total", justify="right")
        table.add_column("Your share", justify="right")
        for expense in expenses:
            mine = expense.get_share(me)
            table.add_row(
                str(expense.id),
                expense.date.strftime("%Y-%m-%d"),
                expense.description[:40],
                expense.payer,
                format_money(expense.amount_cents),
                format_money(mine.share_cents) if mine else "—",
            )
        console.print(table)


@expense_app.command("resplit")
def expense_resplit(
    expense_id: int = typer.Argument(..., help="Expense ID"),
    participants: list[str] | None = typer.Argument(
        None, help="New participants (defaults to the current ones)"
    ),
    percent: list[str] | None = PERCENT_OPTION,
    share: list[str] | None = SHARE_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Change how an expense is split."""
    with ledger_service(verbose) as service:
        expense = service.update_expense_split(
            expense_id,
            _build_strategy(percent, share),
            _participants(participants) if participants else None,
        )
        for s in expense.participants:
            console.print(f"  {s.identity}: {format_money(s.share_cents)}")
        console.print(f"[green]✓ Re-split expense #{expense_id}[/green]")


@expense_app.command("remove")
def expense_remove(
    expense_id: int = typer.Argument(..., help="Expense ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
    verbose: bool = VERBOSE_OPTION,
):
    """Delete an expense (it can be restored)."""
    with ledger_service(verbose) as service:
        if not yes and not confirm_action(f"Remove expense #{expense_id}?"):
            console.print("[yellow]Cancelled.[/yellow]")
            return
        service.remove_expense(expense_id)
        console.print(f"[green]✓ Removed expense #{expense_id}[/green]")


@expense_app.command("restore")
def expense_restore(
    expense_id: int = typer.Argument(..., help="Expense ID"),
    verbose: bool = VERBOSE_OPTION,
):
    """Restore a removed expense."""
    with ledger_service(verbose) as service:
        service.restore_expense(expense_id)
        console.print(f"[green]✓ Restored expense #{expense_id}[/green]")


@expense_app.command("mark-settled")
def expense_mark_settled(
    expense_id: int = typer.Argument(..., help="Expense ID"),
    identity: str = typer.Argument(..., help="Participant whose share is settled"),
    verbose: bool = VERBOSE_OPTION,
):
    """Flag a participant's share of an expense as settled."""
    with ledger_service(verbose) as service:
        service.mark_participant_settled(expense_id, identity)
        console.print(f"[green]✓ Marked {identity} settled on #{expense_id}[/green]")


# ============================================================================
# Settlements
# ============================================================================


@settle_app.command("create")
def settle_create(
    recipient: str = typer.Argument(..., help="Who you paid"),
    amount: str = typer.Argument(..., help="Amount paid"),
    method: str = typer.Option(
        "other", "--method", "-m", help="cash, upi, card, bank_transfer or other"
    ),
    notes: str | None = typer.Option(None, "--notes", "-n", help="Optional note"),
    group: str | None = typer.Option(None, "--group", "-g", help="Group ID"),
    user: str | None = USER_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Record a payment you made. The recipient confirms it."""
    with ledger_service(verbose) as service:
        me = _current_user(service, user)
        settlement = service.create_settlement(
            me, recipient, amount, payment_method=method, notes=notes, group_id=group
        )
        console.print(
            f"[green]✓ Recorded settlement #{settlement.id} "
            f"({format_money(settlement.amount_cents)}), waiting for "
            f"{recipient} to confirm[/green]"
        )


@settle_app.command("confirm")
def settle_confirm(
    settlement_id: int = typer.Argument(..., help="Settlement ID"),
    user: str | None = USER_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Confirm a payment you received."""
    with ledger_service(verbose) as service:
        settlement = service.confirm_settlement(settlement_id, _current_user(service, user))
        console.print(f"[green]✓ Confirmed settlement #{settlement.id}[/green]")


@settle_app.command("dispute")
def settle_dispute(
    settlement_id: int = typer.Argument(..., help="Settlement ID"),
    reason: str = typer.Option(..., "--reason", "-r", help="Why it is disputed"),
    user: str | None = USER_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Dispute a pending payment."""
    with ledger_service(verbose) as service:
        service.dispute_settlement(settlement_id, _current_user(service, user), reason)
        console.print(f"[yellow]Disputed settlement #{settlement_id}[/yellow]")


@settle_app.command("list")
def settle_list(
    status: str | None = typer.Option(
        None, "--status", help="pending, confirmed or disputed"
    ),
    user: str | None = USER_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """List your settlements, newest first."""
    with ledger_service(verbose) as service:
        me = _current_user(service, user)
        if status not in (None, "pending", "confirmed", "disputed"):
            raise typer.BadParameter(f"Unknown status: {status}")
        settlements = service.get_settlements_for_user(me, status)  # type: ignore[arg-type]

        table = Table(title="Settlements", header_style="bold magenta")
        table.add_column("ID", style="dim")
        table.add_column("Date")
        table.add_column("Payment", style="cyan")
        table.add_column("Status")
        for s in settlements:
            table.add_row(
                str(s.id),
                s.date.strftime("%Y-%m-%d"),
                describe_settlement(s, me),
                s.status,
            )
        console.print(table)

        stats = service.get_settlement_stats(me)
        console.print(
            f"  Paid: {format_money(stats.total_paid_cents)}  "
            f"Received: {format_money(stats.total_received_cents)}  "
            f"Avg. days to confirm: {stats.average_days_to_confirm}"
        )


@settle_app.command("review")
def settle_review(
    user: str | None = USER_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Interactively confirm or dispute pending settlements."""
    with ledger_service(verbose) as service:
        me = _current_user(service, user)
        while True:
            pending = service.get_pending_settlements(me)
            idx = select_settlement_interactive(pending, me)
            if idx is None:
                return

            settlement = pending[idx]
            action = select_review_action(settlement, me)
            if action == "confirm" and settlement.id is not None:
                service.confirm_settlement(settlement.id, me)
                console.print(f"[green]✓ Confirmed settlement #{settlement.id}[/green]")
            elif action == "dispute" and settlement.id is not None:
                reason = prompt_dispute_reason()
                if reason is None:
                    console.print("[yellow]No reason given, skipped.[/yellow]")
                    continue
                service.dispute_settlement(settlement.id, me, reason)
                console.print(f"[yellow]Disputed settlement #{settlement.id}[/yellow]")
            elif action is None:
                return


# ============================================================================
# Groups and friends
# ============================================================================


@group_app.command("create")
def group_create(
    group_id: str = typer.Argument(..., help="Short group ID"),
    name: str = typer.Argument(..., help="Display name"),
    members: list[str] = typer.Argument(..., help="Member identities"),
    verbose: bool = VERBOSE_OPTION,
):
    """Create a group."""
    with ledger_service(verbose) as service:
        group = service.create_group(group_id, name, members)
        console.print(
            f"[green]✓ Created group {group.name} with {len(group.members)} members[/green]"
        )


@group_app.command("add-member")
def group_add_member(
    group_id: str = typer.Argument(..., help="Group ID"),
    identity: str = typer.Argument(..., help="Member to add"),
    verbose: bool = VERBOSE_OPTION,
):
    """Add a member to a group."""
    with ledger_service(verbose) as service:
        service.add_group_member(group_id, identity)
        console.print(f"[green]✓ Added {identity} to {group_id}[/green]")


@group_app.command("list")
def group_list(verbose: bool = VERBOSE_OPTION):
    """List groups."""
    with ledger_service(verbose) as service:
        table = Table(title="Groups", header_style="bold magenta")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Members")
        for group in service.list_groups():
            table.add_row(group.id, group.name, ", ".join(group.active_members))
        console.print(table)


@friend_app.command("add")
def friend_add(
    other: str = typer.Argument(..., help="Who to connect with"),
    user: str | None = USER_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Send a friend request."""
    with ledger_service(verbose) as service:
        service.request_relationship(_current_user(service, user), other)
        console.print(f"[green]✓ Friend request sent to {other}[/green]")


@friend_app.command("accept")
def friend_accept(
    other: str = typer.Argument(..., help="Who sent the request"),
    user: str | None = USER_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Accept a friend request."""
    with ledger_service(verbose) as service:
        service.respond_to_relationship(_current_user(service, user), other, accept=True)
        console.print(f"[green]✓ You and {other} are now friends[/green]")


@friend_app.command("decline")
def friend_decline(
    other: str = typer.Argument(..., help="Who sent the request"),
    user: str | None = USER_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Decline a friend request."""
    with ledger_service(verbose) as service:
        service.respond_to_relationship(_current_user(service, user), other, accept=False)
        console.print(f"[yellow]Declined request from {other}[/yellow]")


if __name__ == "__main__":
    app()
