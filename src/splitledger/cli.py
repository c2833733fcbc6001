"""CLI for SplitLedger using Typer."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal, InvalidOperation

import typer
from rich.console import Console
from rich.table import Table

from .config import load_settings
from .db import Database
from .mcp_server import run_server
from .models import (
    ExpenseRequest,
    ObligationStatus,
    ObligationView,
    ParticipantInput,
    SettlementMethod,
    SettlementRequest,
    SplitType,
)
from .service import LedgerService

app = typer.Typer(
    name="splitledger",
    help="Track shared expenses and settle debts with the fewest payments",
)

console = Console()


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@contextmanager
def open_service() -> Iterator[LedgerService]:
    """Build a service from the environment and close it afterwards."""
    settings = load_settings()
    service = LedgerService(settings, Database(settings.database_path))
    try:
        yield service
    finally:
        service.close()


def fail(e: Exception, verbose: bool):
    console.print(f"\n[bold red]Error:[/bold red] {e}")
    if verbose:
        raise e
    sys.exit(1)


def format_money(amount: Decimal, use_color: bool = True) -> str:
    """
    Format money in accounting style.

    Negative amounts use parentheses: ($85.02)
    Positive amounts have spaces:      $85.02
    """
    abs_amount = abs(amount)
    if amount < 0:
        if use_color:
            return f"($[red]{abs_amount:,.2f}[/red])"
        return f"(${abs_amount:,.2f})"
    if use_color:
        return f" [green]${abs_amount:,.2f}[/green] "
    return f" ${abs_amount:,.2f} "


def parse_participant(raw: str) -> tuple[int, Decimal | None]:
    """Parse USER_ID or USER_ID:VALUE."""
    user_part, _, value_part = raw.partition(":")
    try:
        user_id = int(user_part)
        value = Decimal(value_part) if value_part else None
    except (ValueError, InvalidOperation):
        raise typer.BadParameter(
            f"Invalid participant '{raw}', expected USER_ID or USER_ID:VALUE"
        ) from None
    return user_id, value


def print_obligations(records: list[ObligationView], title: str):
    """Render obligations as a table, or a notice when there are none."""
    if not records:
        console.print("[yellow]No obligations found.[/yellow]")
        return

    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Date")
    table.add_column("Description")
    table.add_column("Owed by", style="cyan")
    table.add_column("Paid by", style="cyan")
    table.add_column("Amount", justify="right")
    table.add_column("Status", style="yellow")
    for o in records:
        table.add_row(
            str(o.id),
            o.transaction_date.date().isoformat(),
            o.description,
            o.owed_by_name,
            o.paid_by_name,
            format_money(o.amount),
            o.status.value,
        )
    console.print(table)


CALLER_OPTION = typer.Option(..., "--as", help="Id of the user making the request")
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Verbose output")


@app.command()
def expense(
    amount: str = typer.Argument(..., help="Expense total, e.g. 90.00"),
    description: str = typer.Argument(..., help="What the expense was for"),
    paid_by: int = typer.Option(..., "--paid-by", help="User who paid"),
    participants: list[str] = typer.Option(
        ...,
        "--participant",
        "-p",
        help="USER_ID, or USER_ID:VALUE for exact/percentage splits (repeatable)",
    ),
    split_type: SplitType = typer.Option(
        SplitType.EQUAL, "--split", "-s", help="How to split the total"
    ),
    category: str | None = typer.Option(None, "--category", help="Category"),
    notes: str | None = typer.Option(None, "--notes", help="Free-form notes"),
    caller: int = CALLER_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """
    Record an expense split between participants.

    The payer must be one of the participants.
    """
    setup_logging(verbose)

    inputs = []
    for raw in participants:
        user_id, value = parse_participant(raw)
        if split_type == SplitType.PERCENTAGE:
            inputs.append(ParticipantInput(user_id=user_id, percentage=value))
        else:
            inputs.append(ParticipantInput(user_id=user_id, amount=value))

    try:
        request = ExpenseRequest(
            paid_by=paid_by,
            participants=inputs,
            total_amount=Decimal(amount),
            description=description,
            category=category,
            split_type=split_type,
            notes=notes,
        )
        with open_service() as service:
            obligations = service.record_expense(request, created_by=caller)
    except Exception as e:
        fail(e, verbose)
        return

    table = Table(
        title=f"Expense {obligations[0].group_id}",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("ID", style="dim", width=6)
    table.add_column("Participant", style="cyan")
    table.add_column("Share", justify="right", width=14)
    table.add_column("Owes", style="yellow")
    for o in obligations:
        owes = "-" if o.owed_by == o.paid_by else o.paid_by_name
        table.add_row(str(o.id), o.owed_by_name, format_money(o.amount), owes)

    console.print(table)
    console.print(
        f"\n[bold green]✓ Recorded {format_money(Decimal(amount)).strip()} "
        f"paid by {obligations[0].paid_by_name}[/bold green]"
    )


@app.command()
def balance(
    user_a: int = typer.Argument(..., help="Viewing user"),
    user_b: int = typer.Argument(..., help="Other user"),
    verbose: bool = VERBOSE_OPTION,
):
    """Show the balance between two users."""
    setup_logging(verbose)
    try:
        with open_service() as service:
            view = service.get_pair_balance(user_a, user_b)
    except Exception as e:
        fail(e, verbose)
        return

    console.print(f"\n[bold]{view.user_name} ↔ {view.other_user_name}[/bold]")
    console.print(f"  {view.description}")
    console.print(f"  Net for {view.user_name}: {format_money(-view.amount)}")
    console.print(f"  Transactions: {view.transaction_count}")


@app.command()
def balances(
    user_id: int = typer.Argument(..., help="User to report on"),
    verbose: bool = VERBOSE_OPTION,
):
    """List every unsettled balance of a user."""
    setup_logging(verbose)
    try:
        with open_service() as service:
            views = service.get_user_balances(user_id)
    except Exception as e:
        fail(e, verbose)
        return

    if not views:
        console.print("[green]All settled up.[/green]")
        return

    table = Table(title="Balances", show_header=True, header_style="bold magenta")
    table.add_column("With", style="cyan")
    table.add_column("Net", justify="right", width=14)
    table.add_column("Description")
    for view in views:
        table.add_row(view.other_user_name, format_money(-view.amount), view.description)
    console.print(table)


@app.command()
def settle(
    amount: str = typer.Argument(..., help="Amount paid"),
    payer: int = typer.Option(..., "--payer", help="User paying off debt"),
    payee: int = typer.Option(..., "--payee", help="User receiving the payment"),
    method: SettlementMethod = typer.Option(
        SettlementMethod.CASH, "--method", "-m", help="Payment method"
    ),
    description: str | None = typer.Option(None, "--description", "-d"),
    reference_id: str | None = typer.Option(
        None, "--reference", help="External payment reference"
    ),
    notes: str | None = typer.Option(None, "--notes"),
    caller: int = CALLER_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Record a payment that reduces what payer owes payee."""
    setup_logging(verbose)
    try:
        request = SettlementRequest(
            payer_id=payer,
            payee_id=payee,
            amount=Decimal(amount),
            method=method,
            description=description,
            reference_id=reference_id,
            notes=notes,
        )
        with open_service() as service:
            settlement = service.create_settlement(request, created_by=caller)
            remaining = service.get_pair_balance(payer, payee)
    except Exception as e:
        fail(e, verbose)
        return

    console.print(
        f"\n[bold green]✓ Settlement {settlement.id} recorded "
        f"({settlement.method})[/bold green]"
    )
    console.print(f"  Remaining: {remaining.description}")


@app.command()
def optimize(
    user_ids: list[int] = typer.Argument(..., help="Group members (at least 3)"),
    verbose: bool = VERBOSE_OPTION,
):
    """Suggest the fewest payments that settle a group."""
    setup_logging(verbose)
    try:
        with open_service() as service:
            result = service.optimize_group(user_ids)
    except Exception as e:
        fail(e, verbose)
        return

    if not result.suggested_payments:
        console.print("[green]Nothing to settle in this group.[/green]")
        return

    table = Table(
        title="Suggested Payments", show_header=True, header_style="bold magenta"
    )
    table.add_column("From", style="cyan")
    table.add_column("To", style="cyan")
    table.add_column("Amount", justify="right", width=14)
    for p in result.suggested_payments:
        table.add_row(p.from_user_name, p.to_user_name, format_money(p.amount))
    console.print(table)
    console.print(f"\n{result.optimization_summary}")
    console.print(f"Total: {format_money(result.total_optimized_amount)}")


@app.command()
def summary(
    user_id: int = typer.Argument(..., help="User to summarize"),
    verbose: bool = VERBOSE_OPTION,
):
    """Show a user's totals."""
    setup_logging(verbose)
    try:
        with open_service() as service:
            s = service.get_user_summary(user_id)
            o = service.get_user_obligation_summary(user_id)
    except Exception as e:
        fail(e, verbose)
        return

    console.print(f"\n[bold]{s.user_name}[/bold]")
    console.print(f"  You owe:        {format_money(-s.total_owed)}")
    console.print(f"  Owed to you:    {format_money(s.total_owed_to)}")
    console.print(f"  Net:            {format_money(s.net_balance)}")
    console.print(f"  Open balances:  {s.active_balance_count}")
    console.print(f"  Paid:           {format_money(s.total_paid, use_color=False)}")
    console.print(f"  Received:       {format_money(s.total_received, use_color=False)}")

    last = "-"
    if o.last_transaction_date:
        last = o.last_transaction_date.date().isoformat()
    console.print("\n[bold]Obligations:[/bold]")
    console.print(f"  Paid for:       {format_money(o.total_paid, use_color=False)}")
    console.print(f"  Own shares:     {format_money(o.total_owed, use_color=False)}")
    console.print(f"  Net paid:       {format_money(o.net_balance)}")
    console.print(f"  Records:        {o.obligation_count}")
    console.print(f"  Last activity:  {last}")


@app.command()
def settlements(
    user_id: int = typer.Argument(..., help="User whose settlements to list"),
    other: int | None = typer.Option(
        None, "--with", help="Only settlements with this user"
    ),
    verbose: bool = VERBOSE_OPTION,
):
    """List settlements, newest first."""
    setup_logging(verbose)
    try:
        with open_service() as service:
            if other is None:
                records = service.get_user_settlements(user_id)
            else:
                records = service.get_settlements_between(user_id, other)
    except Exception as e:
        fail(e, verbose)
        return

    if not records:
        console.print("[yellow]No settlements found.[/yellow]")
        return

    table = Table(title="Settlements", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim", width=6)
    table.add_column("Date", width=12)
    table.add_column("Payer")
    table.add_column("Payee")
    table.add_column("Amount", justify="right", width=14)
    table.add_column("Method", style="yellow")
    for s in records:
        table.add_row(
            str(s.id),
            s.settlement_date.date().isoformat(),
            str(s.payer_id),
            str(s.payee_id),
            format_money(s.amount),
            s.method.value,
        )
    console.print(table)


@app.command()
def stats(verbose: bool = VERBOSE_OPTION):
    """Show ledger-wide statistics."""
    setup_logging(verbose)
    try:
        with open_service() as service:
            s = service.get_stats()
            o = service.get_obligation_stats()
    except Exception as e:
        fail(e, verbose)
        return

    console.print("\n[bold]Ledger Statistics:[/bold]")
    console.print(f"  Active balances:     {s.active_balances}")
    console.print(f"  Outstanding:         {format_money(s.total_outstanding_amount)}")
    console.print(f"  Settlements:         {s.total_settlements}")
    console.print(f"  Settled volume:      {format_money(s.total_settled_amount)}")
    console.print(f"  Active obligations:  {o.total_obligations}")
    console.print(f"  Obligation volume:   {format_money(o.total_volume)}")
    console.print(f"  Average obligation:  {format_money(o.average_amount)}")


@app.command()
def cancel(
    obligation_id: int = typer.Argument(..., help="Obligation to cancel"),
    caller: int = CALLER_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """Cancel an obligation and reverse its effect on the balance."""
    setup_logging(verbose)
    try:
        with open_service() as service:
            obligation = service.cancel_obligation(obligation_id, caller_id=caller)
    except Exception as e:
        fail(e, verbose)
        return

    console.print(
        f"\n[bold green]✓ Cancelled obligation {obligation.id}[/bold green] "
        f"({obligation.owed_by_name} → {obligation.paid_by_name}, "
        f"{format_money(obligation.amount).strip()})"
    )


@app.command()
def status(
    obligation_id: int = typer.Argument(..., help="Obligation to update"),
    new_status: ObligationStatus = typer.Argument(..., help="SETTLED or CANCELLED"),
    caller: int = CALLER_OPTION,
    verbose: bool = VERBOSE_OPTION,
):
    """
    Change the status of an active obligation.

    SETTLED marks a share as paid outside the ledger and keeps the balance.
    CANCELLED behaves like the cancel command.
    """
    setup_logging(verbose)
    try:
        with open_service() as service:
            obligation = service.update_obligation_status(
                obligation_id, new_status, caller_id=caller
            )
    except Exception as e:
        fail(e, verbose)
        return

    console.print(
        f"\n[bold green]✓ Obligation {obligation.id} is now "
        f"{obligation.status}[/bold green]"
    )


@app.command()
def obligations(
    user_id: int = typer.Argument(..., help="User whose obligations to list"),
    other: int | None = typer.Option(
        None, "--with", help="Only obligations with this user"
    ),
    limit: int | None = typer.Option(
        None, "--limit", "-n", min=1, help="Only the newest N obligations"
    ),
    verbose: bool = VERBOSE_OPTION,
):
    """List a user's obligations, newest first."""
    setup_logging(verbose)
    try:
        with open_service() as service:
            if other is not None:
                records = service.get_obligations_between(user_id, other)
                if limit is not None:
                    records = records[:limit]
            elif limit is not None:
                records = service.get_recent_obligations(user_id, limit)
            else:
                records = service.get_user_obligations(user_id)
    except Exception as e:
        fail(e, verbose)
        return

    print_obligations(records, "Obligations")


@app.command()
def search(
    term: str | None = typer.Argument(None, help="Text to find in descriptions"),
    category: str | None = typer.Option(None, "--category", "-c"),
    verbose: bool = VERBOSE_OPTION,
):
    """Find obligations by description or category."""
    setup_logging(verbose)
    if (term is None) == (category is None):
        console.print("[bold red]Error:[/bold red] Give either a term or --category")
        sys.exit(1)

    try:
        with open_service() as service:
            if category is not None:
                records = service.get_obligations_by_category(category)
            else:
                records = service.search_obligations(term)
    except Exception as e:
        fail(e, verbose)
        return

    print_obligations(records, "Search Results")


@app.command()
def mcp():
    """Start the MCP server."""
    run_server()


if __name__ == "__main__":
    app()
