"""Credit commands: balance, grant, adjust, history."""

import typer
from rich.table import Table

from . import credit_app, console, ledger_services
from ..daemon.errors import LedgerError


@credit_app.command("balance")
def show_balance(user_id: str):
    """Show a user's current credits."""
    ledger = ledger_services().ledger
    console.print(f"{user_id}: [bold]{ledger.balance(user_id)}[/bold] credits")


@credit_app.command("grant")
def grant_credits(
    user_id: str,
    amount: int,
    note: str = typer.Option("", "--note", help="Free-form note stored with the entry"),
):
    """Add purchased or bonus credits."""
    ledger = ledger_services().ledger
    try:
        balance = ledger.grant(user_id, amount, metadata={"note": note} if note else None)
    except (LedgerError, ValueError) as e:
        console.print(f"[red]Grant failed: {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Granted {amount} credits to {user_id}. Balance: {balance}[/green]")


@credit_app.command("adjust")
def adjust_credits(
    user_id: str,
    amount: int = typer.Argument(..., help="Signed amount; negative removes credits"),
    reason: str = typer.Option(..., "--reason", "-r", help="Why the correction is made"),
    actor: str = typer.Option(None, "--actor", help="Operator making the change"),
):
    """Apply an operator correction to a balance."""
    ledger = ledger_services().ledger
    try:
        balance = ledger.adjust(user_id, amount, reason, actor=actor)
    except (LedgerError, ValueError) as e:
        console.print(f"[red]Adjustment failed: {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Adjusted {user_id} by {amount:+d}. Balance: {balance}[/green]")


@credit_app.command("history")
def credit_history(
    user_id: str,
    limit: int = typer.Option(20, "--limit", "-n"),
    reason: str = typer.Option(None, "--reason", help="Only entries with this reason"),
):
    """Show a user's journal entries, newest first."""
    balances = ledger_services().ledger.balances
    entries = balances.list_entries(user_id, reason=reason, limit=limit)
    if not entries:
        console.print(f"No journal entries for {user_id}.")
        return

    table = Table(title=f"Credit journal: {user_id}")
    table.add_column("Time")
    table.add_column("Type")
    table.add_column("Reason")
    table.add_column("Delta", justify="right")
    table.add_column("Balance", justify="right")
    table.add_column("Operation")
    for entry in entries:
        table.add_row(
            entry.created_at,
            str(entry.entry_type),
            str(entry.reason),
            f"{entry.delta:+d}",
            str(entry.balance_after),
            entry.operation_id or "",
        )
    console.print(table)
