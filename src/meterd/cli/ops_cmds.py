"""Operational commands: version, status, audit, sweep, ops list/show/finalize."""

import json
import os

import typer
from rich.table import Table

from .. import __version__
from ..daemon.db import get_db_connection, get_db_path
from ..daemon.errors import LedgerError
from ..daemon.ledger.models import OperationStatus, iso_seconds_ago
from . import app, ops_app, console, ledger_services, get_daemon_pid


# ── Version ─────────────────────────────────────────────────────────────────

@app.command("version")
def show_version():
    """Show meterd version."""
    console.print(f"meterd {__version__}")


# ── Status ──────────────────────────────────────────────────────────────────

@app.command("status")
def show_status(since_hours: float = typer.Option(24.0, "--since-hours", help="Window for usage stats")):
    """Show ledger summary."""
    services = ledger_services()
    try:
        with get_db_connection(services.dsn) as conn:
            users = conn.execute("SELECT COUNT(*) FROM credit_balances").fetchone()[0]
            total_credits = conn.execute("SELECT SUM(credits) FROM credit_balances").fetchone()[0] or 0
            reserved = conn.execute(
                "SELECT SUM(estimate) FROM usage_operations WHERE status = 'pending'"
            ).fetchone()[0] or 0
            unsettled = conn.execute(
                "SELECT COUNT(*) FROM usage_operations WHERE status <> 'pending' AND settled_at IS NULL"
            ).fetchone()[0]
            queued = conn.execute(
                "SELECT COUNT(*) FROM usage_jobs WHERE status IN ('pending', 'processing', 'error')"
            ).fetchone()[0]
        stats = services.ledger.operations.usage_stats(iso_seconds_ago(since_hours * 3600))
    except Exception as e:
        console.print(f"[red]Error: {e} (run: meterd init)[/red]")
        raise typer.Exit(1)

    console.print("[bold]meterd Ledger Status[/bold]")
    console.print()
    console.print(f"  Database:           {get_db_path()}")
    console.print(f"  Users:              {users}")
    console.print(f"  Credits Held:       {total_credits}")
    console.print(f"  Credits Reserved:   {reserved}")
    console.print(f"  Unsettled Ops:      {unsettled}")
    console.print(f"  Queued Jobs:        {queued}")
    console.print()
    console.print(f"  Last {since_hours:g}h:")
    console.print(f"    Operations:       {stats.total_operations}")
    console.print(f"    Pending:          {stats.pending_operations}")
    console.print(f"    Failed:           {stats.failed_operations}")
    console.print(f"    Credits Consumed: {stats.credits_consumed}")
    console.print(f"    Error Rate:       {stats.error_rate:.2%}")

    pid = get_daemon_pid()
    if pid:
        try:
            os.kill(pid, 0)
            console.print(f"  Daemon:             [green]Running (PID {pid})[/green]")
        except ProcessLookupError:
            console.print("  Daemon:             [yellow]Stale PID[/yellow]")
    else:
        console.print("  Daemon:             [red]Not running[/red]")


# ── Audit ───────────────────────────────────────────────────────────────────

@app.command("audit")
def audit():
    """Run invariant checks on the ledger database."""
    services = ledger_services()
    console.print("[bold]meterd Audit: Invariant Verification[/bold]")
    console.print()

    try:
        from ..daemon.utils.invariants import run_all_checks

        with get_db_connection(services.dsn) as conn:
            results = run_all_checks(conn, grace_seconds=services.config.recovery.orphan_grace_seconds)

        all_passed = True
        for result in results:
            if result.passed:
                console.print(f"  ✅ {result.name}: PASS")
            else:
                console.print(f"  ❌ {result.name}: FAIL")
                if result.detail:
                    console.print(f"     {result.detail}")
                all_passed = False

        console.print()
        if all_passed:
            console.print(f"[green]All {len(results)} invariant checks passed.[/green]")
        else:
            failed = sum(1 for r in results if not r.passed)
            console.print(f"[red]{failed}/{len(results)} invariant check(s) FAILED.[/red]")
            raise typer.Exit(1)

    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"[red]Audit error: {e}[/red]")
        raise typer.Exit(1)


# ── Sweep ───────────────────────────────────────────────────────────────────

@app.command("sweep")
def sweep():
    """Run one reconciliation sweep and one driver cycle."""
    from ..daemon.runtime.recovery import reconcile

    services = ledger_services()
    try:
        summary = reconcile(services.ledger, services.jobs, services.config.recovery)
        resumed = services.driver.resume_unsettled()
        stalled = services.driver.requeue_stalled()
    except Exception as e:
        console.print(f"[red]Sweep failed: {e}[/red]")
        raise typer.Exit(1)

    console.print("[bold]Reconciliation sweep[/bold]")
    console.print(f"  Orphans refunded:   {summary['orphans_refunded']}")
    console.print(f"  Resettled:          {summary['resettled']}")
    console.print(f"  Expired:            {summary['expired']}")
    console.print(f"  Scanned:            {summary['scanned']}")
    console.print(f"  Jobs resumed:       {resumed}")
    console.print(f"  Jobs stalled:       {stalled}")


# ── Operations ──────────────────────────────────────────────────────────────

@ops_app.command("list")
def list_operations(
    user_id: str,
    feature: str = typer.Option(None, "--feature"),
    status: OperationStatus = typer.Option(None, "--status"),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """Show a user's usage history, newest first."""
    operations = ledger_services().ledger.operations
    rows = operations.list_operations(user_id, feature=feature, status=status, limit=limit)
    if not rows:
        console.print(f"No operations for {user_id}.")
        return

    table = Table(title=f"Usage operations: {user_id}")
    table.add_column("Operation")
    table.add_column("Feature")
    table.add_column("Status")
    table.add_column("Estimate", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Settled")
    table.add_column("Created")
    for op in rows:
        table.add_row(
            op.id,
            op.feature,
            str(op.status),
            str(op.estimate),
            "-" if op.cost is None else str(op.cost),
            "yes" if op.settled_at else "no",
            op.created_at,
        )
    console.print(table)


@ops_app.command("show")
def show_operation(operation_id: str):
    """Print one operation as JSON."""
    ledger = ledger_services().ledger
    try:
        operation = ledger.get_operation(operation_id)
    except LedgerError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    console.print_json(json.dumps(operation.to_dict(), default=str))


@ops_app.command("finalize")
def finalize_operation(
    operation_id: str,
    cost: int = typer.Option(0, "--cost", help="Actual cost to charge"),
    refund: bool = typer.Option(False, "--refund", help="Mark failed and return the full reservation"),
    error: str = typer.Option(None, "--error", help="Error message to record"),
):
    """Finalize a pending operation by hand."""
    ledger = ledger_services().ledger
    try:
        applied = ledger.finalize(operation_id, actual_cost=cost, is_refund=refund, error_message=error)
        operation = ledger.get_operation(operation_id)
    except (LedgerError, ValueError) as e:
        console.print(f"[red]Finalize failed: {e}[/red]")
        raise typer.Exit(1)

    if applied:
        console.print(f"[green]Operation {operation_id} finalized as {operation.status}.[/green]")
    else:
        console.print(f"[yellow]Operation {operation_id} was already {operation.status}; nothing changed.[/yellow]")
