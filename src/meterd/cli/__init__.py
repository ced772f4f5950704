"""meterd CLI: modular command package."""

import typer
from pathlib import Path
from rich.console import Console

from ..daemon.db import init_db, get_db_path

# ── Shared state ────────────────────────────────────────────────────────────

app = typer.Typer(help="meterd - credit metering ledger")
console = Console()

# Sub-command groups
daemon_app = typer.Typer()
credit_app = typer.Typer()
ops_app = typer.Typer()

app.add_typer(daemon_app, name="daemon", help="Manage the meterd daemon process")
app.add_typer(credit_app, name="credit", help="Inspect and change user credit balances")
app.add_typer(ops_app, name="ops", help="Inspect and finalize usage operations")

# ── Path constants ──────────────────────────────────────────────────────────

METERD_DIR = Path.home() / ".meterd"
PID_FILE = METERD_DIR / "meterd.pid"
LOG_DIR = METERD_DIR / "logs"
CONFIG_DIR = METERD_DIR / "config"
LEDGER_CONFIG_FILE = CONFIG_DIR / "ledger.yaml"
DEFAULT_PORT = 9000

DEFAULT_LEDGER_YAML = """version: 1

settlement:
  attempts: 5
  backoff_seconds: 0.05

store:
  conflict_attempts: 8
  conflict_backoff_seconds: 0.02
  sqlite_busy_timeout_seconds: 30

driver:
  batch_size: 5
  default_max_attempts: 3
  stall_timeout_seconds: 600
  poll_interval_seconds: 2

recovery:
  orphan_grace_seconds: 600
  orphan_lookback_seconds: 604800
  pending_ttl_seconds: 3600
  sweep_interval_seconds: 60

features:
  analyze:
    estimate: 5
  generate:
    estimate: 10
"""


# ── Shared helpers ──────────────────────────────────────────────────────────

def get_daemon_pid():
    if PID_FILE.exists():
        try:
            return int(PID_FILE.read_text().strip())
        except ValueError:
            return None
    return None


def ledger_services():
    """Services for one CLI invocation; exits with a hint when the ledger is unusable."""
    from ..daemon.services import get_services

    try:
        return get_services()
    except Exception as e:
        console.print(f"[red]Cannot open ledger: {e}[/red]")
        raise typer.Exit(1)


# ── Init command (lives at top level, so defined here) ──────────────────────

@app.command("init")
def init_meterd():
    """Initialize the meterd schema and local runtime folders."""
    console.print(f"[bold]Initializing meterd in {METERD_DIR}...[/bold]")

    METERD_DIR.mkdir(parents=True, exist_ok=True)
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    if not LEDGER_CONFIG_FILE.exists():
        console.print("Creating default ledger.yaml...")
        LEDGER_CONFIG_FILE.write_text(DEFAULT_LEDGER_YAML)

    try:
        init_db()
        console.print(f"[green]Database initialized: {get_db_path()}[/green]")
    except Exception as e:
        console.print(f"[red]Failed to initialize database: {e}[/red]")
        raise typer.Exit(1)

    console.print("[green]meterd initialized successfully.[/green]")


# ── Register submodule commands (import triggers decorator registration) ────

from . import daemon_cmds  # noqa: E402, F401
from . import credit_cmds  # noqa: E402, F401
from . import ops_cmds     # noqa: E402, F401
