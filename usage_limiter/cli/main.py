"""
CLI interface for Usage Limiter.

Provides command-line management of limit definitions and usage.
"""

import sqlite3
import sys
from typing import Optional, Tuple

import typer
from rich.console import Console
from rich.table import Table

from usage_limiter.config.loader import DEFAULT_CONFIG, LimiterConfig, load_limiter_config
from usage_limiter.core.catalog import LimitCatalog
from usage_limiter.core.errors import UsageLimiterError
from usage_limiter.core.ledger import LimitOwner, UsageLedger
from usage_limiter.core.report import ReportBuilder
from usage_limiter.core.reset import ResetFrequency
from usage_limiter.storage.repository import initialize_schema
from usage_limiter.utils.logging import setup_logging

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

# Failures reported as a red error line instead of a traceback
COMMAND_ERRORS = (UsageLimiterError, sqlite3.Error)


def _config(ctx: typer.Context) -> LimiterConfig:
    return (ctx.obj or {}).get("config", DEFAULT_CONFIG)


def _services(ctx: typer.Context) -> Tuple[LimitCatalog, UsageLedger]:
    """Build the catalog and ledger for the selected configuration."""
    catalog = LimitCatalog(_config(ctx))
    return catalog, UsageLedger(catalog)


def _format_amount(amount: float) -> str:
    """Format amounts without a trailing .0 for whole numbers."""
    return f"{amount:,.2f}".rstrip("0").rstrip(".")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    db_path: Optional[str] = typer.Option(
        None,
        "--db",
        help="Override the SQLite database path"
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Logging level (defaults to LOG_LEVEL env var)"
    )
):
    """Usage Limiter CLI."""
    setup_logging(log_level)

    try:
        limiter_config = load_limiter_config(config) if config else DEFAULT_CONFIG
        if db_path:
            limiter_config = limiter_config.with_db_path(db_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    ctx.obj = {"config": limiter_config}

    if ctx.invoked_subcommand is None:
        console.print("Usage Limiter - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Usage Limiter database."""
    try:
        initialize_schema(_config(ctx))
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="The name of the limit"),
    allowed_amount: float = typer.Argument(..., help="The allowed amount of the limit"),
    plan: Optional[str] = typer.Option(
        None,
        "--plan",
        "-p",
        help="The name of the plan the limit belongs to"
    ),
    reset_frequency: Optional[str] = typer.Option(
        None,
        "--reset-frequency",
        "-r",
        help=f"One of: {', '.join(ResetFrequency.options())}"
    )
):
    """Create a limit, or show the existing one with the same name and plan."""
    catalog, _ = _services(ctx)
    try:
        limit = catalog.find_or_create(
            name=name,
            allowed_amount=allowed_amount,
            plan=plan,
            reset_frequency=reset_frequency
        )
    except COMMAND_ERRORS as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Limit {limit} is ready (allowed amount: {_format_amount(limit.allowed_amount)})")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def delete(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="The name of the limit"),
    plan: Optional[str] = typer.Option(
        None,
        "--plan",
        "-p",
        help="The name of the plan the limit belongs to"
    )
):
    """Delete a limit and its usage on every model."""
    catalog, _ = _services(ctx)
    try:
        limit = catalog.get(name=name, plan=plan)
        if limit is None:
            console.print("No limits found to be deleted.")
            sys.exit(EXIT_CODE_PASS)

        catalog.delete(limit)
    except COMMAND_ERRORS as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Limit {limit} was deleted successfully.")
    sys.exit(EXIT_CODE_PASS)


@app.command("list")
def list_limits(
    ctx: typer.Context,
    plan: Optional[str] = typer.Option(
        None,
        "--plan",
        "-p",
        help="Only show limits of this plan"
    )
):
    """List limit definitions."""
    catalog, _ = _services(ctx)
    try:
        limits = [limit for limit in catalog.all() if plan is None or limit.plan == plan]
    except COMMAND_ERRORS as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not limits:
        console.print("No limits available.")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Limits")
    table.add_column("ID", justify="right")
    table.add_column("Name")
    table.add_column("Plan")
    table.add_column("Allowed Amount", justify="right")
    table.add_column("Reset Frequency")

    for limit in limits:
        table.add_row(
            str(limit.id),
            limit.name,
            limit.plan or "-",
            _format_amount(limit.allowed_amount),
            limit.reset_frequency.value if limit.reset_frequency else "never"
        )

    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("cache-reset")
def cache_reset(ctx: typer.Context):
    """Flush the limits cache."""
    catalog, _ = _services(ctx)
    catalog.flush_cache()
    console.print("[green]✓[/] Limits cache flushed.")
    sys.exit(EXIT_CODE_PASS)


@app.command("reset-usages")
def reset_usages(ctx: typer.Context):
    """Reset usage of every limit whose next reset is due."""
    _, ledger = _services(ctx)
    try:
        count = ledger.reset_due_usages()
    except COMMAND_ERRORS as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Reset {count} limit usage(s).")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def report(
    ctx: typer.Context,
    model_type: str = typer.Argument(..., help="Type of the model owning the limits"),
    model_id: str = typer.Argument(..., help="Identifier of the model"),
    name: Optional[str] = typer.Option(
        None,
        "--name",
        "-n",
        help="Only report this limit"
    ),
    plan: Optional[str] = typer.Option(
        None,
        "--plan",
        "-p",
        help="Plan of the limit given with --name"
    )
):
    """Show allowed, used and remaining amounts for a model."""
    _, ledger = _services(ctx)
    owner = LimitOwner(limit_model_type=model_type, limit_model_id=model_id)
    try:
        usage = ReportBuilder(ledger).report(owner, name, plan)
    except COMMAND_ERRORS as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not usage:
        console.print(f"No limits set on {model_type}:{model_id}.")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Limit usage for {model_type}:{model_id}")
    table.add_column("Limit")
    table.add_column("Allowed", justify="right")
    table.add_column("Used", justify="right")
    table.add_column("Remaining", justify="right")

    for limit_name, amounts in usage.items():
        table.add_row(
            limit_name,
            _format_amount(amounts["allowed_amount"]),
            _format_amount(amounts["used_amount"]),
            _format_amount(amounts["remaining_amount"])
        )

    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
