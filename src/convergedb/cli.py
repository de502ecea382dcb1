"""
Command-line interface for convergedb.
"""

import asyncio
import sys
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import ConvergeSettings
from .database import Database
from .exceptions import ConvergeError, DriverExecutionError
from .log import configure_logging
from .schema.definitions import load_table_schemas
from .schema.reconciler import OperationMode, ReconciliationResult, ReconciliationStatus


console = Console()

_STATUS_STYLES = {
    ReconciliationStatus.CHANGED: "green",
    ReconciliationStatus.UNCHANGED: "dim",
    ReconciliationStatus.SKIPPED: "yellow",
    ReconciliationStatus.FAILED: "red",
}


def _debug_enabled() -> bool:
    ctx = click.get_current_context(silent=True)
    if ctx is None:
        return False
    return bool((ctx.find_root().obj or {}).get("debug"))


def handle_errors(func):
    """Decorator to handle errors gracefully in CLI commands."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DriverExecutionError as e:
            console.print(f"[red]Error:[/red] {escape(e.message)}")
            if e.sql:
                console.print(f"[dim]Statement:[/dim] {escape(e.sql)}")
            sys.exit(1)
        except ConvergeError as e:
            console.print(f"[red]Error:[/red] {escape(str(e))}")
            sys.exit(1)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted by user[/yellow]")
            sys.exit(0)
        except Exception as e:
            console.print(f"[red]Unexpected error:[/red] {escape(str(e))}")
            if _debug_enabled():
                import traceback
                traceback.print_exc()
            sys.exit(1)
    return wrapper


def config_options(func):
    """Options shared by every command that talks to a database."""
    func = click.option(
        "--database",
        default=None,
        help="Use this database instead of the configured one",
    )(func)
    func = click.option(
        "--config",
        "-c",
        type=click.Path(exists=True),
        required=True,
        help="Configuration file path",
    )(func)
    return func


def _load_settings(config: str) -> ConvergeSettings:
    settings = ConvergeSettings.from_yaml(config)
    configure_logging(settings.logging, console=Console(stderr=True))
    return settings


def _run_with_database(
    config: str,
    database: Optional[str],
    action: Callable[[Database], Awaitable[Any]],
    dry_run: bool = False,
) -> Any:
    """Connect as configured, run ``action`` and always close the connection."""
    settings = _load_settings(config)
    settings.validate_config()

    mode = OperationMode(settings.schema_management.mode)
    if dry_run:
        mode = OperationMode.DRY_RUN

    async def run():
        db = Database(
            operation_mode=mode,
            obsolete_prefix=settings.schema_management.obsolete_prefix,
        )
        with db.registry.session_override(database):
            await db.connect(settings.database)
        try:
            return await action(db)
        finally:
            await db.close()

    return asyncio.run(run())


@click.group()
@click.version_option(__version__)
@click.option(
    "--debug", is_flag=True, help="Enable debug mode"
)
@click.pass_context
def main(ctx, debug):
    """convergedb: declarative schema convergence for relational databases."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@main.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="Configuration file path",
)
@handle_errors
def validate_config(config: str):
    """Validate configuration file."""
    console.print(f"Validating configuration: {config}")

    settings = ConvergeSettings.from_yaml(config)
    settings.validate_config()

    console.print("[green]✓[/green] Configuration is valid")
    _display_config_summary(settings)


@main.command()
@config_options
@handle_errors
def check(config: str, database: Optional[str]):
    """Check that the configured database is reachable."""
    active = _run_with_database(config, database, lambda db: db.is_active())

    if active:
        console.print("[green]✓[/green] Database connection is active")
    else:
        console.print("[red]✗[/red] Database connection is not active")
        sys.exit(1)


@main.command()
@config_options
@handle_errors
def tables(config: str, database: Optional[str]):
    """List tables in the database."""
    names = _run_with_database(config, database, lambda db: db.table_list())

    table = Table(title="Tables")
    table.add_column("Name", style="cyan")
    for name in sorted(names):
        table.add_row(name)
    console.print(table)


@main.command()
@click.argument("table_name")
@config_options
@handle_errors
def fields(table_name: str, config: str, database: Optional[str]):
    """Show the fields and indexes of a table."""
    async def describe(db: Database) -> Dict[str, Any]:
        return {
            "fields": await db.field_list(table_name),
            "indexes": await db.index_list(table_name),
        }

    info = _run_with_database(config, database, describe)

    field_table = Table(title=f"Fields of {table_name}")
    field_table.add_column("Field", style="cyan")
    field_table.add_column("Specification", style="green")
    for name, spec in info["fields"].items():
        field_table.add_row(name, spec)
    console.print(field_table)

    if info["indexes"]:
        index_table = Table(title=f"Indexes of {table_name}")
        index_table.add_column("Index", style="cyan")
        index_table.add_column("Kind", style="magenta")
        index_table.add_column("Columns", style="green")
        for name, spec in info["indexes"].items():
            index_table.add_row(name, spec.kind.value, ", ".join(spec.columns))
        console.print(index_table)


@main.command()
@click.option(
    "--schema",
    "-s",
    "schema_file",
    type=click.Path(exists=True),
    required=True,
    help="YAML file with the declared table schemas",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would be done without making changes",
)
@config_options
@handle_errors
def sync(schema_file: str, dry_run: bool, config: str, database: Optional[str]):
    """Converge database tables onto the declared schemas."""
    schemas = load_table_schemas(schema_file)
    console.print(f"[blue]Schema reconciliation[/blue] ({len(schemas)} tables)")

    if dry_run:
        console.print("[yellow]Dry run mode - no changes will be made[/yellow]")

    results = _run_with_database(
        config, database, lambda db: db.require_tables(schemas), dry_run=dry_run
    )
    _display_results(results.values())


@main.command()
@click.argument("table_name")
@config_options
@handle_errors
def retire(table_name: str, config: str, database: Optional[str]):
    """Retire a table by renaming it with the obsolete prefix."""
    result = _run_with_database(
        config, database, lambda db: db.dont_require_table(table_name)
    )

    if result.changed:
        console.print(f"[green]✓[/green] {result.changes[0].description}")
    else:
        console.print(f"[yellow]Nothing to do for table {table_name}[/yellow]")


@main.command()
@click.argument("table_name")
@config_options
@handle_errors
def repair(table_name: str, config: str, database: Optional[str]):
    """Check and repair a table."""
    healthy = _run_with_database(
        config, database, lambda db: db.check_and_repair_table(table_name)
    )

    if healthy:
        console.print(f"[green]✓[/green] Table {table_name} is healthy")
    else:
        console.print(f"[red]✗[/red] Table {table_name} could not be repaired")
        sys.exit(1)


def _display_results(results) -> None:
    """Display reconciliation results."""
    table = Table(title="Reconciliation")
    table.add_column("Table", style="cyan")
    table.add_column("Status")
    table.add_column("Changes", style="yellow")
    table.add_column("Time", style="dim")

    result: ReconciliationResult
    for result in results:
        style = _STATUS_STYLES.get(result.status, "white")
        table.add_row(
            result.table,
            f"[{style}]{result.status.value}[/{style}]",
            "\n".join(c.description for c in result.changes) or "-",
            f"{result.execution_time_ms:.1f}ms",
        )

    console.print(table)


def _display_config_summary(settings: ConvergeSettings):
    """Display a summary of the configuration."""
    console.print("\n[blue]Configuration Summary[/blue]")

    summary = Table(title="Settings")
    summary.add_column("Setting", style="cyan")
    summary.add_column("Value", style="green")

    driver_config = settings.database.to_driver_config()
    for key, value in driver_config.items():
        if key in ("password", "url"):
            value = "****"
        summary.add_row(f"database.{key}", str(value))

    summary.add_row("schema_management.mode", settings.schema_management.mode)
    summary.add_row("schema_management.obsolete_prefix", settings.schema_management.obsolete_prefix)
    summary.add_row("logging.level", settings.logging.level)

    console.print(summary)


if __name__ == "__main__":
    main()
