"""
Root Typer application for the repokit CLI.

Commands:
    repokit ping         Check database connectivity
    repokit batch-size   Safe and effective batch sizes for a row shape
    repokit render       Print the SQL a simple query renders to
"""

from __future__ import annotations

import dataclasses
from typing import Any

import typer
from rich.console import Console
from rich.table import Table
from typer import Typer

from repokit import __version__
from repokit.core.batch import effective_batch_size, safe_batch_size
from repokit.core.database import database_from_settings
from repokit.core.dialect import get_dialect
from repokit.core.errors import RepoKitError
from repokit.core.logging import configure_logging
from repokit.core.query import Queryable
from repokit.core.schema import db_field
from repokit.core.settings import RepoKitSettings

app = Typer(
    name="repokit",
    help="repokit — typed repositories and safe batch mutations over SQL databases.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"repokit {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """repokit CLI: database checks and batch planning."""


def _fail(error: RepoKitError) -> None:
    err_console.print(f"[bold red]Error[/bold red] ({error.category.value}): {error.message}")
    raise typer.Exit(code=1)


# ── Commands ─────────────────────────────────────────────────────────────


@app.command()
def ping(
    database_url: str | None = typer.Option(None, "--database-url", "-d", help="SQLAlchemy URL"),
) -> None:
    """Check database connectivity with ``SELECT 1``."""
    settings = RepoKitSettings()
    if database_url:
        settings = settings.model_copy(update={"database_url": database_url})
    configure_logging(level=settings.log_level, json_format=settings.log_json)

    db = database_from_settings(settings)
    try:
        db.ping()
    except RepoKitError as e:
        _fail(e)
    finally:
        db.dispose()
    console.print(
        f"[green]✓[/green] {db.engine.url.render_as_string(hide_password=True)} "
        f"([cyan]{db.dialect.name}[/cyan]) is reachable"
    )


@app.command("batch-size")
def batch_size(
    fields: int = typer.Option(..., "--fields", "-f", help="Parameters per row"),
    configured: int = typer.Option(1000, "--batch-size", "-b", help="Configured batch size"),
    dialect: str = typer.Option("mysql", "--dialect", help="mysql | starrocks | sqlite | postgresql"),
    budget: int | None = typer.Option(None, "--budget", help="Override the parameter budget"),
) -> None:
    """Show the safe and effective batch sizes for a row shape."""
    try:
        param_budget = budget or get_dialect(dialect).param_budget
        safe = safe_batch_size(fields, param_budget)
        effective = effective_batch_size(configured, fields, param_budget)
    except RepoKitError as e:
        _fail(e)

    table = Table(title="Batch Size")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_row("dialect", dialect)
    table.add_row("param_budget", str(param_budget))
    table.add_row("fields_per_row", str(fields))
    table.add_row("safe", str(safe))
    table.add_row("effective", str(effective))
    console.print(table)


@app.command()
def render(
    table_name: str = typer.Argument(..., help="Table to select from"),
    columns: str = typer.Option(..., "--columns", "-c", help="Comma-separated column list"),
    where: str | None = typer.Option(None, "--where", "-w", help="Literal WHERE condition"),
    order: str | None = typer.Option(None, "--order", "-o", help='e.g. "age desc, id asc"'),
    limit: int | None = typer.Option(None, "--limit"),
    offset: int | None = typer.Option(None, "--offset"),
    dialect: str = typer.Option("mysql", "--dialect"),
) -> None:
    """Print the SQL and parameters of a simple query."""
    names = [c.strip() for c in columns.split(",") if c.strip()]
    row_type = _row_type(names)
    try:
        query = Queryable(None, row_type, table_name, dialect=dialect)
        if where:
            query.where_raw(where)
        if order:
            query.order_by_raw(order)
        if limit is not None:
            query.take(limit)
        if offset is not None:
            query.skip(offset)
        sql, params = query.to_sql()
    except RepoKitError as e:
        _fail(e)

    console.print(sql, highlight=False)
    console.print(f"[dim]params:[/dim] {params!r}", highlight=False)


def _row_type(names: list[str]) -> type[Any]:
    bad = [name for name in names if not name.isidentifier()]
    if not names or bad:
        err_console.print(f"[bold red]Error[/bold red]: invalid --columns {bad or '(empty)'}")
        raise typer.Exit(code=1)
    return dataclasses.make_dataclass(
        "Row",
        [(name, Any, db_field(name, default=None)) for name in names],
    )


if __name__ == "__main__":  # pragma: no cover
    app()
