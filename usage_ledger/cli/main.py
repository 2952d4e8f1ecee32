"""
CLI interface for the usage ledger.

Provides command-line access to reports, reconciliation and billing queries.
"""

import logging
import sqlite3
import sys
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from usage_ledger.api.usage_service import UsageService
from usage_ledger.config.loader import UsageConfig, load_usage_config
from usage_ledger.core.billing_query import Ordering, PaginatedRequest
from usage_ledger.core.errors import UsageError
from usage_ledger.storage.models import to_iso8601
from usage_ledger.storage.repository import get_repository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


class OrderOption(str, Enum):
    asc = "asc"
    desc = "desc"


def _ordering(order: OrderOption) -> Ordering:
    return Ordering.ASCENDING if order == OrderOption.asc else Ordering.DESCENDING


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    db: Optional[str] = typer.Option(
        None,
        "--db",
        help="Path to SQLite database (overrides the configured one)"
    ),
):
    """Usage Ledger CLI."""
    try:
        settings = load_usage_config(config) if config else UsageConfig()
    except (UsageError, FileNotFoundError) as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if db:
        settings = replace(settings, database=db)

    logging.basicConfig(
        level=settings.logging_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    ctx.obj = settings

    if ctx.invoked_subcommand is None:
        console.print("Usage Ledger - Use --help to see available commands")


def _service(ctx: typer.Context) -> UsageService:
    settings: UsageConfig = ctx.obj
    return UsageService(get_repository(settings.database), pricer=settings.pricer())


def _pagination(page: Optional[int], per_page: Optional[int]) -> Optional[PaginatedRequest]:
    if page is None and per_page is None:
        return None
    per_page = per_page if per_page is not None else 50
    return PaginatedRequest(per_page=per_page, page=page if page is not None else 1)


def _format_time(value: Optional[datetime]) -> str:
    return to_iso8601(value) if value is not None else "running"


def _format_credits(credits: float) -> str:
    return f"{credits:,.4f}"


@app.command()
def init(ctx: typer.Context):
    """Initialize the usage ledger database."""
    try:
        get_repository(ctx.obj.database)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def reconcile(
    ctx: typer.Context,
    start: datetime = typer.Option(..., "--from", help="Start of the report period (UTC)"),
    end: datetime = typer.Option(..., "--to", help="End of the report period (UTC)"),
):
    """Generate a usage report for a period and store its billed sessions."""
    try:
        response = _service(ctx).reconcile_usage(start, end)
    except (UsageError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    report = response.report
    console.print(f"\n[bold]Usage Report[/bold] {response.report_id}")
    console.print(f"Generated at: {to_iso8601(report.generation_time)}")

    table = Table("Instance", "Attribution", "Class", "Started", "Stopped", "Credits")
    for record in report.usage_records:
        table.add_row(
            record.instance_id,
            record.attribution_id,
            record.workspace_class,
            _format_time(record.started_at),
            _format_time(record.stopped_at),
            _format_credits(record.credits_used),
        )
    console.print(table)
    console.print(f"Total credits: {_format_credits(report.total_credits)}")

    if report.invalid_sessions:
        console.print(f"\n[yellow]{len(report.invalid_sessions)} invalid sessions skipped:[/]")
        for session in report.invalid_sessions:
            console.print(f"  {session.instance_id}: {session.reason}")
    sys.exit(EXIT_CODE_PASS)


@app.command("reconcile-ledger")
def reconcile_ledger(
    ctx: typer.Context,
    start: datetime = typer.Option(..., "--from", help="Start of the instance window (UTC)"),
    end: datetime = typer.Option(..., "--to", help="End of the instance window (UTC)"),
):
    """Update draft usage entries from instances active in a window."""
    try:
        response = _service(ctx).reconcile_usage_with_ledger(start, end)
    except (UsageError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] Ledger reconciled: {response.inserted} inserted, {response.updated} updated"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    ctx: typer.Context,
    attribution_id: str = typer.Argument(..., help="Attribution ID, e.g. team:<id>"),
    start: datetime = typer.Option(..., "--from", help="Start of the period (UTC)"),
    end: datetime = typer.Option(..., "--to", help="End of the period (UTC)"),
    order: OrderOption = typer.Option(OrderOption.desc, "--order", help="Order by effective time"),
    page: Optional[int] = typer.Option(None, "--page", help="Page number, starting at 1"),
    per_page: Optional[int] = typer.Option(None, "--per-page", help="Entries per page"),
):
    """List usage entries for an attribution."""
    try:
        response = _service(ctx).list_usage(
            attribution_id, start, end, _ordering(order), _pagination(page, per_page)
        )
    except (UsageError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table("ID", "Effective", "Kind", "Instance", "Draft", "Credits")
    for entry in response.usage_entries:
        table.add_row(
            entry.id,
            to_iso8601(entry.effective_time),
            entry.kind.value,
            entry.workspace_instance_id or "",
            "yes" if entry.draft else "no",
            _format_credits(entry.credits),
        )
    console.print(table)
    _print_pagination(response.pagination)
    console.print(f"Credit balance at start: {_format_credits(response.credit_balance_at_start)}")
    console.print(f"Credit balance at end: {_format_credits(response.credit_balance_at_end)}")
    sys.exit(EXIT_CODE_PASS)


@app.command("billed-usage")
def billed_usage(
    ctx: typer.Context,
    attribution_id: str = typer.Argument(..., help="Attribution ID, e.g. team:<id>"),
    start: datetime = typer.Option(..., "--from", help="Start of the period (UTC)"),
    end: datetime = typer.Option(..., "--to", help="End of the period (UTC)"),
    order: OrderOption = typer.Option(OrderOption.desc, "--order", help="Order by start time"),
    page: Optional[int] = typer.Option(None, "--page", help="Page number, starting at 1"),
    per_page: Optional[int] = typer.Option(None, "--per-page", help="Sessions per page"),
):
    """List billed sessions for an attribution."""
    try:
        response = _service(ctx).list_billed_usage(
            attribution_id, start, end, _ordering(order), _pagination(page, per_page)
        )
    except (UsageError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table("Instance", "Workspace", "Class", "Started", "Stopped", "Credits")
    for session in response.sessions:
        table.add_row(
            session.instance_id,
            session.workspace_id,
            session.workspace_class,
            _format_time(session.started_at),
            _format_time(session.stopped_at),
            _format_credits(session.credits_used),
        )
    console.print(table)
    _print_pagination(response.pagination)
    console.print(f"Total credits used: {_format_credits(response.total_credits_used)}")
    sys.exit(EXIT_CODE_PASS)


@app.command("cost-center")
def cost_center(
    ctx: typer.Context,
    attribution_id: str = typer.Argument(..., help="Attribution ID, e.g. team:<id>"),
):
    """Show the spending limit of an attribution's cost center."""
    try:
        result = _service(ctx).get_cost_center(attribution_id)
    except (UsageError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"{result.attribution_id}: spending limit {result.spending_limit:,}")
    sys.exit(EXIT_CODE_PASS)


def _print_pagination(pagination) -> None:
    console.print(
        f"Page {pagination.page} of {pagination.total_pages} "
        f"({pagination.total} total, {pagination.per_page} per page)"
    )


if __name__ == "__main__":
    app()
