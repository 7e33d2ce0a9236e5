"""
Deals Ingestor - CLI Entry Point

Command-line interface for the incremental deals sync.

Usage:
    # Incremental sync of the most recent 1000 deals
    deals-ingestor sync

    # Whole source, skipping change detection
    deals-ingestor sync --all --force-full

    # Preview without writing
    deals-ingestor sync --dry-run --json

    # Show last runs and health
    deals-ingestor status
"""

import asyncio
import json
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from dealsync.config import settings
from dealsync.storage.database import DatabaseStorage
from dealsync.sync.health import HealthStatus, evaluate_health
from dealsync.sync.orchestrator import RunOptions, RunStatus, SyncOrchestrator

app = typer.Typer(
    name="deals-ingestor",
    help="Incremental deals synchronization service",
    add_completion=False,
)
console = Console()


def print_banner() -> None:
    """Print the application banner."""
    console.print(Panel.fit(
        "[bold blue]Deals Ingestor[/bold blue]\n"
        "[dim]Incremental sync from the CRM into PostgreSQL[/dim]",
        border_style="blue",
    ))
    console.print()


def _database_host() -> str:
    url = settings.database_url
    return url.split("@")[-1] if "@" in url else url


@app.command()
def sync(
    max_records: int = typer.Option(
        settings.default_max_records, "--max-records", "-n",
        help="Sync only the first N deals of the source",
    ),
    all_records: bool = typer.Option(
        False, "--all", "-a", help="Sync every deal, ignoring --max-records"
    ),
    force_full: bool = typer.Option(
        False, "--force-full", "-f", help="Skip change detection and reprocess every deal"
    ),
    clear_first: bool = typer.Option(
        False, "--clear-first", help="Delete cached deals and tracking data before syncing"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Fetch and classify, but write nothing"
    ),
    as_json: bool = typer.Option(
        False, "--json", help="Print the run summary as JSON"
    ),
) -> None:
    """
    Synchronize deals from the source API.

    Examples:

        # Default incremental run
        deals-ingestor sync

        # Full rebuild
        deals-ingestor sync --all --clear-first
    """
    if not as_json:
        print_banner()

    options = RunOptions(
        max_records=max_records,
        all_records=all_records,
        force_full_run=force_full,
        clear_first=clear_first,
        dry_run=dry_run,
    )

    if not as_json:
        mode = "[bold green]Full Sync[/bold green]" if force_full or clear_first else "[bold cyan]Incremental Sync[/bold cyan]"
        console.print(f"Mode: {mode}" + (" [yellow](dry run)[/yellow]" if dry_run else ""))
        console.print(f"Records: {'all' if all_records else max_records}")
        console.print()

    async def run_sync() -> RunStatus:
        storage = DatabaseStorage()
        try:
            if not dry_run:
                await storage.initialize()
            orchestrator = SyncOrchestrator(settings, storage)
            summary = await orchestrator.run(options)
        finally:
            await storage.close()

        if as_json:
            typer.echo(json.dumps(summary.to_dict(), indent=2, default=str))
        else:
            orchestrator.print_summary(summary)
        return summary.status

    try:
        status = asyncio.run(run_sync())
    except KeyboardInterrupt:
        console.print("\n[yellow]Sync interrupted by user[/yellow]")
        raise typer.Exit(130)

    if status == RunStatus.FAILED:
        raise typer.Exit(1)


@app.command()
def status(
    limit: int = typer.Option(5, "--limit", "-l", help="Number of recent runs to show"),
) -> None:
    """
    Show recent sync runs, database statistics and cache health.
    """
    print_banner()

    console.print("[bold]Configuration:[/bold]")
    console.print(f"  Database: {_database_host()}")
    console.print(f"  Source: {settings.source_base_url or '[red]not set[/red]'}")
    console.print()

    async def run_status() -> None:
        storage = DatabaseStorage()
        try:
            stats = await storage.get_stats()
            runs = await storage.get_recent_runs(limit=max(limit, 5))
        finally:
            await storage.close()

        table = Table(show_header=True, header_style="bold")
        table.add_column("Table", style="cyan")
        table.add_column("Rows", justify="right", style="green")
        for name, count in stats.items():
            table.add_row(name.replace("_", " ").title(), f"{count:,}")
        console.print(table)
        console.print()

        history = Table(title="Recent Runs")
        history.add_column("Started", style="dim")
        history.add_column("Status")
        history.add_column("Processed", justify="right")
        history.add_column("New", justify="right")
        history.add_column("Updated", justify="right")
        history.add_column("Duration", justify="right")
        for run in runs[:limit]:
            history.add_row(
                run.sync_started_at.strftime("%Y-%m-%d %H:%M:%S"),
                run.sync_status,
                str(run.deals_processed),
                str(run.deals_added),
                str(run.deals_updated),
                f"{run.sync_duration_seconds:.1f}s" if run.sync_duration_seconds is not None else "-",
            )
        console.print(history)
        console.print()

        report = evaluate_health(
            runs,
            stats["deals"],
            warning_minutes=settings.health_warning_minutes,
            critical_minutes=settings.health_critical_minutes,
        )
        colors = {
            HealthStatus.HEALTHY: "green",
            HealthStatus.WARNING: "yellow",
            HealthStatus.CRITICAL: "red",
        }
        color = colors[report.status]
        console.print(f"[bold]Health:[/bold] [{color}]{report.status.value}[/{color}]")
        for issue in report.issues:
            console.print(f"  - {issue}")

    try:
        asyncio.run(run_status())
    except Exception as e:
        console.print(f"[red]Could not connect to database: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def init_db() -> None:
    """
    Initialize the database schema.

    Creates the deals, tracking and sync log tables if they don't exist.
    """
    print_banner()
    console.print("[blue]Initializing database schema...[/blue]")

    async def run_init() -> None:
        async with DatabaseStorage():
            console.print("[green]Database schema initialized successfully![/green]")

    try:
        asyncio.run(run_init())
    except Exception as e:
        console.print(f"[red]Failed to initialize database: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def daemon(
    interval: Optional[int] = typer.Option(
        None, "--interval", "-i", help="Minutes between syncs (default from settings)"
    ),
    metrics_port: Optional[int] = typer.Option(
        None, "--metrics-port", help="Port for Prometheus metrics server"
    ),
    max_records: int = typer.Option(
        settings.default_max_records, "--max-records", "-n", help="Deals per scheduled run"
    ),
) -> None:
    """
    Start the sync scheduler daemon.

    Runs an incremental sync at regular intervals and exposes Prometheus
    metrics on /metrics. Use Ctrl+C to stop.
    """
    print_banner()

    interval = interval or settings.sync_interval_minutes
    port = metrics_port or settings.metrics_port

    console.print("[bold]Starting Sync Daemon[/bold]")
    console.print(f"  Incremental sync: every {interval} minutes")
    console.print(f"  Deals per run: {max_records}")
    if settings.metrics_enabled:
        console.print(f"  Metrics server: http://0.0.0.0:{port}/metrics")
    console.print()

    from dealsync.scheduler import run_scheduler

    try:
        asyncio.run(run_scheduler(
            sync_interval=interval,
            metrics_port=port,
            options=RunOptions(max_records=max_records),
        ))
    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
        raise typer.Exit(130)


@app.command()
def test_connection() -> None:
    """
    Test the connection to the source API.

    Fetches a single deal to read the total count. Does not touch the database.
    """
    print_banner()

    missing = settings.missing_required()
    if "SOURCE_BASE_URL" in missing or "SOURCE_API_TOKEN" in missing:
        console.print(f"[red]Missing configuration: {', '.join(missing)}[/red]")
        raise typer.Exit(1)

    console.print(f"[blue]Testing connection to:[/blue] {settings.source_base_url}")
    console.print()

    async def run_test() -> int:
        from dealsync.client import SourceApiClient
        from dealsync.sync.processor import DealProcessor

        async with SourceApiClient(settings) as client:
            payload = await client.get_json(client.probe_url())
        return DealProcessor(settings).parse_total(payload)

    try:
        total = asyncio.run(run_test())
    except Exception as e:
        console.print(f"[red]Connection failed: {e}[/red]")
        raise typer.Exit(1)

    console.print("[green]Connection successful![/green]")
    console.print(f"  Deals available: {total:,}")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """
    Deals Ingestor - Incremental sync service for CRM deals.

    Features:
    - Rate-limited fetching with per-request retries
    - Change detection against stored fingerprints
    - Adaptive concurrent upserts
    - Prometheus metrics for monitoring

    Use 'deals-ingestor COMMAND --help' for more information on a command.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


if __name__ == "__main__":
    app()
