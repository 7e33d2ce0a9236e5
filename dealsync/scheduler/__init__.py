"""
Scheduler module - Automated deals sync.

Runs the incremental sync on a fixed interval using APScheduler. Runs never
overlap: the job is limited to one instance and a second trigger while a run
is in flight is skipped.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from rich.console import Console
from rich.panel import Panel

from dealsync.config import Settings, settings as default_settings
from dealsync.metrics import metrics
from dealsync.storage.database import DatabaseStorage
from dealsync.sync.orchestrator import RunOptions, SyncOrchestrator, SyncSummary

logger = logging.getLogger(__name__)
console = Console()


class SyncScheduler:
    """
    Scheduler for automated deals synchronization.

    Runs an incremental sync every N minutes (default: 30).
    """

    def __init__(
        self,
        sync_interval_minutes: int | None = None,
        config: Settings | None = None,
        options: RunOptions | None = None,
    ) -> None:
        """
        Initialize the sync scheduler.

        Args:
            sync_interval_minutes: Minutes between syncs.
                                   Defaults to settings.sync_interval_minutes.
            config: Settings for the orchestrator
            options: Options used for every scheduled run
        """
        self.config = config or default_settings
        self.sync_interval = sync_interval_minutes or self.config.sync_interval_minutes
        self.options = options or RunOptions(max_records=self.config.default_max_records)

        self.scheduler = AsyncIOScheduler()
        self.storage = DatabaseStorage(self.config.database_url)
        self.orchestrator = SyncOrchestrator(self.config, self.storage)
        self._is_syncing = False
        self._last_sync: datetime | None = None
        self._last_summary: SyncSummary | None = None

    async def start(self) -> None:
        """Start the scheduler and run an initial sync."""
        console.print(Panel.fit(
            "[bold green]Starting Sync Scheduler[/bold green]\n"
            f"[dim]Incremental: every {self.sync_interval} minutes[/dim]",
            border_style="green",
        ))

        await self.storage.initialize()

        self.scheduler.add_job(
            self.run_sync,
            trigger=IntervalTrigger(minutes=self.sync_interval),
            id="deals_sync",
            name="Deals Incremental Sync",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()

        console.print("[green]Scheduler started successfully[/green]")
        console.print("[dim]Running initial sync...[/dim]")
        await self.run_sync()

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        console.print("[yellow]Stopping scheduler...[/yellow]")
        self.scheduler.shutdown(wait=True)
        await self.storage.close()
        console.print("[green]Scheduler stopped[/green]")

    async def run_sync(self) -> SyncSummary | None:
        """Run one sync unless another one is still in progress."""
        if self._is_syncing:
            logger.warning("Sync already in progress, skipping...")
            return None

        self._is_syncing = True
        start_time = datetime.now()

        try:
            console.print(f"\n[blue][{start_time.strftime('%H:%M:%S')}] Starting incremental sync...[/blue]")
            summary = await self.orchestrator.run(self.options)
            self.orchestrator.print_summary(summary)
            self._last_summary = summary
            self._last_sync = datetime.now()
            return summary
        except Exception as e:
            logger.exception("Scheduled sync failed")
            console.print(f"[red]Sync error: {e}[/red]")
            return None
        finally:
            self._is_syncing = False

    def get_status(self) -> dict[str, Any]:
        """Get current scheduler status."""
        jobs = [
            {
                "id": job.id,
                "name": job.name,
                "next_run": str(job.next_run_time) if job.next_run_time else None,
            }
            for job in self.scheduler.get_jobs()
        ]

        return {
            "running": self.scheduler.running,
            "is_syncing": self._is_syncing,
            "last_sync": str(self._last_sync) if self._last_sync else None,
            "last_status": self._last_summary.status.value if self._last_summary else None,
            "jobs": jobs,
        }


async def run_scheduler(
    sync_interval: int | None = None,
    metrics_port: int | None = None,
    options: RunOptions | None = None,
) -> None:
    """
    Run the sync scheduler continuously.

    Args:
        sync_interval: Minutes between syncs.
        metrics_port: Port for Prometheus metrics server.
        options: Options used for every scheduled run.
    """
    scheduler = SyncScheduler(sync_interval_minutes=sync_interval, options=options)
    runner = None

    try:
        if default_settings.metrics_enabled:
            runner = await metrics.start_server(port=metrics_port or default_settings.metrics_port)

        await scheduler.start()

        while True:
            await asyncio.sleep(60)

            status = scheduler.get_status()
            if status["jobs"]:
                console.print(
                    f"[dim]Next sync: {status['jobs'][0].get('next_run', 'unknown')}[/dim]",
                    highlight=False,
                )
    except (asyncio.CancelledError, KeyboardInterrupt):
        await scheduler.stop()
    finally:
        if runner is not None:
            await runner.cleanup()
