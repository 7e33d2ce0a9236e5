"""
Sync Orchestrator

Runs one incremental deals sync end to end:
- Probe the list endpoint for the total and plan pages
- Fetch list pages through the rate-limited fetcher
- Classify records against stored fingerprints
- Fetch attributes only for records that changed
- Normalize and upsert in adaptive waves
- Persist fingerprints for committed deals only
- Record the run in the ledger and in Prometheus metrics
"""

import logging
import time
from contextlib import AsyncExitStack
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field
from rich.console import Console
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from dealsync.client.api_client import SourceApiClient
from dealsync.client.fetcher import RateLimitedFetcher, RateLimitPolicy
from dealsync.config import Settings, settings as default_settings
from dealsync.exceptions import ConfigError, SchemaValidationError, SyncError
from dealsync.metrics import MetricsCollector, metrics as default_metrics
from dealsync.storage.database import DatabaseStorage
from dealsync.sync.planner import chunk_ids, effective_total, plan_pages
from dealsync.sync.processor import DealProcessor, NormalizedDeal, SourceRecord
from dealsync.sync.tracker import ChangeReason, ChangeTracker, Classification
from dealsync.sync.writer import AdaptiveUpsertWriter, WriteResult

logger = logging.getLogger(__name__)
console = Console()


class SyncStage(str, Enum):
    """Stages of a sync run, in the order they are entered."""

    IDLE = "idle"
    PLANNING = "planning"
    LISTING = "listing"
    CLASSIFYING = "classifying"
    EARLY_EXIT = "early_exit"
    PROJECTING = "projecting"
    WRITING = "writing"
    FINALIZING = "finalizing"


class RunStatus(str, Enum):
    """Terminal status of a sync run."""

    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


class RunOptions(BaseModel):
    """Trigger options for one sync run."""

    # Wipe deals and fingerprints before listing (live runs only)
    clear_first: bool = False

    # Compute everything, write nothing
    dry_run: bool = False

    # Ignore max_records and sync the whole source
    all_records: bool = False
    max_records: int = Field(default=1000, ge=1)

    # Skip change detection, reprocess every fetched deal
    force_full_run: bool = False


@dataclass
class SyncSummary:
    """Result of a sync run."""

    run_id: str
    status: RunStatus = RunStatus.COMPLETED
    stages: list[SyncStage] = field(default_factory=lambda: [SyncStage.IDLE])
    dry_run: bool = False

    total_available: int = 0
    total_fetched: int = 0
    to_process: int = 0
    new_count: int = 0
    modified_count: int = 0
    skipped_count: int = 0

    written: int = 0
    fingerprints_written: int = 0

    list_page_errors: int = 0
    attribute_errors: int = 0
    rejected_records: int = 0
    failed_batches: int = 0
    transient_write_errors: int = 0
    final_wave_width: int | None = None

    elapsed_seconds: float = 0.0
    records_per_second: float = 0.0
    writes_per_second: float = 0.0

    error_message: str | None = None
    tracking_failed_open: bool = False
    ledger_id: int | None = None

    @property
    def has_errors(self) -> bool:
        return bool(
            self.list_page_errors
            or self.attribute_errors
            or self.rejected_records
            or self.failed_batches
        )

    def enter(self, stage: SyncStage) -> None:
        self.stages.append(stage)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        data = asdict(self)
        data["status"] = self.status.value
        data["stages"] = [stage.value for stage in self.stages]
        return data


def new_run_id() -> str:
    """Sync batch id stamped on every fingerprint written by a run."""
    return f"tracking_sync_{int(time.time() * 1000)}"


class SyncOrchestrator:
    """
    Coordinates a single sync run.

    The orchestrator is the only component that writes the run ledger.

    Example:
        orchestrator = SyncOrchestrator(settings, storage)
        summary = await orchestrator.run(RunOptions(max_records=500))
    """

    def __init__(
        self,
        config: Settings | None = None,
        storage: DatabaseStorage | None = None,
        client: SourceApiClient | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            config: Settings, defaults to the environment
            storage: Entity, fingerprint and ledger store; created on first run
            client: Source API client, entered and closed by each run
            metrics: Metrics collector
        """
        self.config = config or default_settings
        self.metrics = metrics or default_metrics
        self._storage = storage
        self._client = client
        self.processor = DealProcessor(self.config)

    @property
    def storage(self) -> DatabaseStorage:
        if self._storage is None:
            self._storage = DatabaseStorage(self.config.database_url)
        return self._storage

    def validate_config(self) -> None:
        """Raise ConfigError if required settings are missing. No I/O."""
        missing = self.config.missing_required()
        if missing:
            raise ConfigError(missing)

    async def run(self, options: RunOptions | None = None) -> SyncSummary:
        """
        Execute one sync run.

        Args:
            options: Trigger options

        Returns:
            SyncSummary; failures are reported in its status, never raised
        """
        options = options or RunOptions()
        started = time.monotonic()
        summary = SyncSummary(run_id=new_run_id(), dry_run=options.dry_run)

        try:
            self.validate_config()
        except ConfigError as e:
            console.print(f"[red]{e}[/red]")
            summary.status = RunStatus.FAILED
            summary.error_message = str(e)
            summary.enter(SyncStage.FINALIZING)
            return summary

        sync_type = "full" if (options.force_full_run or options.clear_first) else "incremental"
        deadline = started + self.config.run_deadline_seconds

        async with self.metrics.track_sync(sync_type) as outcome:
            try:
                if not options.dry_run:
                    summary.ledger_id = await self.storage.start_run()
                await self._execute(options, summary, deadline)
            except SyncError as e:
                console.print(f"[red]Sync failed: {e}[/red]")
                summary.status = RunStatus.FAILED
                summary.error_message = str(e)
            except Exception as e:
                logger.exception("Unexpected error during sync run %s", summary.run_id)
                summary.status = RunStatus.FAILED
                summary.error_message = f"{type(e).__name__}: {e}"

            if summary.stages[-1] != SyncStage.FINALIZING:
                summary.enter(SyncStage.FINALIZING)

            summary.elapsed_seconds = round(time.monotonic() - started, 3)
            if summary.elapsed_seconds > 0:
                summary.records_per_second = round(summary.total_fetched / summary.elapsed_seconds, 2)
                summary.writes_per_second = round(summary.written / summary.elapsed_seconds, 2)

            outcome["status"] = summary.status.value

            if summary.ledger_id is not None:
                await self._finish_ledger(summary)

        return summary

    async def _execute(self, options: RunOptions, summary: SyncSummary, deadline: float) -> None:
        client = self._client or SourceApiClient(self.config, metrics=self.metrics)
        fetcher_policy = RateLimitPolicy.from_settings(self.config)

        async with AsyncExitStack() as stack:
            await stack.enter_async_context(client)
            fetcher = RateLimitedFetcher(client, fetcher_policy)
            tracker = ChangeTracker(self.storage)

            # ---- Planning ----
            summary.enter(SyncStage.PLANNING)
            if options.clear_first and not options.dry_run:
                console.print("[yellow]Clearing deals and tracking data...[/yellow]")
                deleted = await self.storage.delete_all_entities()
                cleared = await self.storage.delete_all_fingerprints()
                console.print(f"[dim]Deleted {deleted} deals and {cleared} fingerprints[/dim]")

            console.print("\n[bold blue]Checking deal count...[/bold blue]")
            probe = await fetcher.fetch_one(client.probe_url())
            summary.total_available = self.processor.parse_total(probe)

            hard_cap = None if options.all_records else options.max_records
            target = effective_total(summary.total_available, hard_cap)
            pages = plan_pages(summary.total_available, self.config.page_size, hard_cap)
            console.print(
                f"[dim]{summary.total_available:,} deals available, "
                f"fetching {target:,} in {len(pages)} pages[/dim]"
            )

            # ---- Listing ----
            summary.enter(SyncStage.LISTING)
            records = await self._fetch_records(fetcher, client, pages, summary, deadline)
            if records is None:
                return
            records = records[:target]
            summary.total_fetched = len(records)

            # ---- Classifying ----
            summary.enter(SyncStage.CLASSIFYING)
            classification = await self._classify(tracker, records, options)
            summary.to_process = len(classification.to_process)
            summary.new_count = classification.new_count
            summary.modified_count = classification.modified_count
            summary.skipped_count = classification.skipped_count
            summary.tracking_failed_open = classification.failed_open

            self.metrics.record_classified(ChangeReason.NEW.value, summary.new_count)
            self.metrics.record_classified(ChangeReason.MODIFIED.value, summary.modified_count)
            self.metrics.record_classified("unchanged", summary.skipped_count)

            if not classification.to_process:
                console.print("[green]No deals need processing[/green]")
                summary.enter(SyncStage.EARLY_EXIT)
                summary.status = self._status_for(summary)
                return

            # ---- Projecting ----
            summary.enter(SyncStage.PROJECTING)
            grouped, failed_owners = await self._fetch_attributes(
                fetcher, client, classification.ids, summary, deadline
            )

            changed = [
                item.record for item in classification.to_process
                if item.record.id not in failed_owners
            ]
            entities = [
                self.processor.normalize(record, grouped.get(record.id)) for record in changed
            ]

            if options.dry_run:
                console.print(f"[yellow]Dry run: {len(entities)} deals would be written[/yellow]")
                summary.status = self._status_for(summary)
                return

            # ---- Writing ----
            summary.enter(SyncStage.WRITING)
            result = await self._write(entities, summary, deadline)

            written = set(result.written_ids)
            updates = [
                self.processor.fingerprint_for(record, grouped.get(record.id), summary.run_id)
                for record in changed
                if record.id in written
            ]
            try:
                summary.fingerprints_written = await tracker.persist(updates)
            except SQLAlchemyError as e:
                # Deals are committed; they will be reprocessed next run
                logger.error("Failed to persist fingerprints: %s", e)
                summary.error_message = f"Fingerprint update failed: {e}"

            summary.status = self._status_for(summary, result)

    async def _fetch_records(
        self,
        fetcher: RateLimitedFetcher,
        client: SourceApiClient,
        pages: list,
        summary: SyncSummary,
        deadline: float,
    ) -> list[SourceRecord] | None:
        """Fetch and validate list pages. Returns None when the run failed."""
        if not pages:
            return []

        outcome = await fetcher.fetch_all(
            [client.list_url(page.offset, page.limit) for page in pages],
            deadline=deadline,
        )
        summary.list_page_errors += len(outcome.failures)

        records: dict[str, SourceRecord] = {}
        parsed_pages = 0
        for result in outcome.successes:
            try:
                page = self.processor.parse_list_page(result.data)
            except SchemaValidationError as e:
                console.print(f"[red]Malformed page {result.url}: {e}[/red]")
                summary.list_page_errors += 1
                continue
            parsed_pages += 1
            summary.rejected_records += page.rejected
            for record in page.records:
                # Offset paging can repeat a record when the source shifts
                records.setdefault(record.id, record)

        console.print(
            f"[dim]Fetched {len(records):,} deals from {parsed_pages}/{len(pages)} pages[/dim]"
        )

        if parsed_pages == 0:
            summary.status = RunStatus.FAILED
            summary.error_message = f"All {len(pages)} list pages failed"
            console.print(f"[red]{summary.error_message}[/red]")
            return None

        return list(records.values())

    async def _classify(
        self,
        tracker: ChangeTracker,
        records: list[SourceRecord],
        options: RunOptions,
    ) -> Classification:
        if options.force_full_run:
            console.print("[yellow]Forced full run, skipping change detection[/yellow]")
            return tracker.classify_all(records, ChangeReason.MODIFIED)
        if options.clear_first:
            return tracker.classify_all(records, ChangeReason.NEW)
        return await tracker.classify(records)

    async def _fetch_attributes(
        self,
        fetcher: RateLimitedFetcher,
        client: SourceApiClient,
        ids: list[str],
        summary: SyncSummary,
        deadline: float,
    ) -> tuple[dict[str, dict[str, str]], set[str]]:
        """
        Fetch attributes for the given owner ids only.

        Returns:
            (owner_id -> attributes, owner ids whose attribute request failed)
        """
        size = self.config.attribute_ids_per_request
        chunks = list(chunk_ids(ids, size))
        url_owners = {client.attribute_url(chunk, limit=size): chunk for chunk in chunks}

        console.print(f"[blue]Fetching attributes for {len(ids)} deals ({len(chunks)} requests)...[/blue]")
        outcome = await fetcher.fetch_all(list(url_owners), deadline=deadline)

        failed_owners: set[str] = set()
        for failure in outcome.failures:
            summary.attribute_errors += 1
            failed_owners.update(url_owners[failure.url])

        attributes = []
        for result in outcome.successes:
            try:
                parsed, rejected = self.processor.parse_attributes(result.data)
            except SchemaValidationError as e:
                console.print(f"[red]Malformed attribute response: {e}[/red]")
                summary.attribute_errors += 1
                failed_owners.update(url_owners[result.url])
                continue
            summary.rejected_records += rejected
            attributes.extend(parsed)

        if failed_owners:
            console.print(
                f"[yellow]Skipping {len(failed_owners)} deals with missing attributes[/yellow]"
            )
        return self.processor.group_attributes(attributes), failed_owners

    async def _write(
        self,
        entities: list[NormalizedDeal],
        summary: SyncSummary,
        deadline: float,
    ) -> WriteResult:
        writer = AdaptiveUpsertWriter(
            self.storage,
            batch_size=self.config.upsert_batch_size,
            wave_width=self.config.upsert_wave_width,
            max_retries=self.config.upsert_max_retries,
            backoff_base_ms=self.config.upsert_backoff_base_ms,
            jitter_ms=self.config.upsert_jitter_ms,
            contention_threshold=self.config.contention_threshold,
            wave_pacing_ms=self.config.wave_pacing_ms,
            metrics=self.metrics,
        )
        result = await writer.write(entities, deadline=deadline)

        summary.written = result.written_count
        summary.failed_batches = len(result.failed_batches)
        summary.transient_write_errors = result.transient_errors
        summary.final_wave_width = result.final_wave_width

        if result.deadline_skipped and result.written_count == 0:
            summary.error_message = "Run deadline expired before any deal was written"
        return result

    def _status_for(self, summary: SyncSummary, result: WriteResult | None = None) -> RunStatus:
        if result is not None and result.deadline_skipped and result.written_count == 0:
            return RunStatus.FAILED
        if summary.has_errors or summary.error_message:
            return RunStatus.COMPLETED_WITH_ERRORS
        return RunStatus.COMPLETED

    async def _finish_ledger(self, summary: SyncSummary) -> None:
        """Write the terminal ledger row. Ledger errors never change the run result."""
        try:
            await self.storage.finish_run(
                summary.ledger_id,
                status=summary.status.value,
                deals_processed=summary.written,
                deals_added=summary.new_count,
                deals_updated=summary.modified_count,
                deals_failed=max(summary.to_process - summary.written, 0),
                error_message=summary.error_message,
                duration_seconds=summary.elapsed_seconds,
                summary=summary.to_dict(),
            )
        except SQLAlchemyError as e:
            logger.error("Failed to record run %s in ledger: %s", summary.run_id, e)

    def print_summary(self, summary: SyncSummary) -> None:
        """Print a run summary table."""
        colors = {
            RunStatus.COMPLETED: "green",
            RunStatus.COMPLETED_WITH_ERRORS: "yellow",
            RunStatus.FAILED: "red",
        }
        color = colors[summary.status]

        table = Table(title=f"Sync {summary.run_id}" + (" (dry run)" if summary.dry_run else ""))
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right")

        table.add_row("Status", f"[{color}]{summary.status.value}[/{color}]")
        table.add_row("Available", f"{summary.total_available:,}")
        table.add_row("Fetched", f"{summary.total_fetched:,}")
        table.add_row("New", f"{summary.new_count:,}")
        table.add_row("Modified", f"{summary.modified_count:,}")
        table.add_row("Skipped", f"{summary.skipped_count:,}")
        table.add_row("Written", f"{summary.written:,}")
        table.add_row("Fingerprints", f"{summary.fingerprints_written:,}")
        table.add_row("Page errors", str(summary.list_page_errors))
        table.add_row("Attribute errors", str(summary.attribute_errors))
        table.add_row("Rejected records", str(summary.rejected_records))
        table.add_row("Failed batches", str(summary.failed_batches))
        table.add_row("Transient write errors", str(summary.transient_write_errors))
        if summary.final_wave_width is not None:
            table.add_row("Final wave width", str(summary.final_wave_width))
        table.add_row("Duration", f"{summary.elapsed_seconds:.1f}s")
        table.add_row("Records/s", f"{summary.records_per_second:.1f}")

        console.print(table)

        if summary.tracking_failed_open:
            console.print("[yellow]Tracking lookup failed, all deals were processed[/yellow]")
        if summary.error_message:
            console.print(f"[{color}]{summary.error_message}[/{color}]")
