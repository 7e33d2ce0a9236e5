"""
Change Tracker

Decides which fetched deals need reprocessing by comparing their
modification time against persisted fingerprints.

- No fingerprint          -> NEW
- Newer than fingerprint  -> MODIFIED
- Otherwise               -> skipped (unchanged)

If the fingerprint store cannot be read, every record is treated as NEW.
Reprocessing is preferred over silently skipping data.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Protocol, Sequence

from rich.console import Console

from dealsync.exceptions import FingerprintLookupError
from dealsync.sync.processor import FingerprintUpdate, SourceRecord

logger = logging.getLogger(__name__)
console = Console()


class ChangeReason(str, Enum):
    """Why a record is being reprocessed."""

    NEW = "new"
    MODIFIED = "modified"


class FingerprintStore(Protocol):
    """Persistence used by the tracker."""

    async def get_fingerprints(self, deal_ids: Sequence[str]) -> dict[str, datetime]: ...

    async def upsert_fingerprints(self, rows: list[dict[str, Any]]) -> int: ...


@dataclass(frozen=True)
class ClassifiedRecord:
    """A record selected for reprocessing."""

    record: SourceRecord
    reason: ChangeReason


@dataclass
class Classification:
    """Result of classify()."""

    to_process: list[ClassifiedRecord] = field(default_factory=list)
    skipped: list[SourceRecord] = field(default_factory=list)
    failed_open: bool = False

    @property
    def new_count(self) -> int:
        return sum(1 for item in self.to_process if item.reason == ChangeReason.NEW)

    @property
    def modified_count(self) -> int:
        return sum(1 for item in self.to_process if item.reason == ChangeReason.MODIFIED)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    @property
    def optimization_percentage(self) -> float:
        """Share of fetched records that did not need reprocessing."""
        total = len(self.to_process) + len(self.skipped)
        if total == 0:
            return 0.0
        return round(len(self.skipped) / total * 100, 1)

    @property
    def ids(self) -> list[str]:
        return [item.record.id for item in self.to_process]


class ChangeTracker:
    """
    Incremental diff engine backed by a fingerprint store.

    Example:
        tracker = ChangeTracker(storage)
        classification = await tracker.classify(records)
        ...
        await tracker.persist(updates_for_committed_deals)
    """

    def __init__(self, store: FingerprintStore) -> None:
        self.store = store

    async def classify(self, records: Sequence[SourceRecord]) -> Classification:
        """
        Split records into NEW / MODIFIED / unchanged.

        Returns:
            Classification; failed_open is set when the lookup failed
        """
        if not records:
            return Classification()

        ids = list(dict.fromkeys(record.id for record in records))
        try:
            seen = await self.store.get_fingerprints(ids)
        except FingerprintLookupError as e:
            logger.warning("Fingerprint lookup failed, processing all %d records: %s", len(records), e)
            console.print("[yellow]Tracking lookup failed - falling back to full processing[/yellow]")
            result = self.classify_all(records, ChangeReason.NEW)
            result.failed_open = True
            return result

        result = Classification()
        for record in records:
            last_seen = seen.get(record.id)
            if last_seen is None:
                result.to_process.append(ClassifiedRecord(record, ChangeReason.NEW))
            elif record.last_modified_at > _as_utc(last_seen):
                result.to_process.append(ClassifiedRecord(record, ChangeReason.MODIFIED))
            else:
                result.skipped.append(record)

        console.print(
            f"[dim]Deal analysis: {result.new_count} new, {result.modified_count} modified, "
            f"{result.skipped_count} skipped ({result.optimization_percentage}% reduction)[/dim]"
        )
        return result

    def classify_all(
        self,
        records: Iterable[SourceRecord],
        reason: ChangeReason,
    ) -> Classification:
        """Mark every record for processing without consulting the store."""
        return Classification(
            to_process=[ClassifiedRecord(record, reason) for record in records]
        )

    async def persist(self, updates: Iterable[FingerprintUpdate]) -> int:
        """
        Upsert fingerprints, one row per deal id.

        Duplicates within the batch are collapsed first (last one wins) so a
        single statement never hits the unique constraint twice.

        Returns:
            Number of rows written
        """
        now = datetime.now(timezone.utc)
        deduplicated: dict[str, dict[str, Any]] = {}

        for update in updates:
            deduplicated[update.deal_id] = {
                "deal_id": update.deal_id,
                "deal_api_updated_at": update.last_modified_at,
                "deal_created_at": update.created_at,
                "last_checked_at": now,
                "has_closing_date": update.has_closing_date,
                "has_any_target_fields": update.has_any_target_fields,
                "target_fields_found": list(update.target_fields_found),
                "sync_batch_id": update.sync_batch_id,
            }

        if not deduplicated:
            return 0

        rows = list(deduplicated.values())
        await self.store.upsert_fingerprints(rows)
        console.print(f"[dim]Updated tracking data for {len(rows)} deals[/dim]")
        return len(rows)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
