"""
Adaptive Batched Upsert Writer

Persists normalized deals in fixed-size batches. Batches run concurrently in
waves; the wave width shrinks when the database keeps reporting contention.

Per batch:
- Transient errors (serialization failure, deadlock, lock wait) are retried
  with exponential backoff plus jitter
- Any other error fails the batch at once; sibling batches are unaffected

Per run:
- Transient errors are counted across waves; once the count exceeds the
  threshold the wave width is halved (floor 1) and the count resets
- The width never grows back within a run
- The pause between waves grows with the previous wave's transient errors
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from rich.console import Console
from sqlalchemy.exc import DBAPIError

from dealsync.exceptions import DeadlineExceeded, TransientWriteError
from dealsync.metrics import MetricsCollector, metrics as default_metrics
from dealsync.retry import RetryError, RetryPolicy, retry_async
from dealsync.sync.processor import NormalizedDeal

logger = logging.getLogger(__name__)
console = Console()

# serialization_failure, deadlock_detected, lock_not_available
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03"})


class EntityStore(Protocol):
    """Persistence used by the writer."""

    async def upsert_entities(self, rows: list[dict[str, Any]]) -> int: ...


def _sqlstate(error: BaseException) -> str | None:
    orig = getattr(error, "orig", None)
    for source in (orig, getattr(orig, "__cause__", None), error):
        if source is None:
            continue
        code = getattr(source, "sqlstate", None) or getattr(source, "pgcode", None)
        if code:
            return str(code)
    return None


def is_transient_write_error(error: BaseException) -> bool:
    """True for contention errors that are expected to succeed on retry."""
    if isinstance(error, TransientWriteError):
        return True
    if isinstance(error, DBAPIError):
        if error.connection_invalidated:
            return True
        return _sqlstate(error) in TRANSIENT_SQLSTATES
    return False


@dataclass
class FailedBatch:
    """A batch that could not be committed."""

    index: int
    deal_ids: list[str]
    error: str
    attempts: int = 0


@dataclass
class WriteResult:
    """Result of a write() call."""

    written_count: int = 0
    written_ids: list[str] = field(default_factory=list)
    failed_batches: list[FailedBatch] = field(default_factory=list)
    transient_errors: int = 0
    deadline_skipped: int = 0
    wave_widths: list[int] = field(default_factory=list)

    @property
    def final_wave_width(self) -> int | None:
        return self.wave_widths[-1] if self.wave_widths else None


class AdaptiveUpsertWriter:
    """
    Wave-based concurrent upsert with degrade-only backpressure.

    Example:
        writer = AdaptiveUpsertWriter(storage, batch_size=100, wave_width=5)
        result = await writer.write(deals)
    """

    def __init__(
        self,
        store: EntityStore,
        batch_size: int = 100,
        wave_width: int = 5,
        max_retries: int = 3,
        backoff_base_ms: int = 1000,
        jitter_ms: int = 1000,
        contention_threshold: int = 3,
        wave_pacing_ms: int = 200,
        metrics: MetricsCollector | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        if wave_width < 1:
            raise ValueError(f"wave_width must be at least 1, got {wave_width}")

        self.store = store
        self.batch_size = batch_size
        self.initial_wave_width = wave_width
        self.contention_threshold = contention_threshold
        self.wave_pacing = wave_pacing_ms / 1000
        self.retry_policy = RetryPolicy(
            max_attempts=max_retries,
            base_delay=backoff_base_ms / 1000,
            jitter=jitter_ms / 1000,
        )
        self.metrics = metrics or default_metrics

    def split_batches(self, entities: Sequence[NormalizedDeal]) -> list[list[NormalizedDeal]]:
        """
        Fixed-size batches, each holding a deal id at most once.

        A later duplicate of a deal replaces the earlier one.
        """
        unique: dict[str, NormalizedDeal] = {}
        for entity in entities:
            unique[entity.deal_id] = entity
        ordered = list(unique.values())
        return [
            ordered[i:i + self.batch_size]
            for i in range(0, len(ordered), self.batch_size)
        ]

    async def write(
        self,
        entities: Sequence[NormalizedDeal],
        deadline: float | None = None,
    ) -> WriteResult:
        """
        Upsert all entities.

        Args:
            entities: Normalized deals
            deadline: time.monotonic() value after which no new wave starts

        Returns:
            WriteResult; written_ids only lists deals whose batch committed
        """
        result = WriteResult()
        batches = self.split_batches(entities)
        if not batches:
            return result

        wave_width = self.initial_wave_width
        contention_count = 0
        position = 0
        wave_number = 0

        while position < len(batches):
            if deadline is not None and time.monotonic() >= deadline:
                console.print(
                    f"[yellow]Deadline reached, {len(batches) - position} batches not started[/yellow]"
                )
                result.deadline_skipped = len(batches) - position
                for index in range(position, len(batches)):
                    self._record_failure(
                        result, index, batches[index],
                        DeadlineExceeded("Run deadline exceeded"), attempts=0,
                    )
                break

            wave = batches[position:position + wave_width]
            wave_number += 1
            result.wave_widths.append(wave_width)
            self.metrics.set_wave_width(wave_width)
            console.print(
                f"[dim]Upsert wave {wave_number}: batches {position + 1}-{position + len(wave)} "
                f"of {len(batches)} (parallelism: {wave_width})[/dim]"
            )

            wave_errors = [0]
            outcomes = await asyncio.gather(
                *[
                    self._write_batch(position + offset, batch, wave_errors)
                    for offset, batch in enumerate(wave)
                ],
                return_exceptions=True,
            )

            for offset, (batch, outcome) in enumerate(zip(wave, outcomes)):
                index = position + offset
                if isinstance(outcome, BaseException):
                    # Batch coroutines only raise on bugs or cancellation
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    logger.error("Batch %d crashed: %r", index + 1, outcome)
                    self._record_failure(result, index, batch, outcome, attempts=0)
                    continue
                attempts, error = outcome
                if error is None:
                    result.written_count += len(batch)
                    result.written_ids.extend(entity.deal_id for entity in batch)
                    self.metrics.record_entities_written(len(batch))
                else:
                    self._record_failure(result, index, batch, error, attempts)

            position += len(wave)
            result.transient_errors += wave_errors[0]
            contention_count += wave_errors[0]

            if contention_count > self.contention_threshold and wave_width > 1:
                new_width = max(1, wave_width // 2)
                console.print(
                    f"[yellow]Contention: {contention_count} transient errors, "
                    f"reducing parallelism {wave_width} -> {new_width}[/yellow]"
                )
                wave_width = new_width
                contention_count = 0
            elif contention_count > self.contention_threshold:
                contention_count = 0

            if position < len(batches) and wave_errors[0] > 0:
                await asyncio.sleep(self.wave_pacing * wave_errors[0])

        console.print(
            f"[green]Upserted {result.written_count} deals[/green]"
            + (f" [red]({len(result.failed_batches)} batches failed)[/red]" if result.failed_batches else "")
        )
        return result

    async def _write_batch(
        self,
        index: int,
        batch: list[NormalizedDeal],
        wave_errors: list[int],
    ) -> tuple[int, BaseException | None]:
        """Upsert one batch with retries. Returns (attempts, error or None)."""
        rows = [entity.to_row() for entity in batch]
        attempts = 0

        async def attempt() -> int:
            nonlocal attempts
            attempts += 1
            try:
                return await self.store.upsert_entities(rows)
            except Exception as e:
                if is_transient_write_error(e):
                    wave_errors[0] += 1
                    self.metrics.record_transient_write_error()
                raise

        def on_retry(attempt_number: int, error: BaseException, delay: float) -> None:
            logger.warning(
                "Contention in batch %d, attempt %d/%d: %s. Retrying in %.0fms",
                index + 1, attempt_number, self.retry_policy.max_attempts, error, delay * 1000,
            )

        try:
            await retry_async(
                attempt,
                self.retry_policy,
                is_retryable=is_transient_write_error,
                on_retry=on_retry,
            )
        except RetryError as e:
            return attempts, e.last_error
        except Exception as e:
            return attempts, e

        return attempts, None

    def _record_failure(
        self,
        result: WriteResult,
        index: int,
        batch: list[NormalizedDeal],
        error: BaseException,
        attempts: int,
    ) -> None:
        console.print(f"[red]Batch {index + 1} failed after {attempts} attempts: {error}[/red]")
        result.failed_batches.append(FailedBatch(
            index=index,
            deal_ids=[entity.deal_id for entity in batch],
            error=str(error),
            attempts=attempts,
        ))
        self.metrics.record_failed_batch()
