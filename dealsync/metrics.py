"""
Prometheus Metrics Module

Exposes metrics for monitoring the deals sync service.

Metrics:
- Counters: requests, records classified, entities written, errors
- Histograms: request duration, sync duration
- Gauges: active syncs, upsert wave width

Usage:
    from dealsync.metrics import metrics

    # Record HTTP request
    metrics.record_http_request(status=200, duration=0.5)

    # Record written entities
    metrics.record_entities_written(count=100)

    # Start metrics server
    await metrics.start_server(port=9090)
"""

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import aiohttp.web as web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from rich.console import Console

console = Console()


@dataclass
class SimpleMetrics:
    """In-memory totals, mirrored next to the Prometheus series."""

    http_requests: int = 0
    http_errors: int = 0
    http_total_duration: float = 0.0
    records_classified: dict[str, int] = field(default_factory=dict)
    entities_written: int = 0
    transient_write_errors: int = 0
    failed_batches: int = 0
    sync_runs: int = 0
    sync_errors: int = 0
    active_syncs: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "http_requests_total": self.http_requests,
            "http_errors_total": self.http_errors,
            "http_avg_duration_seconds": (
                self.http_total_duration / max(self.http_requests, 1)
            ),
            "records_classified": self.records_classified,
            "entities_written_total": self.entities_written,
            "transient_write_errors_total": self.transient_write_errors,
            "failed_batches_total": self.failed_batches,
            "sync_runs_total": self.sync_runs,
            "sync_errors_total": self.sync_errors,
            "active_syncs": self.active_syncs,
        }


class MetricsCollector:
    """
    Prometheus metrics collector for the deals ingestor.

    Every collector owns its registry so tests and multiple engine instances
    never share series.
    """

    def __init__(self, enabled: bool = True) -> None:
        """
        Initialize metrics collector.

        Args:
            enabled: Whether to collect metrics
        """
        self.enabled = enabled
        self.simple = SimpleMetrics()
        self.registry = CollectorRegistry()

        self.http_requests_total = Counter(
            "deals_ingestor_http_requests_total",
            "Total HTTP requests made",
            ["status"],
            registry=self.registry,
        )

        self.http_request_duration = Histogram(
            "deals_ingestor_http_request_duration_seconds",
            "HTTP request duration in seconds",
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self.registry,
        )

        self.http_errors_total = Counter(
            "deals_ingestor_http_errors_total",
            "Total HTTP errors",
            ["error_type"],
            registry=self.registry,
        )

        self.records_classified_total = Counter(
            "deals_ingestor_records_classified_total",
            "Fetched records by change classification",
            ["reason"],
            registry=self.registry,
        )

        self.entities_written_total = Counter(
            "deals_ingestor_entities_written_total",
            "Normalized deals upserted",
            registry=self.registry,
        )

        self.transient_write_errors_total = Counter(
            "deals_ingestor_transient_write_errors_total",
            "Serialization, deadlock and lock-wait errors seen by the writer",
            registry=self.registry,
        )

        self.failed_batches_total = Counter(
            "deals_ingestor_failed_batches_total",
            "Upsert batches that could not be committed",
            registry=self.registry,
        )

        self.wave_width = Gauge(
            "deals_ingestor_upsert_wave_width",
            "Current number of concurrent upsert batches",
            registry=self.registry,
        )

        self.sync_duration = Histogram(
            "deals_ingestor_sync_duration_seconds",
            "Sync operation duration in seconds",
            ["sync_type"],
            buckets=(10, 30, 60, 120, 300, 600, 1800, 3600),
            registry=self.registry,
        )

        self.sync_runs_total = Counter(
            "deals_ingestor_sync_runs_total",
            "Total sync runs",
            ["sync_type", "status"],
            registry=self.registry,
        )

        self.active_syncs = Gauge(
            "deals_ingestor_active_syncs",
            "Number of currently active sync operations",
            registry=self.registry,
        )

    # ========== HTTP Metrics ==========

    def record_http_request(self, status: int, duration: float) -> None:
        """Record an HTTP request."""
        if not self.enabled:
            return

        self.simple.http_requests += 1
        self.simple.http_total_duration += duration
        self.http_requests_total.labels(status=str(status)).inc()
        self.http_request_duration.observe(duration)

    def record_http_error(self, error_type: str) -> None:
        """Record an HTTP error."""
        if not self.enabled:
            return

        self.simple.http_errors += 1
        self.http_errors_total.labels(error_type=error_type).inc()

    # ========== Engine Metrics ==========

    def record_classified(self, reason: str, count: int) -> None:
        """Record how many records got a given classification."""
        if not self.enabled or count <= 0:
            return

        self.simple.records_classified[reason] = (
            self.simple.records_classified.get(reason, 0) + count
        )
        self.records_classified_total.labels(reason=reason).inc(count)

    def record_entities_written(self, count: int) -> None:
        """Record committed upserts."""
        if not self.enabled or count <= 0:
            return

        self.simple.entities_written += count
        self.entities_written_total.inc(count)

    def record_transient_write_error(self) -> None:
        """Record one transient write error."""
        if not self.enabled:
            return

        self.simple.transient_write_errors += 1
        self.transient_write_errors_total.inc()

    def record_failed_batch(self) -> None:
        """Record one failed upsert batch."""
        if not self.enabled:
            return

        self.simple.failed_batches += 1
        self.failed_batches_total.inc()

    def set_wave_width(self, width: int) -> None:
        """Publish the writer's current wave width."""
        if not self.enabled:
            return

        self.wave_width.set(width)

    # ========== Sync Metrics ==========

    @asynccontextmanager
    async def track_sync(self, sync_type: str = "incremental") -> AsyncIterator[dict[str, str]]:
        """
        Context manager to track sync duration and status.

        The yielded dict may carry a "status" key to label the run.

        Usage:
            async with metrics.track_sync("full") as outcome:
                summary = await do_sync()
                outcome["status"] = summary.status.value
        """
        start_time = time.time()
        outcome: dict[str, str] = {"status": "completed"}
        self.simple.active_syncs += 1
        self.simple.sync_runs += 1
        self.active_syncs.inc()

        try:
            yield outcome
        except Exception:
            outcome["status"] = "error"
            self.simple.sync_errors += 1
            raise
        finally:
            duration = time.time() - start_time
            self.simple.active_syncs -= 1
            self.active_syncs.dec()
            if self.enabled:
                self.sync_duration.labels(sync_type=sync_type).observe(duration)
                self.sync_runs_total.labels(
                    sync_type=sync_type, status=outcome["status"]
                ).inc()

    # ========== Metrics Server ==========

    async def start_server(self, port: int = 9090) -> web.AppRunner:
        """
        Start HTTP server to expose metrics.

        Args:
            port: Port to listen on (default 9090)
        """

        async def metrics_handler(request: web.Request) -> web.Response:
            """Handle /metrics endpoint."""
            output = generate_latest(self.registry)
            return web.Response(body=output, headers={"Content-Type": CONTENT_TYPE_LATEST})

        async def health_handler(request: web.Request) -> web.Response:
            """Handle /health endpoint."""
            return web.Response(text="OK")

        app = web.Application()
        app.router.add_get("/metrics", metrics_handler)
        app.router.add_get("/health", health_handler)

        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "0.0.0.0", port)
        await site.start()

        console.print(f"[green]Metrics server started on port {port}[/green]")
        return runner

    def get_simple_metrics(self) -> dict[str, Any]:
        """Get simple metrics as dictionary."""
        return self.simple.to_dict()


# Global metrics instance
metrics = MetricsCollector()
