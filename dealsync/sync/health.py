"""
Sync health evaluation.

Derives a healthy / warning / critical verdict from the run ledger and the
size of the deal cache. Pure function over already-loaded rows so the CLI,
the daemon and tests share the same rules.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol, Sequence


class HealthStatus(str, Enum):
    """Overall cache health, ordered by severity."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.WARNING: 1, HealthStatus.CRITICAL: 2}


class RunRecord(Protocol):
    """Ledger row fields read by the health check."""

    sync_started_at: datetime
    sync_completed_at: datetime | None
    sync_status: str
    error_message: str | None


@dataclass
class HealthReport:
    """Result of evaluate_health()."""

    status: HealthStatus = HealthStatus.HEALTHY
    issues: list[str] = field(default_factory=list)
    total_deals: int = 0
    last_sync_at: datetime | None = None
    last_sync_status: str = "unknown"
    minutes_since_last_sync: int | None = None
    success_rate: float = 0.0
    is_running: bool = False

    def escalate(self, status: HealthStatus, issue: str) -> None:
        """Add an issue; the overall status only ever gets worse."""
        self.issues.append(issue)
        if _SEVERITY[status] > _SEVERITY[self.status]:
            self.status = status

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "issues": self.issues or None,
            "total_deals": self.total_deals,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_sync_status": self.last_sync_status,
            "minutes_since_last_sync": self.minutes_since_last_sync,
            "success_rate": round(self.success_rate),
            "is_running": self.is_running,
        }


def _minutes_between(start: datetime, end: datetime) -> float:
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    return (end - start).total_seconds() / 60


def evaluate_health(
    recent_runs: Sequence[RunRecord],
    total_deals: int,
    now: datetime | None = None,
    warning_minutes: int = 45,
    critical_minutes: int = 120,
    running_warning_minutes: int = 10,
    min_deals: int = 10,
    min_success_rate: float = 80.0,
) -> HealthReport:
    """
    Evaluate cache health.

    Args:
        recent_runs: Ledger rows, newest first (the first five are used for
            the success rate)
        total_deals: Rows in the deal cache
        now: Reference time, defaults to the current UTC time

    Returns:
        HealthReport with every issue found
    """
    now = now or datetime.now(timezone.utc)
    report = HealthReport(total_deals=total_deals)

    if not recent_runs:
        report.escalate(HealthStatus.CRITICAL, "No sync records found")
    else:
        last = recent_runs[0]
        report.last_sync_status = last.sync_status
        if last.sync_completed_at is None:
            report.is_running = True
            running = _minutes_between(last.sync_started_at, now)
            if running > running_warning_minutes:
                report.escalate(
                    HealthStatus.WARNING,
                    f"Sync has been running for {round(running)} minutes",
                )

        finished = next((run for run in recent_runs if run.sync_completed_at is not None), None)
        if finished is None:
            report.escalate(HealthStatus.CRITICAL, "No completed sync found")
        else:
            report.last_sync_at = finished.sync_completed_at
            minutes = _minutes_between(finished.sync_completed_at, now)
            report.minutes_since_last_sync = round(minutes)
            if minutes > critical_minutes:
                report.escalate(
                    HealthStatus.CRITICAL,
                    f"Last sync was {round(minutes)} minutes ago - sync may be broken",
                )
            elif minutes > warning_minutes:
                report.escalate(
                    HealthStatus.WARNING, f"Last sync was {round(minutes)} minutes ago"
                )

        if last.sync_status == "failed":
            report.escalate(
                HealthStatus.WARNING,
                f"Last sync failed: {last.error_message or 'Unknown error'}",
            )

        history = recent_runs[:5]
        completed = [run for run in history if run.sync_status == "completed"]
        report.success_rate = len(completed) / len(history) * 100
        if report.success_rate < min_success_rate:
            report.escalate(
                HealthStatus.WARNING,
                f"Low sync success rate: {report.success_rate:.1f}%",
            )

    if total_deals < min_deals:
        report.escalate(HealthStatus.WARNING, f"Only {total_deals} deals in cache")

    return report
