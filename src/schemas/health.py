"""Scheduler statistics and health schemas."""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class HealthStatus(StrEnum):
    """Overall scheduler health."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class CycleStats(BaseModel):
    """Counters for one scheduler cycle."""

    started_at: datetime
    due: int = 0
    overdue: int = 0
    batches: int = 0
    delivered: int = 0
    failed: int = 0
    permanent_failures: int = 0
    retries: int = 0
    skipped: int = 0
    recovered: int = 0
    storage_errors: int = 0
    duration_seconds: float = 0.0


class SchedulerStats(BaseModel):
    """Cumulative scheduler statistics, persisted between cycles."""

    running: bool = False
    started_at: datetime | None = None
    last_cycle_at: datetime | None = None
    last_cycle_duration_seconds: float | None = None
    average_cycle_duration_seconds: float = 0.0
    cycles: int = 0
    total_delivered: int = 0
    total_failed: int = 0
    dropped_triggers: int = 0
    due_count: int = 0
    overdue_count: int = 0

    def record_cycle(self, cycle: CycleStats, finished_at: datetime) -> None:
        """Fold one finished cycle into the running totals."""
        self.cycles += 1
        self.last_cycle_at = finished_at
        self.last_cycle_duration_seconds = cycle.duration_seconds
        self.average_cycle_duration_seconds += (
            cycle.duration_seconds - self.average_cycle_duration_seconds
        ) / self.cycles
        self.total_delivered += cycle.delivered
        self.total_failed += cycle.failed
        self.due_count = cycle.due
        self.overdue_count = cycle.overdue

    @property
    def total_attempted(self) -> int:
        return self.total_delivered + self.total_failed

    @property
    def failure_rate(self) -> float:
        if self.total_attempted == 0:
            return 0.0
        return self.total_failed / self.total_attempted


class HealthThresholds(BaseModel):
    """Thresholds the classification was made with."""

    stale_after_seconds: float
    unhealthy_after_seconds: float
    degraded_failure_rate: float
    unhealthy_failure_rate: float
    min_sample: int
    degraded_overdue: int
    unhealthy_overdue: int
    slow_cycle_seconds: float


class HealthReport(BaseModel):
    """Health classification of the scheduler."""

    status: HealthStatus
    issues: list[str] = Field(default_factory=list)
    checked_at: datetime
    stats: SchedulerStats
    failure_rate: float
    thresholds: HealthThresholds
