"""Scheduler health classification and statistics persistence."""

import logging
from datetime import datetime

import redis
from pydantic import ValidationError as PydanticValidationError

from src.clock import ensure_utc
from src.config import Settings, get_settings
from src.schemas.health import HealthReport, HealthStatus, HealthThresholds, SchedulerStats
from src.services.events import get_sync_redis

logger = logging.getLogger(__name__)

STATS_KEY = "scheduler:stats"

_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


def _thresholds(settings: Settings) -> HealthThresholds:
    poll = settings.scheduler_poll_interval_seconds
    return HealthThresholds(
        stale_after_seconds=poll * settings.health_stale_factor,
        unhealthy_after_seconds=poll * settings.health_unhealthy_stale_factor,
        degraded_failure_rate=settings.health_degraded_failure_rate,
        unhealthy_failure_rate=settings.health_unhealthy_failure_rate,
        min_sample=settings.health_min_sample,
        degraded_overdue=settings.health_degraded_overdue,
        unhealthy_overdue=settings.health_unhealthy_overdue,
        slow_cycle_seconds=settings.health_slow_cycle_seconds,
    )


def classify_health(
    stats: SchedulerStats,
    now: datetime,
    settings: Settings | None = None,
) -> HealthReport:
    """Classify scheduler health from its statistics.

    healthy: running, last cycle recent, failure rate under the degraded threshold.
    degraded: any degraded threshold crossed, or the last cycle is stale.
    unhealthy: stopped, last cycle far overdue, or an unhealthy threshold crossed.
    """
    settings = settings or get_settings()
    thresholds = _thresholds(settings)
    now = ensure_utc(now)
    findings: list[tuple[HealthStatus, str]] = []

    if not stats.running:
        findings.append((HealthStatus.UNHEALTHY, "Scheduler is not running"))

    last_seen = ensure_utc(stats.last_cycle_at or stats.started_at)
    if last_seen is None:
        findings.append((HealthStatus.UNHEALTHY, "Scheduler has never run a cycle"))
    else:
        age = (now - last_seen).total_seconds()
        if age > thresholds.unhealthy_after_seconds:
            findings.append((HealthStatus.UNHEALTHY, f"Last cycle {age:.0f}s ago"))
        elif age > thresholds.stale_after_seconds:
            findings.append((HealthStatus.DEGRADED, f"Last cycle {age:.0f}s ago"))

    # Failure rate is noise until enough deliveries were attempted
    rate = stats.failure_rate
    if stats.total_attempted >= thresholds.min_sample:
        if rate >= thresholds.unhealthy_failure_rate:
            findings.append((HealthStatus.UNHEALTHY, f"Failure rate {rate:.0%}"))
        elif rate >= thresholds.degraded_failure_rate:
            findings.append((HealthStatus.DEGRADED, f"Failure rate {rate:.0%}"))

    if stats.overdue_count >= thresholds.unhealthy_overdue:
        findings.append((HealthStatus.UNHEALTHY, f"{stats.overdue_count} reminders overdue"))
    elif stats.overdue_count >= thresholds.degraded_overdue:
        findings.append((HealthStatus.DEGRADED, f"{stats.overdue_count} reminders overdue"))

    if stats.average_cycle_duration_seconds > thresholds.slow_cycle_seconds:
        findings.append(
            (
                HealthStatus.DEGRADED,
                f"Average cycle took {stats.average_cycle_duration_seconds:.1f}s",
            )
        )

    status = HealthStatus.HEALTHY
    for severity, _ in findings:
        if _SEVERITY[severity] > _SEVERITY[status]:
            status = severity

    return HealthReport(
        status=status,
        issues=[issue for _, issue in findings],
        checked_at=now,
        stats=stats,
        failure_rate=rate,
        thresholds=thresholds,
    )


class SchedulerStatsRepository:
    """Keeps scheduler statistics in Redis so workers and the API share them."""

    def __init__(self, redis_client: redis.Redis | None = None, key: str = STATS_KEY):
        self._redis = redis_client
        self.key = key
        # Separate counter so concurrent drops are counted atomically
        self.dropped_key = f"{key}:dropped_triggers"

    def _client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = get_sync_redis()
        return self._redis

    def load(self) -> SchedulerStats:
        """Load statistics; missing or unreadable data gives fresh statistics."""
        try:
            raw = self._client().get(self.key)
            dropped = self._client().get(self.dropped_key)
        except redis.RedisError as e:
            logger.error(f"Failed to load scheduler stats: {e}")
            return SchedulerStats()

        stats = SchedulerStats()
        if raw:
            try:
                stats = SchedulerStats.model_validate_json(raw)
            except PydanticValidationError as e:
                logger.warning(f"Discarding unreadable scheduler stats: {e}")
        stats.dropped_triggers = int(dropped or 0)
        return stats

    def save(self, stats: SchedulerStats) -> None:
        """Persist statistics. Failures are logged, never raised.

        ``dropped_triggers`` is not written here; it only changes through
        :meth:`record_dropped_trigger`, so a cycle saving the stats it loaded
        earlier cannot overwrite drops counted while it ran.
        """
        try:
            self._client().set(self.key, stats.model_dump_json(exclude={"dropped_triggers"}))
        except redis.RedisError as e:
            logger.error(f"Failed to save scheduler stats: {e}")

    def record_dropped_trigger(self) -> None:
        """Count a trigger dropped because a cycle was still running."""
        try:
            self._client().incr(self.dropped_key)
        except redis.RedisError as e:
            logger.error(f"Failed to count dropped trigger: {e}")
