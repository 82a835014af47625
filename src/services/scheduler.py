"""Polling scheduler that delivers due reminders.

One ``run_cycle()`` call is one poll: find active reminders due within the
grace window, deliver them in batches with bounded concurrency, and advance
each reminder to its next occurrence. A cycle is triggered externally (celery
beat or the API); the scheduler never arms its own timer.

Each due instant is claimed by creating a ``sending`` Delivery keyed on
``reminder:<id>:<due instant>``. The unique key is what keeps two overlapping
cycles from delivering the same occurrence twice.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from src.clock import ensure_utc, utcnow
from src.config import Settings, get_settings
from src.models.delivery import Delivery
from src.models.enums import DeliveryStatus, ReminderStatus
from src.models.reminder import Reminder
from src.schemas.health import CycleStats, SchedulerStats
from src.schemas.schedule import ScheduleSpec
from src.services.errors import DuplicateDeliveryError, StoreError
from src.services.events import ReminderEventPublisher, ReminderEventType
from src.services.notifier import NotificationResult, Notifier
from src.services.recurrence import next_due
from src.services.store import ReminderStore, scheduled_dedup_key

logger = logging.getLogger(__name__)


class ReminderScheduler:
    """Delivers due reminders, one cycle at a time.

    Only one cycle runs at a time per scheduler; a trigger that arrives while a
    cycle is in flight is dropped, not queued. ``stop()`` refuses new triggers
    but lets the current cycle finish.
    """

    def __init__(
        self,
        store: ReminderStore,
        notifier: Notifier,
        settings: Settings | None = None,
        events: ReminderEventPublisher | None = None,
        stats: SchedulerStats | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.events = events
        self.stats = stats or SchedulerStats()
        self.clock = clock
        self._sleep = sleep
        self._running = False
        self._busy = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_busy(self) -> bool:
        return self._busy

    def start(self) -> None:
        """Accept cycle triggers."""
        if self._running:
            return
        if not self.stats.running or self.stats.started_at is None:
            self.stats.started_at = self.clock()
        self._running = True
        self.stats.running = True
        logger.info("Reminder scheduler started")

    def stop(self) -> None:
        """Refuse new triggers. An in-flight cycle runs to completion."""
        if not self._running:
            return
        self._running = False
        self.stats.running = False
        logger.info("Reminder scheduler stopped")

    async def run_cycle(self) -> CycleStats | None:
        """Run one poll cycle.

        Returns:
            Statistics for the cycle, or None if the trigger was dropped
        """
        if not self._running:
            logger.warning("Scheduler is stopped, ignoring cycle trigger")
            return None
        if self._busy:
            self.stats.dropped_triggers += 1
            logger.warning("Scheduler cycle already in progress, dropping trigger")
            return None

        self._busy = True
        try:
            return await self._run_cycle()
        finally:
            self._busy = False

    async def _run_cycle(self) -> CycleStats:
        now = self.clock()
        started = time.monotonic()
        cycle = CycleStats(started_at=now)
        grace = timedelta(seconds=self.settings.scheduler_grace_seconds)

        try:
            due = self.store.list_due_reminders(now + grace)
            cycle.overdue = self.store.count_overdue(now - grace)
        except StoreError as e:
            logger.error(f"Scheduler cycle aborted, could not query due reminders: {e}")
            cycle.storage_errors += 1
            return self._finish(cycle, started)

        cycle.due = len(due)
        if due:
            logger.info(f"Found {len(due)} due reminders ({cycle.overdue} overdue)")

        semaphore = asyncio.Semaphore(self.settings.scheduler_max_concurrency)
        batch_size = self.settings.scheduler_batch_size

        async def guarded(reminder: Reminder, due_at: datetime) -> None:
            async with semaphore:
                await self._process_reminder(reminder, due_at, cycle)

        for start in range(0, len(due), batch_size):
            batch = due[start : start + batch_size]
            cycle.batches += 1
            # Capture due instants before any write expires the loaded rows
            pairs = [(reminder, ensure_utc(reminder.next_due_at)) for reminder in batch]
            await asyncio.gather(*(guarded(reminder, due_at) for reminder, due_at in pairs))

        return self._finish(cycle, started)

    def _finish(self, cycle: CycleStats, started: float) -> CycleStats:
        cycle.duration_seconds = time.monotonic() - started
        self.stats.record_cycle(cycle, finished_at=self.clock())
        logger.info(
            f"Scheduler cycle complete: due={cycle.due} delivered={cycle.delivered} "
            f"failed={cycle.failed} retries={cycle.retries} skipped={cycle.skipped} "
            f"recovered={cycle.recovered} storage_errors={cycle.storage_errors} "
            f"in {cycle.duration_seconds:.2f}s"
        )
        return cycle

    async def _process_reminder(
        self, reminder: Reminder, due_at: datetime, cycle: CycleStats
    ) -> None:
        """Claim, deliver and advance one reminder. Never raises."""
        reminder_id = reminder.id
        try:
            # Another writer may have paused, completed or rescheduled it meanwhile
            current_due = ensure_utc(reminder.next_due_at)
            if reminder.status != ReminderStatus.ACTIVE or current_due != due_at:
                cycle.skipped += 1
                return

            delivery = self._claim(reminder, due_at, cycle)
            if delivery is None:
                return
            await self._deliver(reminder, delivery, due_at, cycle)

        except StoreError as e:
            cycle.storage_errors += 1
            logger.error(f"Storage failure while processing reminder {reminder_id}: {e}")
        except Exception as e:
            cycle.failed += 1
            logger.error(f"Unexpected error processing reminder {reminder_id}: {e}", exc_info=True)

    def _claim(self, reminder: Reminder, due_at: datetime, cycle: CycleStats) -> Delivery | None:
        """Take ownership of the due instant, or recover a previous attempt at it."""
        now = self.clock()
        key = scheduled_dedup_key(reminder.id, due_at)
        try:
            return self.store.create_delivery(
                Delivery(
                    reminder_id=reminder.id,
                    recipient_id=reminder.recipient_id,
                    dedup_key=key,
                    scheduled_for=due_at,
                    status=DeliveryStatus.SENDING,
                    last_attempt_at=now,
                )
            )
        except DuplicateDeliveryError:
            existing = self.store.get_delivery_by_dedup_key(key)

        if existing is None:
            cycle.skipped += 1
            return None

        if existing.status == DeliveryStatus.DELIVERED:
            # Delivered before, but the reminder advance never landed
            logger.info(f"Recovering advance of reminder {reminder.id} for {due_at.isoformat()}")
            self._advance(reminder, due_at, ensure_utc(existing.delivered_at) or now)
            cycle.recovered += 1
            return None

        stale_before = now - timedelta(seconds=self.settings.scheduler_stale_claim_seconds)
        if self.store.reclaim_delivery(existing, stale_before, now):
            logger.info(f"Reclaimed delivery {existing.id} ({existing.dedup_key})")
            return existing

        logger.debug(f"Delivery {key} is owned by another cycle, skipping")
        cycle.skipped += 1
        return None

    async def _deliver(
        self,
        reminder: Reminder,
        delivery: Delivery,
        due_at: datetime,
        cycle: CycleStats,
    ) -> None:
        max_attempts = 1 + self.settings.scheduler_max_retries

        for attempt in range(1, max_attempts + 1):
            try:
                result = await self.notifier.send(reminder)
            except Exception as e:
                logger.error(f"Notifier raised for reminder {reminder.id}: {e}")
                result = NotificationResult.failed(str(e), retryable=True)

            now = self.clock()
            attempt_fields = {
                "attempt_count": delivery.attempt_count + 1,
                "last_attempt_at": now,
            }

            if result.success:
                self.store.update_delivery(
                    delivery,
                    status=DeliveryStatus.DELIVERED,
                    delivered_at=now,
                    message_ref=result.message_ref,
                    error_message=None,
                    permanent_failure=False,
                    **attempt_fields,
                )
                cycle.delivered += 1
                logger.info(f"Delivered reminder {reminder.id} to {reminder.recipient_id}")
                self._advance(reminder, due_at, now)
                self._emit(
                    reminder.id,
                    ReminderEventType.DELIVERED,
                    {"delivery_id": delivery.id, "attempt": attempt},
                )
                return

            if not result.retryable:
                self.store.update_delivery(
                    delivery,
                    status=DeliveryStatus.FAILED,
                    permanent_failure=True,
                    error_message=result.error,
                    **attempt_fields,
                )
                cycle.failed += 1
                cycle.permanent_failures += 1
                logger.error(f"Permanent failure for reminder {reminder.id}: {result.error}")
                self._record_permanent_failure(reminder)
                return

            if attempt == max_attempts:
                self.store.update_delivery(
                    delivery,
                    status=DeliveryStatus.FAILED,
                    error_message=result.error,
                    **attempt_fields,
                )
                cycle.failed += 1
                logger.error(
                    f"Failed to deliver reminder {reminder.id} after {max_attempts} attempts. "
                    f"Last error: {result.error}"
                )
                return

            self.store.update_delivery(
                delivery,
                status=DeliveryStatus.RETRYING,
                error_message=result.error,
                **attempt_fields,
            )
            cycle.retries += 1
            logger.warning(
                f"Retrying reminder {reminder.id} in {self.settings.scheduler_retry_delay_seconds}s "
                f"(attempt {attempt}/{max_attempts}): {result.error}"
            )
            await self._sleep(self.settings.scheduler_retry_delay_seconds)

    def _advance(self, reminder: Reminder, due_at: datetime, delivered_at: datetime) -> None:
        """Move a delivered reminder to its next occurrence."""
        snoozed = reminder.is_snoozed
        # A snoozed fire re-delivers the same occurrence
        count = reminder.occurrence_count if snoozed else reminder.occurrence_count + 1
        reference = max(self.clock(), due_at)
        displaced = reminder.snoozed_occurrence_at if snoozed else None

        if displaced is not None and displaced > reference:
            # The snooze only borrowed a slot; the regular occurrence still stands
            upcoming = displaced
        else:
            upcoming = next_due(
                ScheduleSpec.model_validate(reminder.schedule),
                reminder.timezone,
                reference,
                prior_occurrence=displaced if snoozed else due_at,
                occurrence_count=count,
            )

        changes = {
            "occurrence_count": count,
            "last_delivered_at": delivered_at,
            "next_due_at": upcoming,
            "is_snoozed": False,
            "snoozed_occurrence_at": None,
            "consecutive_failures": 0,
            "escalation_level": 0,
        }
        if upcoming is None:
            changes["status"] = ReminderStatus.COMPLETED
            changes["completed_at"] = delivered_at
            logger.info(f"Reminder {reminder.id} has no further occurrences, completing")

        self.store.update_reminder(reminder, **changes)

    def _record_permanent_failure(self, reminder: Reminder) -> None:
        failures = reminder.consecutive_failures + 1
        changes = {"consecutive_failures": failures}
        if failures >= self.settings.max_consecutive_failures:
            changes["status"] = ReminderStatus.FAILED
            changes["next_due_at"] = None
            logger.error(
                f"Reminder {reminder.id} failed permanently {failures} times in a row, "
                f"marking failed"
            )
        self.store.update_reminder(reminder, **changes)

    def _emit(self, reminder_id: int, event_type: ReminderEventType, data: dict) -> None:
        if self.events is not None:
            self.events.publish(reminder_id, event_type, data=data)
