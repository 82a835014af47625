"""Tests for the reminder scheduler."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from src.models.delivery import Delivery
from src.models.enums import DeliveryStatus, ReminderStatus
from src.services.errors import StoreError
from src.services.events import ReminderEventType
from src.services.notifier import NotificationResult
from src.services.scheduler import ReminderScheduler
from src.services.store import scheduled_dedup_key

NOW = datetime(2024, 1, 15, 8, 0, tzinfo=UTC)


@pytest.fixture
def scheduler(store, notifier, settings, events, clock):
    scheduler = ReminderScheduler(store, notifier, settings=settings, events=events, clock=clock)
    scheduler.start()
    return scheduler


class TestLifecycle:
    """Tests for start/stop and single-flight behavior."""

    @pytest.mark.asyncio
    async def test_stopped_scheduler_ignores_triggers(self, store, notifier, settings, clock):
        scheduler = ReminderScheduler(store, notifier, settings=settings, clock=clock)
        assert await scheduler.run_cycle() is None
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_stop_refuses_new_cycles(self, scheduler):
        scheduler.stop()
        assert await scheduler.run_cycle() is None
        assert scheduler.stats.running is False

    @pytest.mark.asyncio
    async def test_trigger_while_busy_is_dropped(
        self, store, notifier, settings, clock, make_reminder
    ):
        make_reminder(next_due_at=NOW - timedelta(minutes=1))
        gate = asyncio.Event()

        async def slow_sleep(_seconds):
            await gate.wait()

        notifier.results = [NotificationResult.failed("busy", retryable=True)]
        scheduler = ReminderScheduler(store, notifier, settings=settings, clock=clock, sleep=slow_sleep)
        scheduler.start()

        first = asyncio.create_task(scheduler.run_cycle())
        await asyncio.sleep(0)
        while not scheduler.is_busy:
            await asyncio.sleep(0)

        assert await scheduler.run_cycle() is None
        assert scheduler.stats.dropped_triggers == 1

        gate.set()
        cycle = await first
        assert cycle.delivered == 1


class TestDelivery:
    """Tests for delivering due reminders."""

    @pytest.mark.asyncio
    async def test_delivers_and_advances(self, scheduler, store, notifier, events, make_reminder):
        reminder = make_reminder(next_due_at=NOW)

        cycle = await scheduler.run_cycle()

        assert cycle.due == 1
        assert cycle.delivered == 1
        assert notifier.sent == [reminder.id]

        reminder = store.get_reminder(reminder.id)
        assert reminder.occurrence_count == 1
        assert reminder.last_delivered_at == NOW
        # Daily 09:00 UTC, delivered at 08:00 for the 08:00 slot -> next is today 09:00
        assert reminder.next_due_at == datetime(2024, 1, 15, 9, 0, tzinfo=UTC)

        [delivery] = store.list_deliveries_for_reminder(reminder.id)
        assert delivery.status == DeliveryStatus.DELIVERED
        assert delivery.dedup_key == scheduled_dedup_key(reminder.id, NOW)
        assert delivery.message_ref == "msg-1"
        assert delivery.attempt_count == 1

        event_types = [call.args[1] for call in events.publish.call_args_list]
        assert ReminderEventType.DELIVERED in event_types

    @pytest.mark.asyncio
    async def test_within_grace_window_is_delivered(self, scheduler, notifier, make_reminder):
        make_reminder(next_due_at=NOW + timedelta(seconds=30))
        make_reminder(next_due_at=NOW + timedelta(minutes=5))

        cycle = await scheduler.run_cycle()

        assert cycle.due == 1
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_reference_is_due_instant_when_early(self, scheduler, store, make_reminder):
        """Delivering slightly early must not schedule the same slot again."""
        due = datetime(2024, 1, 15, 8, 0, 30, tzinfo=UTC)
        reminder = make_reminder(
            next_due_at=due,
            schedule={"type": "interval", "time_of_day": "08:00:30", "interval": 1},
        )

        await scheduler.run_cycle()

        reminder = store.get_reminder(reminder.id)
        assert reminder.next_due_at == due + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_last_occurrence_completes_reminder(self, scheduler, store, make_reminder):
        reminder = make_reminder(
            schedule={"type": "daily", "time_of_day": "09:00:00", "max_occurrences": 1}
        )

        await scheduler.run_cycle()

        reminder = store.get_reminder(reminder.id)
        assert reminder.status == ReminderStatus.COMPLETED
        assert reminder.next_due_at is None
        assert reminder.completed_at == NOW

    @pytest.mark.asyncio
    async def test_snoozed_fire_does_not_count_occurrence(self, scheduler, store, make_reminder):
        reminder = make_reminder(is_snoozed=True, occurrence_count=4)

        await scheduler.run_cycle()

        reminder = store.get_reminder(reminder.id)
        assert reminder.occurrence_count == 4
        assert reminder.is_snoozed is False
        assert reminder.next_due_at == datetime(2024, 1, 15, 9, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_snoozed_fire_restores_regular_occurrence(
        self, scheduler, store, clock, make_reminder
    ):
        regular = datetime(2024, 1, 18, 9, 0, tzinfo=UTC)
        clock.now = datetime(2024, 1, 16, 10, 15, tzinfo=UTC)
        reminder = make_reminder(
            schedule={"type": "interval", "time_of_day": "09:00:00", "interval": 3},
            next_due_at=clock.now,
            is_snoozed=True,
            snoozed_occurrence_at=regular,
            occurrence_count=1,
        )

        await scheduler.run_cycle()

        reminder = store.get_reminder(reminder.id)
        assert reminder.next_due_at == regular
        assert reminder.snoozed_occurrence_at is None
        assert reminder.occurrence_count == 1

    @pytest.mark.asyncio
    async def test_long_snooze_keeps_interval_cadence(self, scheduler, store, clock, make_reminder):
        clock.now = datetime(2024, 1, 18, 10, 0, tzinfo=UTC)
        reminder = make_reminder(
            schedule={"type": "interval", "time_of_day": "09:00:00", "interval": 3},
            next_due_at=clock.now,
            is_snoozed=True,
            snoozed_occurrence_at=datetime(2024, 1, 18, 9, 0, tzinfo=UTC),
        )

        await scheduler.run_cycle()

        reminder = store.get_reminder(reminder.id)
        assert reminder.next_due_at == datetime(2024, 1, 21, 9, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_batches_and_concurrency_limit(self, store, settings, clock, make_reminder):
        for _ in range(5):
            make_reminder()
        settings.scheduler_batch_size = 2
        settings.scheduler_max_concurrency = 1
        in_flight = 0
        peak = 0

        class CountingNotifier:
            async def send(self, reminder):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0)
                in_flight -= 1
                return NotificationResult.ok()

        scheduler = ReminderScheduler(store, CountingNotifier(), settings=settings, clock=clock)
        scheduler.start()

        cycle = await scheduler.run_cycle()

        assert cycle.batches == 3
        assert cycle.delivered == 5
        assert peak == 1


class TestFailures:
    """Tests for retry, permanent failure and storage isolation."""

    @pytest.mark.asyncio
    async def test_retryable_failure_then_success(self, scheduler, store, notifier, make_reminder):
        reminder = make_reminder()
        notifier.results = [
            NotificationResult.failed("timeout", retryable=True),
            NotificationResult.ok(message_ref="late"),
        ]

        cycle = await scheduler.run_cycle()

        assert cycle.retries == 1
        assert cycle.delivered == 1
        [delivery] = store.list_deliveries_for_reminder(reminder.id)
        assert delivery.status == DeliveryStatus.DELIVERED
        assert delivery.attempt_count == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted_leaves_reminder_due(
        self, scheduler, store, notifier, make_reminder
    ):
        reminder = make_reminder()
        notifier.results = [NotificationResult.failed("down", retryable=True)] * 3

        cycle = await scheduler.run_cycle()

        assert cycle.failed == 1
        assert len(notifier.sent) == 3  # 1 attempt + 2 retries
        reminder = store.get_reminder(reminder.id)
        assert reminder.next_due_at == NOW
        assert reminder.occurrence_count == 0
        [delivery] = store.list_deliveries_for_reminder(reminder.id)
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.permanent_failure is False

    @pytest.mark.asyncio
    async def test_failed_delivery_is_retried_next_cycle(
        self, scheduler, store, notifier, clock, make_reminder
    ):
        reminder = make_reminder()
        notifier.results = [NotificationResult.failed("down", retryable=True)] * 3
        await scheduler.run_cycle()

        clock.advance(minutes=1)
        cycle = await scheduler.run_cycle()

        assert cycle.delivered == 1
        deliveries = store.list_deliveries_for_reminder(reminder.id)
        assert len(deliveries) == 1
        assert deliveries[0].status == DeliveryStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, scheduler, store, notifier, make_reminder):
        reminder = make_reminder()
        notifier.results = [NotificationResult.failed("HTTP 404", retryable=False)]

        cycle = await scheduler.run_cycle()

        assert cycle.permanent_failures == 1
        assert cycle.retries == 0
        assert len(notifier.sent) == 1
        reminder = store.get_reminder(reminder.id)
        assert reminder.consecutive_failures == 1
        assert reminder.status == ReminderStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_repeated_permanent_failures_fail_reminder(
        self, scheduler, store, notifier, clock, make_reminder
    ):
        reminder = make_reminder()
        notifier.results = [NotificationResult.failed("blocked", retryable=False)] * 3

        for _ in range(3):
            await scheduler.run_cycle()
            clock.advance(minutes=1)

        reminder = store.get_reminder(reminder.id)
        assert reminder.status == ReminderStatus.FAILED
        assert reminder.next_due_at is None
        assert reminder.consecutive_failures == 3

    @pytest.mark.asyncio
    async def test_notifier_exception_is_retryable(self, scheduler, store, make_reminder):
        class ExplodingNotifier:
            calls = 0

            async def send(self, reminder):
                self.calls += 1
                if self.calls == 1:
                    raise ConnectionError("reset")
                return NotificationResult.ok()

        make_reminder()
        scheduler.notifier = ExplodingNotifier()

        cycle = await scheduler.run_cycle()

        assert cycle.retries == 1
        assert cycle.delivered == 1

    @pytest.mark.asyncio
    async def test_storage_error_is_isolated(
        self, scheduler, store, notifier, make_reminder, monkeypatch
    ):
        broken = make_reminder(title="Broken")
        healthy = make_reminder(title="Healthy")
        original = store.create_delivery

        def create_delivery(delivery):
            if delivery.reminder_id == broken.id:
                raise StoreError("disk full")
            return original(delivery)

        monkeypatch.setattr(store, "create_delivery", create_delivery)

        cycle = await scheduler.run_cycle()

        assert cycle.storage_errors == 1
        assert cycle.delivered == 1
        assert notifier.sent == [healthy.id]


class TestDeduplication:
    """Tests for dedup keys and recovery of interrupted cycles."""

    @pytest.mark.asyncio
    async def test_in_flight_claim_is_skipped(self, scheduler, store, notifier, make_reminder):
        reminder = make_reminder()
        store.create_delivery(
            Delivery(
                reminder_id=reminder.id,
                recipient_id=reminder.recipient_id,
                dedup_key=scheduled_dedup_key(reminder.id, NOW),
                scheduled_for=NOW,
                status=DeliveryStatus.SENDING,
                last_attempt_at=NOW,
            )
        )

        cycle = await scheduler.run_cycle()

        assert cycle.skipped == 1
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_stale_claim_is_reclaimed(self, scheduler, store, notifier, make_reminder):
        reminder = make_reminder()
        store.create_delivery(
            Delivery(
                reminder_id=reminder.id,
                recipient_id=reminder.recipient_id,
                dedup_key=scheduled_dedup_key(reminder.id, NOW),
                scheduled_for=NOW,
                status=DeliveryStatus.SENDING,
                last_attempt_at=NOW - timedelta(hours=1),
            )
        )

        cycle = await scheduler.run_cycle()

        assert cycle.delivered == 1
        assert notifier.sent == [reminder.id]

    @pytest.mark.asyncio
    async def test_lost_advance_is_recovered_without_resend(
        self, scheduler, store, notifier, make_reminder
    ):
        reminder = make_reminder()
        store.create_delivery(
            Delivery(
                reminder_id=reminder.id,
                recipient_id=reminder.recipient_id,
                dedup_key=scheduled_dedup_key(reminder.id, NOW),
                scheduled_for=NOW,
                status=DeliveryStatus.DELIVERED,
                delivered_at=NOW,
                last_attempt_at=NOW,
            )
        )

        cycle = await scheduler.run_cycle()

        assert cycle.recovered == 1
        assert notifier.sent == []
        reminder = store.get_reminder(reminder.id)
        assert reminder.occurrence_count == 1
        assert reminder.next_due_at == datetime(2024, 1, 15, 9, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_concurrent_schedulers_deliver_once(
        self, store, settings, clock, make_reminder, notifier
    ):
        """Two scheduler instances racing on the same reminders never double-deliver."""
        for _ in range(3):
            make_reminder()
        first = ReminderScheduler(store, notifier, settings=settings, clock=clock)
        second = ReminderScheduler(store, notifier, settings=settings, clock=clock)
        first.start()
        second.start()

        await asyncio.gather(first.run_cycle(), second.run_cycle())

        assert len(notifier.sent) == 3
        assert len(set(notifier.sent)) == 3


class TestStats:
    """Tests for cumulative statistics."""

    @pytest.mark.asyncio
    async def test_stats_accumulate(self, scheduler, notifier, clock, make_reminder):
        make_reminder()
        notifier.results = [NotificationResult.failed("nope", retryable=False)]
        make_reminder()

        await scheduler.run_cycle()

        stats = scheduler.stats
        assert stats.running is True
        assert stats.cycles == 1
        assert stats.total_delivered == 1
        assert stats.total_failed == 1
        assert stats.last_cycle_at == clock.now
        assert stats.due_count == 2
