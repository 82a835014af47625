"""Escalation engine.

Escalates delivered reminders nobody acknowledged. Levels run in order, each
after its configured delay (measured from the original delivery), and each at
most once: the level is claimed on the original Delivery with a
compare-and-set before any target is notified, and the claim is never undone.
Reaching the configured max level halts the chain.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from src.clock import ensure_utc, utcnow
from src.config import Settings, get_settings
from src.models.delivery import Delivery
from src.models.enums import DeliveryStatus, ReminderStatus
from src.models.reminder import Reminder
from src.schemas.delivery import EscalationCheckSummary, EscalationResult
from src.schemas.escalation import EscalationConfig, EscalationLevel
from src.services.errors import (
    DuplicateDeliveryError,
    NotFoundError,
    StoreError,
    UnauthorizedError,
    ValidationError,
)
from src.services.events import ReminderEventPublisher, ReminderEventType
from src.services.notifier import NotificationResult, Notifier
from src.services.store import ReminderStore, escalation_dedup_key
from src.services.targets import EscalationTargetResolver

logger = logging.getLogger(__name__)


def next_eligible_level(
    config: EscalationConfig,
    current_level: int,
    delivered_at: datetime,
    now: datetime,
) -> EscalationLevel | None:
    """Find the next level that may run.

    This is the lowest configured level above ``current_level`` (and at most
    ``max_level``) whose delay has elapsed since ``delivered_at``. A level that
    requires confirmation is returned as-is and never skipped over.
    """
    elapsed = ensure_utc(now) - ensure_utc(delivered_at)
    for level in config.levels:
        if level.level <= current_level:
            continue
        if level.level > config.effective_max_level:
            return None
        if elapsed >= timedelta(minutes=level.delay_minutes):
            return level
        if level.requires_confirmation:
            return None
    return None


class EscalationEngine:
    """Runs escalation levels for unacknowledged deliveries."""

    def __init__(
        self,
        store: ReminderStore,
        notifier: Notifier,
        resolver: EscalationTargetResolver | None = None,
        settings: Settings | None = None,
        events: ReminderEventPublisher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.resolver = resolver or EscalationTargetResolver()
        self.settings = settings or get_settings()
        self.events = events
        self.clock = clock

    async def check_escalations(self) -> EscalationCheckSummary:
        """Run every level that has become due across all open deliveries."""
        summary = EscalationCheckSummary()
        try:
            candidates = self.store.list_escalation_candidates()
        except StoreError as e:
            logger.error(f"Escalation check aborted, could not query deliveries: {e}")
            summary.errors += 1
            return summary

        for delivery in candidates:
            summary.checked += 1
            delivery_id = delivery.id
            try:
                await self._check_delivery(delivery, summary)
            except StoreError as e:
                summary.errors += 1
                logger.error(f"Storage failure escalating delivery {delivery_id}: {e}")
            except Exception as e:
                summary.errors += 1
                logger.error(f"Error escalating delivery {delivery_id}: {e}", exc_info=True)

        if summary.escalated or summary.errors:
            logger.info(
                f"Escalation check complete: checked={summary.checked} "
                f"escalated={summary.escalated} halted={summary.halted} errors={summary.errors}"
            )
        return summary

    async def _check_delivery(self, delivery: Delivery, summary: EscalationCheckSummary) -> None:
        reminder = self.store.get_reminder(delivery.reminder_id)
        if reminder is None or reminder.status == ReminderStatus.CANCELLED:
            self._halt(delivery, summary, "reminder is gone or cancelled")
            return
        if reminder.status == ReminderStatus.PAUSED:
            return

        config = EscalationConfig.model_validate(reminder.escalation or {})
        if not config.enabled or not config.levels:
            self._halt(delivery, summary, "escalation is disabled")
            return
        if config.stop_on_acknowledgment and delivery.acknowledged:
            return

        now = self.clock()
        current = delivery.current_escalation_level
        if current >= config.effective_max_level:
            self._halt(delivery, summary, "max level reached")
            return

        level = next_eligible_level(config, current, delivery.delivered_at, now)
        if level is None:
            return
        if level.requires_confirmation:
            summary.awaiting_confirmation += 1
            logger.info(
                f"Escalation level {level.level} for delivery {delivery.id} "
                f"requires confirmation, not running it automatically"
            )
            return

        result = await self._execute_level(delivery, reminder, config, level)
        if result is not None:
            summary.escalated += 1
            summary.results.append(result)

    async def escalate_manually(
        self,
        delivery_id: int,
        actor_id: str,
        level: int | None = None,
        check_access: bool = True,
    ) -> EscalationResult:
        """Run the next (or a given) level now, ignoring delays and confirmation.

        Raises:
            NotFoundError: if the delivery or its reminder does not exist
            UnauthorizedError: if the actor is neither the recipient nor the owner
            ValidationError: if the level is not configured or already ran
        """
        delivery = self.store.get_delivery(delivery_id)
        if delivery is None:
            raise NotFoundError(f"Delivery {delivery_id} not found")
        reminder = self.store.get_reminder(delivery.reminder_id)
        if reminder is None:
            raise NotFoundError(f"Reminder {delivery.reminder_id} not found")
        if check_access and actor_id not in (delivery.recipient_id, reminder.owner_id):
            raise UnauthorizedError("Only the recipient or the owner can escalate")

        # Escalations always hang off the original delivery
        if delivery.is_escalation and delivery.original_delivery_id is not None:
            original = self.store.get_delivery(delivery.original_delivery_id)
            if original is None:
                raise NotFoundError(f"Delivery {delivery.original_delivery_id} not found")
            delivery = original

        config = EscalationConfig.model_validate(reminder.escalation or {}).with_defaults(
            self.settings.escalation_levels, self.settings.escalation_max_level
        )
        target = level or delivery.current_escalation_level + 1
        if target > config.effective_max_level:
            raise ValidationError(
                f"Level {target} is above the max escalation level {config.effective_max_level}"
            )
        level_config = config.get_level(target)
        if level_config is None:
            raise ValidationError(f"Escalation level {target} is not configured")

        result = await self._execute_level(
            delivery, reminder, config, level_config, actor_id=actor_id, allow_halted=True
        )
        if result is None:
            raise ValidationError(f"Escalation level {target} already ran for delivery {delivery.id}")
        return result

    async def _execute_level(
        self,
        delivery: Delivery,
        reminder: Reminder,
        config: EscalationConfig,
        level: EscalationLevel,
        actor_id: str | None = None,
        allow_halted: bool = False,
    ) -> EscalationResult | None:
        """Claim a level, notify its targets and record one Delivery per target.

        Returns None if another worker already claimed this level (or a higher one).
        """
        if not self.store.claim_escalation_level(delivery, level.level, allow_halted=allow_halted):
            logger.info(f"Escalation level {level.level} of delivery {delivery.id} already claimed")
            return None

        now = self.clock()
        errors: list[str] = []
        recipients = self.resolver.resolve_all(level.targets, reminder)
        if not recipients:
            errors.append("No escalation targets could be resolved")
            logger.warning(
                f"No targets resolved for level {level.level} of reminder {reminder.id}"
            )

        results: dict[str, NotificationResult] = {}
        if recipients:
            try:
                results = await self.notifier.send_escalation(
                    reminder,
                    recipients,
                    level.level,
                    message=level.message or config.message,
                    original_delivery_id=delivery.id,
                )
            except Exception as e:
                logger.error(f"Escalation notifier failed for reminder {reminder.id}: {e}")
                results = {r: NotificationResult.failed(str(e), retryable=False) for r in recipients}

        notified: list[str] = []
        for recipient_id in recipients:
            result = results.get(recipient_id) or NotificationResult.failed(
                "No result from notifier", retryable=False
            )
            if result.success:
                notified.append(recipient_id)
            else:
                errors.append(f"{recipient_id}: {result.error}")
            self._record_escalation_delivery(
                delivery, reminder, level.level, recipient_id, result, now
            )

        try:
            self.store.update_reminder(reminder, escalation_level=level.level, last_escalated_at=now)
        except StoreError as e:
            logger.error(f"Could not record escalation level on reminder {reminder.id}: {e}")
            errors.append(str(e))

        if level.level >= config.effective_max_level:
            self.store.halt_escalation(delivery)
            logger.info(f"Escalation chain of delivery {delivery.id} reached max level, halted")

        logger.info(
            f"Escalated reminder {reminder.id} to level {level.level}: "
            f"notified {notified or 'nobody'}"
        )
        if self.events is not None:
            self.events.publish(
                reminder.id,
                ReminderEventType.ESCALATED,
                actor_id=actor_id,
                data={
                    "delivery_id": delivery.id,
                    "level": level.level,
                    "targets": notified,
                    "manual": actor_id is not None,
                },
            )

        return EscalationResult(
            reminder_id=reminder.id,
            original_delivery_id=delivery.id,
            escalation_level=level.level,
            targets_notified=notified,
            success=bool(notified) and not errors,
            errors=errors,
        )

    def _record_escalation_delivery(
        self,
        original: Delivery,
        reminder: Reminder,
        level: int,
        recipient_id: str,
        result: NotificationResult,
        now: datetime,
    ) -> None:
        record = Delivery(
            reminder_id=reminder.id,
            recipient_id=recipient_id,
            dedup_key=escalation_dedup_key(original.id, level, recipient_id),
            scheduled_for=now,
            delivered_at=now if result.success else None,
            status=DeliveryStatus.DELIVERED if result.success else DeliveryStatus.FAILED,
            message_ref=result.message_ref,
            error_message=result.error,
            permanent_failure=not result.success and not result.retryable,
            attempt_count=1,
            last_attempt_at=now,
            is_escalation=True,
            escalation_level=level,
            original_delivery_id=original.id,
        )
        try:
            self.store.create_delivery(record)
        except DuplicateDeliveryError:
            logger.warning(f"Escalation delivery {record.dedup_key} already recorded")
        except StoreError as e:
            logger.error(f"Could not record escalation delivery {record.dedup_key}: {e}")

    def _halt(self, delivery: Delivery, summary: EscalationCheckSummary, reason: str) -> None:
        if self.store.halt_escalation(delivery):
            summary.halted += 1
            logger.debug(f"Halted escalation of delivery {delivery.id}: {reason}")
