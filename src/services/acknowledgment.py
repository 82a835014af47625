"""Acknowledgment tracking.

An acknowledgment is recorded on the Delivery first with a one-way
compare-and-set, and only then applied to the Reminder. The first write is
never rolled back: if the side effect fails, the caller gets a partial result
and the acknowledgment still stands.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from src.clock import utcnow
from src.config import Settings, get_settings
from src.models.delivery import Delivery
from src.models.enums import AcknowledgmentAction, AcknowledgmentMethod, ReminderStatus
from src.models.reminder import Reminder
from src.schemas.delivery import AcknowledgmentMetadata, AcknowledgmentResult, AcknowledgmentUpdates
from src.schemas.escalation import EscalationConfig
from src.services.errors import EscalationRequestError, ErrorCode, ReminderError, StoreError
from src.services.events import ReminderEventPublisher, ReminderEventType
from src.services.recurrence import snooze_until
from src.services.store import ReminderStore

logger = logging.getLogger(__name__)

# Called with (original delivery id, actor id) to start a manual escalation
EscalationRequester = Callable[[int, str], None]

# Snoozing would bring these back to life
NOT_SNOOZABLE = (
    ReminderStatus.DRAFT,
    ReminderStatus.PAUSED,
    ReminderStatus.FAILED,
    ReminderStatus.CANCELLED,
)


class AcknowledgmentTracker:
    """Records acknowledgments and applies their effect on the reminder."""

    def __init__(
        self,
        store: ReminderStore,
        events: ReminderEventPublisher | None = None,
        escalation_requester: EscalationRequester | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.events = events
        self.escalation_requester = escalation_requester
        self.settings = settings or get_settings()
        self.clock = clock

    def process_acknowledgment(
        self,
        delivery_id: int,
        actor_id: str,
        action: AcknowledgmentAction | str,
        method: AcknowledgmentMethod | str = AcknowledgmentMethod.WEB,
        metadata: AcknowledgmentMetadata | dict | None = None,
    ) -> AcknowledgmentResult:
        """Acknowledge a delivery on behalf of ``actor_id``.

        Args:
            delivery_id: Delivery being acknowledged
            actor_id: User acknowledging; must be the recipient or the reminder owner
            action: complete, snooze, dismiss, escalate or react
            method: How the acknowledgment arrived (reaction, reply, button, web)
            metadata: Extra context, e.g. ``snooze_minutes``

        Returns:
            AcknowledgmentResult; errors are reported in the result, not raised
        """
        try:
            action = AcknowledgmentAction(action)
            method = AcknowledgmentMethod(method)
            if not isinstance(metadata, AcknowledgmentMetadata):
                metadata = AcknowledgmentMetadata.model_validate(metadata or {})
        except ValueError as e:
            # pydantic's ValidationError is a ValueError too
            return self._error(ErrorCode.VALIDATION, f"Invalid acknowledgment: {e}")
        if not actor_id:
            return self._error(ErrorCode.VALIDATION, "Actor is required")

        try:
            delivery = self.store.get_delivery(delivery_id)
            if delivery is None:
                return self._error(ErrorCode.NOT_FOUND, f"Delivery {delivery_id} not found")
            reminder = self.store.get_reminder(delivery.reminder_id)
            if reminder is None:
                message = f"Reminder {delivery.reminder_id} not found"
                return self._error(ErrorCode.NOT_FOUND, message)
        except StoreError as e:
            return self._error(ErrorCode.STORAGE_FAILURE, e.message)

        if actor_id not in (delivery.recipient_id, reminder.owner_id):
            return self._error(
                ErrorCode.UNAUTHORIZED, "Only the recipient or the owner can acknowledge"
            )

        if delivery.acknowledged:
            return self._error(ErrorCode.ALREADY_ACKNOWLEDGED, "Delivery already acknowledged")

        if action == AcknowledgmentAction.SNOOZE and reminder.status in NOT_SNOOZABLE:
            return self._error(
                ErrorCode.VALIDATION, f"Cannot snooze a {reminder.status.value} reminder"
            )

        now = self.clock()
        try:
            won = self.store.acknowledge_delivery(delivery, actor_id, method, action, now)
        except StoreError as e:
            return self._error(ErrorCode.STORAGE_FAILURE, e.message)
        if not won:
            return self._error(ErrorCode.ALREADY_ACKNOWLEDGED, "Delivery already acknowledged")

        logger.info(
            f"Delivery {delivery.id} acknowledged by {actor_id} ({action.value}, {method.value})"
        )
        updates = AcknowledgmentUpdates(delivery=True)
        self._emit(
            reminder.id,
            ReminderEventType.ACKNOWLEDGED,
            actor_id,
            {"delivery_id": delivery.id, "action": action, "method": method},
        )

        failure: ReminderError | None = None
        try:
            self._apply_action(reminder, delivery, action, metadata, actor_id, now, updates)
        except ReminderError as e:
            failure = e

        # The chain halts even when the action itself failed
        try:
            if self._stops_escalation(reminder):
                updates.escalation_stopped = self._halt_chain(delivery)
        except StoreError as e:
            failure = failure or e

        if failure is not None:
            logger.error(
                f"Acknowledgment of delivery {delivery.id} recorded but {action.value} failed: "
                f"{failure.message}"
            )
            return AcknowledgmentResult(
                success=False,
                message=(
                    f"Acknowledged, but {action.value} could not be applied: {failure.message}"
                ),
                updated=updates,
                error=failure.code,
                partial=True,
            )

        return AcknowledgmentResult(
            success=True,
            message=f"Reminder {action.value} recorded",
            updated=updates,
            next_due_at=reminder.next_due_at,
        )

    def _apply_action(
        self,
        reminder: Reminder,
        delivery: Delivery,
        action: AcknowledgmentAction,
        metadata: AcknowledgmentMetadata,
        actor_id: str,
        now: datetime,
        updates: AcknowledgmentUpdates,
    ) -> None:
        if action == AcknowledgmentAction.COMPLETE:
            self.store.update_reminder(
                reminder, status=ReminderStatus.COMPLETED, next_due_at=None, completed_at=now
            )
            updates.reminder = True
            self._emit(reminder.id, ReminderEventType.COMPLETED, actor_id)

        elif action == AcknowledgmentAction.DISMISS:
            self.store.update_reminder(reminder, status=ReminderStatus.CANCELLED, next_due_at=None)
            updates.reminder = True
            self._emit(reminder.id, ReminderEventType.CANCELLED, actor_id)

        elif action == AcknowledgmentAction.SNOOZE:
            minutes = metadata.snooze_minutes or self.settings.default_snooze_minutes
            until = snooze_until(now, minutes)
            # Keep the regular occurrence so it comes back after the snoozed fire
            displaced = reminder.next_due_at
            if reminder.is_snoozed:
                displaced = reminder.snoozed_occurrence_at
            self.store.update_reminder(
                reminder,
                status=ReminderStatus.ACTIVE,
                next_due_at=until,
                is_snoozed=True,
                snoozed_occurrence_at=displaced,
            )
            updates.reminder = True
            self._emit(
                reminder.id,
                ReminderEventType.SNOOZED,
                actor_id,
                {"minutes": minutes, "until": until.isoformat()},
            )

        elif action == AcknowledgmentAction.ESCALATE:
            original_id = delivery.original_delivery_id if delivery.is_escalation else delivery.id
            if self.escalation_requester is None:
                logger.warning(f"No escalation requester, ignoring escalate on {delivery.id}")
                return
            try:
                self.escalation_requester(original_id or delivery.id, actor_id)
            except Exception as e:
                raise EscalationRequestError(f"Escalation request failed: {e}") from e
            updates.escalation_requested = True

        # react: the acknowledgment itself is the whole effect

    def _stops_escalation(self, reminder: Reminder) -> bool:
        config = EscalationConfig.model_validate(reminder.escalation or {})
        return config.stop_on_acknowledgment

    def _halt_chain(self, delivery: Delivery) -> bool:
        """Halt the chain of the original delivery this acknowledgment belongs to."""
        original = delivery
        if delivery.is_escalation and delivery.original_delivery_id is not None:
            original = self.store.get_delivery(delivery.original_delivery_id)
            if original is None:
                return False
        return self.store.halt_escalation(original)

    def _emit(
        self,
        reminder_id: int,
        event_type: ReminderEventType,
        actor_id: str,
        data: dict | None = None,
    ) -> None:
        if self.events is not None:
            self.events.publish(reminder_id, event_type, actor_id=actor_id, data=data)

    @staticmethod
    def _error(code: ErrorCode, message: str) -> AcknowledgmentResult:
        logger.info(f"Acknowledgment rejected ({code}): {message}")
        return AcknowledgmentResult(success=False, message=message, error=code)
