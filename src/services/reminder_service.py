"""Reminder lifecycle: create, edit, pause, resume, delete."""

import logging
from collections.abc import Callable
from datetime import datetime

from src.clock import utcnow
from src.config import Settings, get_settings
from src.models.delivery import Delivery
from src.models.enums import ReminderStatus
from src.models.reminder import Reminder
from src.schemas.escalation import EscalationConfig
from src.schemas.reminder import ReminderCreate, ReminderResponse, ReminderUpdate
from src.schemas.schedule import ScheduleSpec
from src.services.errors import NotFoundError, UnauthorizedError, ValidationError
from src.services.events import ReminderEventPublisher, ReminderEventType
from src.services.recurrence import describe_schedule, next_due
from src.services.store import ReminderStore

logger = logging.getLogger(__name__)


class ReminderService:
    """Service for reminder CRUD and state transitions."""

    def __init__(
        self,
        store: ReminderStore,
        events: ReminderEventPublisher | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.events = events
        self.settings = settings or get_settings()
        self.clock = clock

    def create(self, owner_id: str, data: ReminderCreate) -> Reminder:
        """Create a reminder and schedule its first occurrence.

        Draft reminders are stored without a due instant. An active reminder
        whose schedule has no future occurrence is stored as expired.
        """
        timezone = data.timezone or self.settings.default_timezone
        escalation = self._escalation_with_defaults(data.escalation)

        reminder = Reminder(
            owner_id=owner_id,
            recipient_id=data.recipient_id,
            title=data.title,
            content=data.content,
            schedule=data.schedule.to_storage(),
            timezone=timezone,
            escalation=escalation.model_dump(mode="json"),
            status=data.status,
            occurrence_count=0,
        )
        if data.status == ReminderStatus.ACTIVE:
            reminder.next_due_at = next_due(data.schedule, timezone, self.clock())
            if reminder.next_due_at is None:
                reminder.status = ReminderStatus.EXPIRED
                logger.info(f"New reminder '{data.title}' has no future occurrence, expired")

        reminder = self.store.create_reminder(reminder)
        logger.info(
            f"Created reminder {reminder.id} for {reminder.recipient_id}, "
            f"next due {reminder.next_due_at}"
        )
        self._emit(reminder.id, ReminderEventType.CREATED, owner_id, {"status": reminder.status})
        return reminder

    def get(self, reminder_id: int, actor_id: str) -> Reminder:
        """Get a reminder the actor owns or receives."""
        reminder = self._load(reminder_id)
        if actor_id not in (reminder.owner_id, reminder.recipient_id):
            raise UnauthorizedError("Not allowed to view this reminder")
        return reminder

    def update(self, reminder_id: int, actor_id: str, data: ReminderUpdate) -> Reminder:
        """Edit a reminder. Schedule or timezone changes reschedule it."""
        reminder = self._load_owned(reminder_id, actor_id)
        fields = data.model_dump(exclude_unset=True)
        changes: dict = {}

        for name in ("title", "content", "recipient_id"):
            if fields.get(name) is not None:
                changes[name] = fields[name]
        if data.escalation is not None:
            changes["escalation"] = self._escalation_with_defaults(data.escalation).model_dump(
                mode="json"
            )

        reschedule = False
        if data.schedule is not None:
            changes["schedule"] = data.schedule.to_storage()
            reschedule = True
        if data.timezone is not None and data.timezone != reminder.timezone:
            changes["timezone"] = data.timezone
            reschedule = True

        if reschedule and reminder.status == ReminderStatus.ACTIVE:
            spec = data.schedule or ScheduleSpec.model_validate(reminder.schedule)
            timezone = changes.get("timezone", reminder.timezone)
            upcoming = next_due(
                spec, timezone, self.clock(), occurrence_count=reminder.occurrence_count
            )
            changes["next_due_at"] = upcoming
            changes["is_snoozed"] = False
            changes["snoozed_occurrence_at"] = None
            if upcoming is None:
                changes["status"] = ReminderStatus.EXPIRED

        if not changes:
            return reminder

        self.store.update_reminder(reminder, **changes)
        logger.info(f"Updated reminder {reminder.id}: {sorted(changes)}")
        self._emit(reminder.id, ReminderEventType.EDITED, actor_id, {"fields": sorted(changes)})
        return reminder

    def pause(self, reminder_id: int, actor_id: str) -> Reminder:
        """Stop scheduling a reminder until it is resumed."""
        reminder = self._load_owned(reminder_id, actor_id)
        if reminder.status != ReminderStatus.ACTIVE:
            raise ValidationError(
                f"Only active reminders can be paused (status is {reminder.status.value})"
            )

        self.store.update_reminder(
            reminder,
            status=ReminderStatus.PAUSED,
            next_due_at=None,
            is_snoozed=False,
            snoozed_occurrence_at=None,
        )
        self._emit(reminder.id, ReminderEventType.PAUSED, actor_id)
        return reminder

    def resume(self, reminder_id: int, actor_id: str) -> Reminder:
        """Reactivate a paused or draft reminder from now on."""
        reminder = self._load_owned(reminder_id, actor_id)
        if reminder.status not in (ReminderStatus.PAUSED, ReminderStatus.DRAFT):
            raise ValidationError(
                f"Only paused or draft reminders can be resumed "
                f"(status is {reminder.status.value})"
            )

        upcoming = next_due(
            ScheduleSpec.model_validate(reminder.schedule),
            reminder.timezone,
            self.clock(),
            occurrence_count=reminder.occurrence_count,
        )
        status = ReminderStatus.ACTIVE if upcoming is not None else ReminderStatus.EXPIRED
        self.store.update_reminder(reminder, status=status, next_due_at=upcoming)
        self._emit(reminder.id, ReminderEventType.RESUMED, actor_id, {"status": status})
        return reminder

    def delete(self, reminder_id: int, actor_id: str) -> None:
        """Delete a reminder together with its deliveries."""
        reminder = self._load_owned(reminder_id, actor_id)
        self.store.delete_reminder(reminder)
        logger.info(f"Deleted reminder {reminder_id}")
        self._emit(reminder_id, ReminderEventType.CANCELLED, actor_id, {"deleted": True})

    def list_for_user(self, user_id: str, status: ReminderStatus | None = None) -> list[Reminder]:
        """Reminders the user owns or receives."""
        return self.store.list_reminders_for_user(user_id, status)

    def list_deliveries(self, reminder_id: int, actor_id: str) -> list[Delivery]:
        """Delivery history of a reminder, newest first."""
        reminder = self.get(reminder_id, actor_id)
        return self.store.list_deliveries_for_reminder(reminder.id)

    @staticmethod
    def to_response(reminder: Reminder) -> ReminderResponse:
        """Build the API response, including the readable schedule text."""
        response = ReminderResponse.model_validate(reminder)
        response.schedule_text = describe_schedule(ScheduleSpec.model_validate(reminder.schedule))
        return response

    def _escalation_with_defaults(self, config: EscalationConfig) -> EscalationConfig:
        config = config.with_defaults(
            self.settings.escalation_levels, self.settings.escalation_max_level
        )
        if config.levels and config.effective_max_level > config.levels[-1].level:
            raise ValidationError(
                f"max_level {config.effective_max_level} exceeds the highest configured level"
            )
        return config

    def _load(self, reminder_id: int) -> Reminder:
        reminder = self.store.get_reminder(reminder_id)
        if reminder is None:
            raise NotFoundError(f"Reminder {reminder_id} not found")
        return reminder

    def _load_owned(self, reminder_id: int, actor_id: str) -> Reminder:
        reminder = self._load(reminder_id)
        if reminder.owner_id != actor_id:
            raise UnauthorizedError("Only the owner can change this reminder")
        return reminder

    def _emit(
        self,
        reminder_id: int,
        event_type: ReminderEventType,
        actor_id: str,
        data: dict | None = None,
    ) -> None:
        if self.events is not None:
            self.events.publish(reminder_id, event_type, actor_id=actor_id, data=data)
