"""Reminder schemas."""

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.models.enums import ReminderStatus, ScheduleType
from src.schemas.escalation import EscalationConfig
from src.schemas.schedule import ScheduleSpec


def _validate_timezone(value: str | None) -> str | None:
    if value is None:
        return value
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {value}") from e
    return value


class ReminderCreate(BaseModel):
    """Create a new reminder."""

    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1, max_length=2000)
    recipient_id: str = Field(..., min_length=1, max_length=64)
    schedule: ScheduleSpec
    timezone: str | None = None  # falls back to the configured default
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    status: ReminderStatus = ReminderStatus.ACTIVE  # active or draft

    check_timezone = field_validator("timezone")(_validate_timezone)

    @field_validator("title", "content")
    @classmethod
    def strip_text(cls, value: str) -> str:
        """Reject whitespace-only text."""
        value = value.strip()
        if not value:
            raise ValueError("cannot be empty")
        return value

    @field_validator("status")
    @classmethod
    def validate_initial_status(cls, value: ReminderStatus) -> ReminderStatus:
        """New reminders start either active or as a draft."""
        if value not in (ReminderStatus.ACTIVE, ReminderStatus.DRAFT):
            raise ValueError("New reminders must be active or draft")
        return value

    @model_validator(mode="after")
    def validate_once_has_start(self) -> "ReminderCreate":
        """A one-time schedule without a start date could never fire."""
        if self.schedule.type == ScheduleType.ONCE and self.schedule.start_date is None:
            raise ValueError("One-time reminders need a start_date")
        return self


class ReminderUpdate(BaseModel):
    """Update a reminder. Status changes go through pause/resume/acknowledge."""

    title: str | None = Field(None, min_length=1, max_length=200)
    content: str | None = Field(None, min_length=1, max_length=2000)
    recipient_id: str | None = Field(None, min_length=1, max_length=64)
    schedule: ScheduleSpec | None = None
    timezone: str | None = None
    escalation: EscalationConfig | None = None

    check_timezone = field_validator("timezone")(_validate_timezone)

    @model_validator(mode="after")
    def validate_once_has_start(self) -> "ReminderUpdate":
        """A one-time schedule without a start date could never fire."""
        if (
            self.schedule is not None
            and self.schedule.type == ScheduleType.ONCE
            and self.schedule.start_date is None
        ):
            raise ValueError("One-time reminders need a start_date")
        return self


class ReminderResponse(BaseModel):
    """Reminder response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    recipient_id: str
    title: str
    content: str
    schedule: dict
    timezone: str
    status: ReminderStatus
    escalation: dict | None
    escalation_level: int
    last_escalated_at: datetime | None
    next_due_at: datetime | None
    last_delivered_at: datetime | None
    occurrence_count: int
    is_snoozed: bool
    snoozed_occurrence_at: datetime | None = None
    completed_at: datetime | None
    schedule_text: str | None = None
    created_at: datetime
    updated_at: datetime
