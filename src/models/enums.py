"""Enums for model fields."""

from enum import Enum


class ReminderStatus(str, Enum):
    """Lifecycle status of a reminder."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        """Check if no further deliveries can happen in this status."""
        return self in (
            ReminderStatus.COMPLETED,
            ReminderStatus.EXPIRED,
            ReminderStatus.FAILED,
            ReminderStatus.CANCELLED,
        )


class ScheduleType(str, Enum):
    """How a reminder repeats."""

    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    INTERVAL = "interval"
    CUSTOM = "custom"


class DeliveryStatus(str, Enum):
    """Status of a single delivery attempt sequence."""

    PENDING = "pending"
    SENDING = "sending"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRYING = "retrying"


class AcknowledgmentMethod(str, Enum):
    """Channel through which an acknowledgment arrived."""

    REACTION = "reaction"
    REPLY = "reply"
    BUTTON = "button"
    WEB = "web"


class AcknowledgmentAction(str, Enum):
    """What the recipient asked for when acknowledging."""

    COMPLETE = "complete"
    SNOOZE = "snooze"
    DISMISS = "dismiss"
    ESCALATE = "escalate"
    REACT = "react"


class EscalationTargetType(str, Enum):
    """Kinds of escalation targets."""

    USER = "user"
    MANAGER = "manager"
    TEAM_LEAD = "team_lead"
    EXECUTIVE = "executive"
