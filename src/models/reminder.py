"""Reminder model."""

from sqlalchemy import JSON, Boolean, Column, Enum, Integer, String, Text
from sqlalchemy.orm import relationship

from src.database import Base
from src.models.enums import ReminderStatus
from src.models.mixins import TimestampMixin, UTCDateTime


class Reminder(Base, TimestampMixin):
    """A scheduled notification for one recipient, possibly recurring."""

    __tablename__ = "reminders"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(64), nullable=False, index=True)
    recipient_id = Column(String(64), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    content = Column(Text, nullable=False)

    # ScheduleSpec as JSON: {"type": "weekly", "time_of_day": "09:00", "weekdays": [0], ...}
    schedule = Column(JSON, nullable=False)
    timezone = Column(String(64), nullable=False)

    status = Column(
        Enum(
            ReminderStatus,
            name="reminderstatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=ReminderStatus.ACTIVE,
        nullable=False,
        index=True,
    )

    # EscalationConfig as JSON: {"enabled": true, "levels": [...], "max_level": 1, ...}
    escalation = Column(JSON, nullable=True)
    escalation_level = Column(Integer, default=0, nullable=False)
    last_escalated_at = Column(UTCDateTime, nullable=True)

    next_due_at = Column(UTCDateTime, nullable=True, index=True)
    last_delivered_at = Column(UTCDateTime, nullable=True)
    occurrence_count = Column(Integer, default=0, nullable=False)
    is_snoozed = Column(Boolean, default=False, nullable=False)
    # Regular occurrence displaced by a snooze, restored after the snoozed fire
    snoozed_occurrence_at = Column(UTCDateTime, nullable=True)
    consecutive_failures = Column(Integer, default=0, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    deliveries = relationship(
        "Delivery",
        back_populates="reminder",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
