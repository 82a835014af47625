"""Delivery model for tracking sent reminders and their acknowledgments."""

from sqlalchemy import Boolean, Column, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from src.database import Base
from src.models.enums import AcknowledgmentAction, AcknowledgmentMethod, DeliveryStatus
from src.models.mixins import TimestampMixin, UTCDateTime


class Delivery(Base, TimestampMixin):
    """One delivery of a reminder (scheduled or escalation) to one recipient."""

    __tablename__ = "deliveries"

    id = Column(Integer, primary_key=True, index=True)
    reminder_id = Column(
        Integer, ForeignKey("reminders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    recipient_id = Column(String(64), nullable=False, index=True)
    # "reminder:<id>:<due iso>" or "escalation:<original id>:<level>:<recipient>"
    dedup_key = Column(String(255), nullable=False, unique=True)
    scheduled_for = Column(UTCDateTime, nullable=True)
    delivered_at = Column(UTCDateTime, nullable=True, index=True)
    status = Column(
        Enum(
            DeliveryStatus,
            name="deliverystatus",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=DeliveryStatus.PENDING,
        nullable=False,
        index=True,
    )
    message_ref = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)
    permanent_failure = Column(Boolean, default=False, nullable=False)
    attempt_count = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(UTCDateTime, nullable=True)

    # Acknowledgment (one-way false -> true)
    acknowledged = Column(Boolean, default=False, nullable=False, index=True)
    acknowledged_at = Column(UTCDateTime, nullable=True)
    acknowledged_by = Column(String(64), nullable=True)
    acknowledgment_method = Column(
        Enum(
            AcknowledgmentMethod,
            name="acknowledgmentmethod",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=True,
    )
    acknowledgment_action = Column(
        Enum(
            AcknowledgmentAction,
            name="acknowledgmentaction",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=True,
    )

    # Escalation deliveries point back at the delivery they escalate
    is_escalation = Column(Boolean, default=False, nullable=False)
    escalation_level = Column(Integer, nullable=True)
    original_delivery_id = Column(
        Integer, ForeignKey("deliveries.id", ondelete="CASCADE"), nullable=True, index=True
    )
    # Chain state, only meaningful on original deliveries
    current_escalation_level = Column(Integer, default=0, nullable=False)
    escalation_halted = Column(Boolean, default=False, nullable=False)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    reminder = relationship("Reminder", back_populates="deliveries")
    original_delivery = relationship("Delivery", remote_side=[id])
