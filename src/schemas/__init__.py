"""Pydantic schemas for API requests and responses."""

from src.schemas.delivery import (
    AcknowledgmentRequest,
    AcknowledgmentResult,
    DeliveryResponse,
    EscalationResult,
    ManualEscalationRequest,
)
from src.schemas.escalation import EscalationConfig, EscalationLevel, EscalationTarget
from src.schemas.health import HealthReport, SchedulerStats
from src.schemas.reminder import ReminderCreate, ReminderResponse, ReminderUpdate
from src.schemas.schedule import ScheduleSpec

__all__ = [
    "ScheduleSpec",
    "EscalationTarget",
    "EscalationLevel",
    "EscalationConfig",
    "ReminderCreate",
    "ReminderUpdate",
    "ReminderResponse",
    "DeliveryResponse",
    "AcknowledgmentRequest",
    "AcknowledgmentResult",
    "ManualEscalationRequest",
    "EscalationResult",
    "SchedulerStats",
    "HealthReport",
]
