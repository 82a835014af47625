"""Delivery and acknowledgment schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from src.models.enums import AcknowledgmentAction, AcknowledgmentMethod, DeliveryStatus
from src.services.errors import ErrorCode


class DeliveryResponse(BaseModel):
    """Delivery response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    reminder_id: int
    recipient_id: str
    scheduled_for: datetime | None
    delivered_at: datetime | None
    status: DeliveryStatus
    attempt_count: int
    error_message: str | None
    acknowledged: bool
    acknowledged_at: datetime | None
    acknowledgment_method: AcknowledgmentMethod | None
    acknowledgment_action: AcknowledgmentAction | None
    is_escalation: bool
    escalation_level: int | None
    original_delivery_id: int | None
    current_escalation_level: int
    escalation_halted: bool


class AcknowledgmentMetadata(BaseModel):
    """Extra context sent with an acknowledgment."""

    snooze_minutes: int | None = Field(None, ge=1, le=10080)  # up to a week
    message_ref: str | None = Field(None, max_length=255)
    note: str | None = Field(None, max_length=500)


class AcknowledgmentRequest(BaseModel):
    """Body of an acknowledgment request."""

    action: AcknowledgmentAction
    method: AcknowledgmentMethod = AcknowledgmentMethod.WEB
    metadata: AcknowledgmentMetadata = Field(default_factory=AcknowledgmentMetadata)


class AcknowledgmentUpdates(BaseModel):
    """Which records an acknowledgment touched."""

    delivery: bool = False
    reminder: bool = False
    escalation_stopped: bool = False
    escalation_requested: bool = False


class AcknowledgmentResult(BaseModel):
    """Outcome of processing an acknowledgment."""

    success: bool
    message: str
    updated: AcknowledgmentUpdates = Field(default_factory=AcknowledgmentUpdates)
    error: ErrorCode | None = None
    partial: bool = False
    next_due_at: datetime | None = None


class ManualEscalationRequest(BaseModel):
    """Body of a manual escalation request."""

    level: int | None = Field(None, ge=1)


class EscalationResult(BaseModel):
    """Outcome of one escalation level run."""

    reminder_id: int
    original_delivery_id: int
    escalation_level: int
    targets_notified: list[str]
    success: bool
    errors: list[str] = Field(default_factory=list)


class EscalationCheckSummary(BaseModel):
    """Outcome of one escalation engine pass."""

    checked: int = 0
    escalated: int = 0
    awaiting_confirmation: int = 0
    halted: int = 0
    errors: int = 0
    results: list[EscalationResult] = Field(default_factory=list)
