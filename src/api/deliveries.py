"""Delivery acknowledgment and escalation endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends

from src.api.dependencies import (
    error_response,
    get_acknowledgment_tracker,
    get_current_actor,
    get_escalation_engine,
    http_error,
)
from src.schemas.delivery import (
    AcknowledgmentRequest,
    AcknowledgmentResult,
    EscalationResult,
    ManualEscalationRequest,
)
from src.services.acknowledgment import AcknowledgmentTracker
from src.services.errors import ReminderError
from src.services.escalation import EscalationEngine

router = APIRouter(prefix="/api/v1/deliveries", tags=["deliveries"])


@router.post("/{delivery_id}/acknowledge", response_model=AcknowledgmentResult)
def acknowledge_delivery(
    delivery_id: int,
    ack: AcknowledgmentRequest,
    actor_id: Annotated[str, Depends(get_current_actor)],
    tracker: Annotated[AcknowledgmentTracker, Depends(get_acknowledgment_tracker)],
):
    """Acknowledge a delivery (complete, snooze, dismiss, escalate or react).

    A partial result (acknowledged, but the reminder update failed) is returned
    with status 200 and ``partial`` set.
    """
    result = tracker.process_acknowledgment(
        delivery_id, actor_id, ack.action, ack.method, ack.metadata
    )
    if result.error is not None and not result.partial:
        raise error_response(result.error, result.message)
    return result


@router.post("/{delivery_id}/escalate", response_model=EscalationResult)
async def escalate_delivery(
    delivery_id: int,
    request: ManualEscalationRequest,
    actor_id: Annotated[str, Depends(get_current_actor)],
    engine: Annotated[EscalationEngine, Depends(get_escalation_engine)],
):
    """Run the next (or a given) escalation level now."""
    try:
        return await engine.escalate_manually(delivery_id, actor_id, level=request.level)
    except ReminderError as e:
        raise http_error(e) from e
