"""FastAPI dependencies for authentication, database and services."""

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from src.database import get_db
from src.services.acknowledgment import AcknowledgmentTracker
from src.services.auth import decode_access_token
from src.services.errors import ErrorCode, ReminderError
from src.services.escalation import EscalationEngine
from src.services.events import ReminderEventPublisher
from src.services.health import SchedulerStatsRepository
from src.services.notifier import get_notifier
from src.services.reminder_service import ReminderService
from src.services.store import ReminderStore
from src.tasks.reminders import request_manual_escalation

security = HTTPBearer()

ERROR_STATUS = {
    ErrorCode.VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    ErrorCode.ALREADY_ACKNOWLEDGED: status.HTTP_409_CONFLICT,
    ErrorCode.TRANSIENT_DELIVERY_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.PERMANENT_DELIVERY_FAILURE: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.STORAGE_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def error_response(code: ErrorCode, message: str) -> HTTPException:
    """Map an error code to an HTTP error."""
    return HTTPException(status_code=ERROR_STATUS[code], detail={"code": code, "message": message})


def http_error(error: ReminderError) -> HTTPException:
    """Map a service error to an HTTP error."""
    return error_response(error.code, error.message)


def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> str:
    """Get the acting user's ID from the JWT token."""
    token = credentials.credentials
    payload = decode_access_token(token)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    actor_id = payload.get("sub")
    if not actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return str(actor_id)


def get_store(db: Annotated[Session, Depends(get_db)]) -> ReminderStore:
    """Get reminder store bound to the request's session."""
    return ReminderStore(db)


def get_event_publisher() -> ReminderEventPublisher:
    """Get event publisher instance."""
    return ReminderEventPublisher()


def get_stats_repository() -> SchedulerStatsRepository:
    """Get scheduler statistics repository."""
    return SchedulerStatsRepository()


def get_reminder_service(
    store: Annotated[ReminderStore, Depends(get_store)],
    events: Annotated[ReminderEventPublisher, Depends(get_event_publisher)],
) -> ReminderService:
    """Get reminder service with dependencies."""
    return ReminderService(store, events=events)


def get_acknowledgment_tracker(
    store: Annotated[ReminderStore, Depends(get_store)],
    events: Annotated[ReminderEventPublisher, Depends(get_event_publisher)],
) -> AcknowledgmentTracker:
    """Get acknowledgment tracker; escalate actions are queued on celery."""
    return AcknowledgmentTracker(
        store, events=events, escalation_requester=request_manual_escalation
    )


def get_escalation_engine(
    store: Annotated[ReminderStore, Depends(get_store)],
    events: Annotated[ReminderEventPublisher, Depends(get_event_publisher)],
) -> EscalationEngine:
    """Get escalation engine with the configured notifier."""
    return EscalationEngine(store, get_notifier(), events=events)
