"""Reminder API endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from src.api.dependencies import get_current_actor, get_reminder_service, http_error
from src.models.enums import ReminderStatus
from src.schemas.delivery import DeliveryResponse
from src.schemas.reminder import ReminderCreate, ReminderResponse, ReminderUpdate
from src.services.errors import ReminderError
from src.services.reminder_service import ReminderService

router = APIRouter(prefix="/api/v1/reminders", tags=["reminders"])


@router.post("", response_model=ReminderResponse, status_code=status.HTTP_201_CREATED)
def create_reminder(
    reminder_data: ReminderCreate,
    actor_id: Annotated[str, Depends(get_current_actor)],
    service: Annotated[ReminderService, Depends(get_reminder_service)],
):
    """Create a new reminder owned by the current user."""
    try:
        reminder = service.create(actor_id, reminder_data)
    except ReminderError as e:
        raise http_error(e) from e
    return service.to_response(reminder)


@router.get("", response_model=list[ReminderResponse])
def list_reminders(
    actor_id: Annotated[str, Depends(get_current_actor)],
    service: Annotated[ReminderService, Depends(get_reminder_service)],
    status_filter: ReminderStatus | None = Query(default=None, alias="status"),
):
    """List reminders the current user owns or receives."""
    try:
        reminders = service.list_for_user(actor_id, status_filter)
    except ReminderError as e:
        raise http_error(e) from e
    return [service.to_response(reminder) for reminder in reminders]


@router.get("/{reminder_id}", response_model=ReminderResponse)
def get_reminder(
    reminder_id: int,
    actor_id: Annotated[str, Depends(get_current_actor)],
    service: Annotated[ReminderService, Depends(get_reminder_service)],
):
    """Get a specific reminder."""
    try:
        reminder = service.get(reminder_id, actor_id)
    except ReminderError as e:
        raise http_error(e) from e
    return service.to_response(reminder)


@router.patch("/{reminder_id}", response_model=ReminderResponse)
def update_reminder(
    reminder_id: int,
    reminder_data: ReminderUpdate,
    actor_id: Annotated[str, Depends(get_current_actor)],
    service: Annotated[ReminderService, Depends(get_reminder_service)],
):
    """Update a reminder. Only the owner can edit."""
    try:
        reminder = service.update(reminder_id, actor_id, reminder_data)
    except ReminderError as e:
        raise http_error(e) from e
    return service.to_response(reminder)


@router.delete("/{reminder_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_reminder(
    reminder_id: int,
    actor_id: Annotated[str, Depends(get_current_actor)],
    service: Annotated[ReminderService, Depends(get_reminder_service)],
):
    """Delete a reminder and its delivery history."""
    try:
        service.delete(reminder_id, actor_id)
    except ReminderError as e:
        raise http_error(e) from e


@router.post("/{reminder_id}/pause", response_model=ReminderResponse)
def pause_reminder(
    reminder_id: int,
    actor_id: Annotated[str, Depends(get_current_actor)],
    service: Annotated[ReminderService, Depends(get_reminder_service)],
):
    """Pause an active reminder."""
    try:
        reminder = service.pause(reminder_id, actor_id)
    except ReminderError as e:
        raise http_error(e) from e
    return service.to_response(reminder)


@router.post("/{reminder_id}/resume", response_model=ReminderResponse)
def resume_reminder(
    reminder_id: int,
    actor_id: Annotated[str, Depends(get_current_actor)],
    service: Annotated[ReminderService, Depends(get_reminder_service)],
):
    """Resume a paused or draft reminder."""
    try:
        reminder = service.resume(reminder_id, actor_id)
    except ReminderError as e:
        raise http_error(e) from e
    return service.to_response(reminder)


@router.get("/{reminder_id}/deliveries", response_model=list[DeliveryResponse])
def list_deliveries(
    reminder_id: int,
    actor_id: Annotated[str, Depends(get_current_actor)],
    service: Annotated[ReminderService, Depends(get_reminder_service)],
):
    """Delivery history of a reminder, newest first."""
    try:
        return service.list_deliveries(reminder_id, actor_id)
    except ReminderError as e:
        raise http_error(e) from e
