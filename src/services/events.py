"""Reminder lifecycle events published over Redis pub/sub."""

import json
import logging
from datetime import UTC, datetime
from enum import StrEnum

import redis

from src.config import get_settings

logger = logging.getLogger(__name__)

ALL_EVENTS_CHANNEL = "reminders:events"


class ReminderEventType(StrEnum):
    """Event types for reminder updates."""

    CREATED = "created"
    DELIVERED = "delivered"
    ACKNOWLEDGED = "acknowledged"
    SNOOZED = "snoozed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ESCALATED = "escalated"
    EDITED = "edited"
    PAUSED = "paused"
    RESUMED = "resumed"


# Synchronous Redis client shared by API endpoints and workers
_sync_redis: redis.Redis | None = None


def get_sync_redis() -> redis.Redis:
    """Get synchronous Redis client for publishing events."""
    global _sync_redis
    if _sync_redis is None:
        _sync_redis = redis.from_url(get_settings().redis_url)
    return _sync_redis


class ReminderEventPublisher:
    """Publishes reminder events to ``reminder:<id>`` and the shared events channel.

    Publishing is best effort: a Redis outage is logged and never fails the
    operation that produced the event.
    """

    def __init__(self, redis_client: redis.Redis | None = None) -> None:
        self._redis = redis_client

    def _client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = get_sync_redis()
        return self._redis

    def publish(
        self,
        reminder_id: int,
        event_type: ReminderEventType,
        actor_id: str | None = None,
        data: dict | None = None,
    ) -> None:
        """Publish an event for a reminder.

        Args:
            reminder_id: The reminder the event is about
            event_type: Type of event (created, delivered, acknowledged, etc.)
            actor_id: User who caused the event, None for the scheduler
            data: Optional event payload
        """
        message = {
            "type": event_type,
            "reminder_id": reminder_id,
            "actor_id": actor_id,
            "timestamp": datetime.now(UTC).isoformat(),
            "data": data or {},
        }
        try:
            client = self._client()
            payload = json.dumps(message, default=str)
            channel = f"reminder:{reminder_id}"
            client.publish(channel, payload)
            client.publish(ALL_EVENTS_CHANNEL, payload)
            logger.debug(f"Published {event_type} to {channel}")
        except redis.RedisError as e:
            # Don't fail the operation if pub/sub fails
            logger.error(f"Failed to publish reminder event: {e}")
