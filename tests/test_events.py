"""Tests for reminder event publishing."""

import json
from unittest.mock import MagicMock, patch

import redis

from src.services.events import (
    ALL_EVENTS_CHANNEL,
    ReminderEventPublisher,
    ReminderEventType,
    get_sync_redis,
)


class TestGetSyncRedis:
    """Tests for get_sync_redis function."""

    def test_creates_redis_client(self):
        """Test that get_sync_redis creates a Redis client."""
        import src.services.events as events_module

        events_module._sync_redis = None

        with patch("src.services.events.redis.from_url") as mock_from_url:
            mock_client = MagicMock()
            mock_from_url.return_value = mock_client

            result = get_sync_redis()

            assert result == mock_client
            mock_from_url.assert_called_once()

        events_module._sync_redis = None

    def test_reuses_existing_client(self):
        """Test that get_sync_redis reuses existing client."""
        import src.services.events as events_module

        mock_client = MagicMock()
        events_module._sync_redis = mock_client

        with patch("src.services.events.redis.from_url") as mock_from_url:
            result = get_sync_redis()

            assert result == mock_client
            mock_from_url.assert_not_called()

        # Clean up
        events_module._sync_redis = None


class TestReminderEventPublisher:
    """Tests for ReminderEventPublisher."""

    def test_publishes_to_reminder_and_shared_channels(self):
        """Test that events go to the reminder channel and the shared channel."""
        mock_redis = MagicMock()

        ReminderEventPublisher(mock_redis).publish(
            42, ReminderEventType.SNOOZED, actor_id="U1", data={"minutes": 15}
        )

        channels = [call.args[0] for call in mock_redis.publish.call_args_list]
        assert channels == ["reminder:42", ALL_EVENTS_CHANNEL]

    def test_event_payload(self):
        """Test the published message structure."""
        mock_redis = MagicMock()

        ReminderEventPublisher(mock_redis).publish(
            42, ReminderEventType.ACKNOWLEDGED, actor_id="U3", data={"delivery_id": 9}
        )

        message = json.loads(mock_redis.publish.call_args.args[1])
        assert message["type"] == "acknowledged"
        assert message["reminder_id"] == 42
        assert message["actor_id"] == "U3"
        assert message["data"] == {"delivery_id": 9}
        assert "timestamp" in message

    def test_scheduler_events_have_no_actor(self):
        mock_redis = MagicMock()

        ReminderEventPublisher(mock_redis).publish(1, ReminderEventType.DELIVERED)

        message = json.loads(mock_redis.publish.call_args.args[1])
        assert message["actor_id"] is None
        assert message["data"] == {}

    def test_handles_redis_error_gracefully(self):
        """Test that Redis errors don't propagate."""
        mock_redis = MagicMock()
        mock_redis.publish.side_effect = redis.RedisError("Connection failed")

        # Should not raise
        ReminderEventPublisher(mock_redis).publish(1, ReminderEventType.CREATED)
