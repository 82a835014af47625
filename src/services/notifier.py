"""Outbound notification transports.

A notifier delivers a reminder to its recipient and reports one of three
outcomes: success, retryable failure, or permanent failure. The scheduler and
escalation engine only depend on the ``Notifier`` interface.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from src.config import get_settings
from src.models.reminder import Reminder

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class NotificationResult:
    """Outcome of one send attempt."""

    success: bool
    message_ref: str | None = None
    error: str | None = None
    retryable: bool = False

    @classmethod
    def ok(cls, message_ref: str | None = None) -> "NotificationResult":
        return cls(success=True, message_ref=message_ref)

    @classmethod
    def failed(cls, error: str, retryable: bool) -> "NotificationResult":
        return cls(success=False, error=error, retryable=retryable)


class Notifier(ABC):
    """Interface for delivering reminders."""

    @abstractmethod
    async def send(self, reminder: Reminder) -> NotificationResult:
        """Deliver a reminder to its recipient."""

    @abstractmethod
    async def send_escalation(
        self,
        reminder: Reminder,
        recipients: list[str],
        level: int,
        message: str | None = None,
        original_delivery_id: int | None = None,
    ) -> dict[str, NotificationResult]:
        """Deliver an escalation notice to each recipient. Returns a result per recipient."""


def build_escalation_message(reminder: Reminder, message: str | None = None) -> str:
    """Text sent to escalation targets."""
    if message:
        return message
    return (
        f"This reminder requires attention. Original recipient {reminder.recipient_id} "
        f"has not responded.\n\nOriginal message: {reminder.content}"
    )


class WebhookNotifier(Notifier):
    """Posts reminders as JSON to an outbound messaging webhook.

    2xx responses are successes. Timeouts, connection errors, 408/425/429 and
    5xx responses are retryable; any other status is a permanent failure.
    """

    def __init__(
        self,
        webhook_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self.webhook_url = webhook_url or settings.notifier_webhook_url
        self.timeout = timeout or settings.notifier_timeout_seconds
        self._transport = transport
        if not self.webhook_url:
            raise ValueError("NOTIFIER_WEBHOOK_URL is not configured")

    async def send(self, reminder: Reminder) -> NotificationResult:
        payload = {
            "kind": "reminder",
            "reminder_id": reminder.id,
            "recipient_id": reminder.recipient_id,
            "title": reminder.title,
            "content": reminder.content,
            "occurrence": reminder.occurrence_count + 1,
        }
        return await self._post(payload)

    async def send_escalation(
        self,
        reminder: Reminder,
        recipients: list[str],
        level: int,
        message: str | None = None,
        original_delivery_id: int | None = None,
    ) -> dict[str, NotificationResult]:
        results = {}
        for recipient_id in recipients:
            payload = {
                "kind": "escalation",
                "reminder_id": reminder.id,
                "recipient_id": recipient_id,
                "title": f"ESCALATION: {reminder.title}",
                "content": build_escalation_message(reminder, message),
                "escalation_level": level,
                "original_delivery_id": original_delivery_id,
            }
            results[recipient_id] = await self._post(payload)
        return results

    async def _post(self, payload: dict) -> NotificationResult:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.webhook_url, json=payload)
        except httpx.TimeoutException as e:
            logger.warning(f"Webhook timed out for {payload['recipient_id']}: {e}")
            return NotificationResult.failed(f"Timeout: {e}", retryable=True)
        except httpx.HTTPError as e:
            logger.warning(f"Webhook transport error for {payload['recipient_id']}: {e}")
            return NotificationResult.failed(f"Transport error: {e}", retryable=True)

        if response.is_success:
            message_ref = None
            try:
                message_ref = response.json().get("message_id")
            except ValueError:
                pass
            return NotificationResult.ok(message_ref=message_ref)

        retryable = response.status_code in RETRYABLE_STATUS_CODES
        error = f"HTTP {response.status_code}: {response.text[:200]}"
        logger.warning(
            f"Webhook rejected {payload['kind']} for {payload['recipient_id']}: {error} "
            f"(retryable={retryable})"
        )
        return NotificationResult.failed(error, retryable=retryable)


class LoggingNotifier(Notifier):
    """Development notifier that only logs what would have been sent."""

    async def send(self, reminder: Reminder) -> NotificationResult:
        logger.info(f"[notify] {reminder.recipient_id}: {reminder.title} - {reminder.content}")
        return NotificationResult.ok(message_ref=f"log-{reminder.id}-{reminder.occurrence_count + 1}")

    async def send_escalation(
        self,
        reminder: Reminder,
        recipients: list[str],
        level: int,
        message: str | None = None,
        original_delivery_id: int | None = None,
    ) -> dict[str, NotificationResult]:
        text = build_escalation_message(reminder, message)
        results = {}
        for recipient_id in recipients:
            logger.info(f"[escalate L{level}] {recipient_id}: {reminder.title} - {text}")
            message_ref = f"log-esc-{reminder.id}-{level}"
            results[recipient_id] = NotificationResult.ok(message_ref=message_ref)
        return results


def get_notifier() -> Notifier:
    """Get the configured notifier: webhook when a URL is set, logging otherwise."""
    settings = get_settings()
    if settings.notifier_webhook_url:
        return WebhookNotifier()
    logger.info("NOTIFIER_WEBHOOK_URL not configured, using logging notifier")
    return LoggingNotifier()
