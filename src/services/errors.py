"""Error taxonomy shared by the scheduler, escalation engine and acknowledgment tracker."""

from enum import StrEnum


class ErrorCode(StrEnum):
    """Machine-readable error codes returned to callers."""

    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    ALREADY_ACKNOWLEDGED = "ALREADY_ACKNOWLEDGED"
    TRANSIENT_DELIVERY_FAILURE = "TRANSIENT_DELIVERY_FAILURE"
    PERMANENT_DELIVERY_FAILURE = "PERMANENT_DELIVERY_FAILURE"
    STORAGE_FAILURE = "STORAGE_FAILURE"


class ReminderError(Exception):
    """Base class for errors raised by reminder services."""

    code: ErrorCode = ErrorCode.VALIDATION

    def __init__(self, message: str, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(ReminderError):
    code = ErrorCode.VALIDATION


class NotFoundError(ReminderError):
    code = ErrorCode.NOT_FOUND


class UnauthorizedError(ReminderError):
    code = ErrorCode.UNAUTHORIZED


class StoreError(ReminderError):
    """A storage operation failed; the affected record was not changed."""

    code = ErrorCode.STORAGE_FAILURE


class DuplicateDeliveryError(StoreError):
    """A delivery with the same dedup key already exists."""


class ConcurrentModificationError(StoreError):
    """The record changed underneath a read-modify-write."""


class EscalationRequestError(ReminderError):
    """A manual escalation could not be queued."""

    code = ErrorCode.TRANSIENT_DELIVERY_FAILURE
