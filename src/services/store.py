"""Reminder store backed by SQLAlchemy.

The store is the only component that talks to the database. Every write
commits on its own: a single record (and the indexes derived from its columns)
changes atomically, but there are no transactions spanning a reminder and a
delivery. Callers treat "create delivery" and "update reminder" as two
independent writes and re-derive state on the next cycle when one of them is
lost.

Read-modify-write updates are protected by the ``version`` column (optimistic
locking). The ``claim_*``/``acknowledge_*``/``reclaim_*`` helpers are
compare-and-set updates that report whether this caller won.
"""

import logging
from datetime import datetime

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from src.clock import ensure_utc
from src.models.delivery import Delivery
from src.models.enums import (
    AcknowledgmentAction,
    AcknowledgmentMethod,
    DeliveryStatus,
    ReminderStatus,
)
from src.models.reminder import Reminder
from src.services.errors import ConcurrentModificationError, DuplicateDeliveryError, StoreError

logger = logging.getLogger(__name__)


def scheduled_dedup_key(reminder_id: int, due_at: datetime) -> str:
    """Dedup key for the scheduled delivery of a reminder at a due instant."""
    return f"reminder:{reminder_id}:{ensure_utc(due_at).isoformat()}"


def escalation_dedup_key(original_delivery_id: int, level: int, recipient_id: str) -> str:
    """Dedup key for an escalation delivery to one target."""
    return f"escalation:{original_delivery_id}:{level}:{recipient_id}"


class ReminderStore:
    """CRUD and indexed lookups for reminders and deliveries."""

    def __init__(self, db: Session):
        self.db = db

    # Reminders

    def create_reminder(self, reminder: Reminder) -> Reminder:
        """Insert a new reminder."""
        self.db.add(reminder)
        self._commit("create reminder")
        self.db.refresh(reminder)
        return reminder

    def get_reminder(self, reminder_id: int) -> Reminder | None:
        """Get a reminder by ID."""
        try:
            return self.db.query(Reminder).filter(Reminder.id == reminder_id).first()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load reminder {reminder_id}: {e}") from e

    def update_reminder(self, reminder: Reminder, **changes) -> Reminder:
        """Apply field changes to a reminder and commit.

        Raises:
            ConcurrentModificationError: if the reminder changed since it was loaded
        """
        for field, value in changes.items():
            setattr(reminder, field, value)
        self._commit(f"update reminder {reminder.id}")
        return reminder

    def delete_reminder(self, reminder: Reminder) -> None:
        """Delete a reminder and its deliveries."""
        self.db.delete(reminder)
        self._commit(f"delete reminder {reminder.id}")

    def list_due_reminders(self, cutoff: datetime, limit: int | None = None) -> list[Reminder]:
        """Active reminders due at or before ``cutoff``, oldest first."""
        try:
            query = (
                self.db.query(Reminder)
                .filter(
                    Reminder.status == ReminderStatus.ACTIVE,
                    Reminder.next_due_at.is_not(None),
                    Reminder.next_due_at <= cutoff,
                )
                .order_by(Reminder.next_due_at, Reminder.id)
            )
            if limit is not None:
                query = query.limit(limit)
            return query.all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to query due reminders: {e}") from e

    def count_overdue(self, now: datetime) -> int:
        """Number of active reminders whose due instant has already passed."""
        try:
            return (
                self.db.query(func.count(Reminder.id))
                .filter(
                    Reminder.status == ReminderStatus.ACTIVE,
                    Reminder.next_due_at.is_not(None),
                    Reminder.next_due_at < now,
                )
                .scalar()
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to count overdue reminders: {e}") from e

    def list_reminders_for_user(
        self,
        user_id: str,
        status: ReminderStatus | None = None,
    ) -> list[Reminder]:
        """Reminders the user owns or receives."""
        try:
            query = self.db.query(Reminder).filter(
                or_(Reminder.owner_id == user_id, Reminder.recipient_id == user_id)
            )
            if status is not None:
                query = query.filter(Reminder.status == status)
            return query.order_by(Reminder.next_due_at.is_(None), Reminder.next_due_at).all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list reminders for {user_id}: {e}") from e

    # Deliveries

    def create_delivery(self, delivery: Delivery) -> Delivery:
        """Insert a delivery.

        Raises:
            DuplicateDeliveryError: if a delivery with the same dedup key exists
        """
        self.db.add(delivery)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise DuplicateDeliveryError(f"Delivery {delivery.dedup_key} already exists") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreError(f"Failed to create delivery: {e}") from e
        self.db.refresh(delivery)
        return delivery

    def get_delivery(self, delivery_id: int) -> Delivery | None:
        """Get a delivery by ID."""
        try:
            return self.db.query(Delivery).filter(Delivery.id == delivery_id).first()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load delivery {delivery_id}: {e}") from e

    def get_delivery_by_dedup_key(self, dedup_key: str) -> Delivery | None:
        """Get the delivery serving a dedup key, if any."""
        try:
            return self.db.query(Delivery).filter(Delivery.dedup_key == dedup_key).first()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load delivery {dedup_key}: {e}") from e

    def update_delivery(self, delivery: Delivery, **changes) -> Delivery:
        """Apply field changes to a delivery and commit."""
        for field, value in changes.items():
            setattr(delivery, field, value)
        self._commit(f"update delivery {delivery.id}")
        return delivery

    def list_deliveries_for_reminder(self, reminder_id: int) -> list[Delivery]:
        """All deliveries of a reminder, newest first."""
        try:
            return (
                self.db.query(Delivery)
                .filter(Delivery.reminder_id == reminder_id)
                .order_by(Delivery.id.desc())
                .all()
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list deliveries for reminder {reminder_id}: {e}") from e

    def list_escalation_candidates(self) -> list[Delivery]:
        """Delivered, unacknowledged original deliveries whose chain is still open."""
        try:
            return (
                self.db.query(Delivery)
                .filter(
                    Delivery.is_escalation.is_(False),
                    Delivery.status == DeliveryStatus.DELIVERED,
                    Delivery.acknowledged.is_(False),
                    Delivery.escalation_halted.is_(False),
                )
                .order_by(Delivery.delivered_at)
                .all()
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to query escalation candidates: {e}") from e

    # Compare-and-set helpers

    def reclaim_delivery(self, delivery: Delivery, stale_before: datetime, now: datetime) -> bool:
        """Take over a failed delivery, or one abandoned mid-attempt.

        ``pending``/``sending``/``retrying`` deliveries belong to whoever is working
        on them until ``last_attempt_at`` is older than ``stale_before``.

        Returns True if this caller now owns the delivery.
        """
        in_flight = [DeliveryStatus.PENDING, DeliveryStatus.SENDING, DeliveryStatus.RETRYING]
        reclaimable = or_(
            Delivery.status == DeliveryStatus.FAILED,
            and_(
                Delivery.status.in_(in_flight),
                or_(Delivery.last_attempt_at.is_(None), Delivery.last_attempt_at < stale_before),
            ),
        )
        return self._compare_and_set(
            Delivery.id == delivery.id,
            reclaimable,
            values={
                Delivery.status: DeliveryStatus.SENDING,
                Delivery.last_attempt_at: now,
                Delivery.permanent_failure: False,
            },
            refresh=delivery,
        )

    def claim_escalation_level(
        self,
        delivery: Delivery,
        level: int,
        allow_halted: bool = False,
    ) -> bool:
        """Record that ``level`` runs for this original delivery.

        Succeeds only if no level >= ``level`` was recorded before, which keeps the
        level monotonic and makes each level run at most once.
        """
        conditions = [Delivery.current_escalation_level < level]
        if not allow_halted:
            conditions.append(Delivery.escalation_halted.is_(False))
        return self._compare_and_set(
            Delivery.id == delivery.id,
            *conditions,
            values={Delivery.current_escalation_level: level},
            refresh=delivery,
        )

    def acknowledge_delivery(
        self,
        delivery: Delivery,
        actor_id: str,
        method: AcknowledgmentMethod,
        action: AcknowledgmentAction,
        now: datetime,
    ) -> bool:
        """Flip ``acknowledged`` from false to true. Returns False if it was already set."""
        return self._compare_and_set(
            Delivery.id == delivery.id,
            Delivery.acknowledged.is_(False),
            values={
                Delivery.acknowledged: True,
                Delivery.acknowledged_at: now,
                Delivery.acknowledged_by: actor_id,
                Delivery.acknowledgment_method: method,
                Delivery.acknowledgment_action: action,
            },
            refresh=delivery,
        )

    def halt_escalation(self, delivery: Delivery) -> bool:
        """Stop any further automatic escalation of this delivery's chain."""
        return self._compare_and_set(
            Delivery.id == delivery.id,
            Delivery.escalation_halted.is_(False),
            values={Delivery.escalation_halted: True},
            refresh=delivery,
        )

    def _compare_and_set(self, *conditions, values: dict, refresh: Delivery) -> bool:
        values = {**values, Delivery.version: Delivery.version + 1}
        try:
            updated = (
                self.db.query(Delivery)
                .filter(*conditions)
                .update(values, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreError(f"Failed to update delivery {refresh.id}: {e}") from e

        self.db.refresh(refresh)
        return updated == 1

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise ConcurrentModificationError(f"Concurrent modification during {operation}") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Storage failure during {operation}: {e}")
            raise StoreError(f"Failed to {operation}: {e}") from e
