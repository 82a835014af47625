"""Celery tasks for the reminder scheduler and escalation engine."""

import asyncio
import logging

import redis
from redis.exceptions import LockError
from sqlalchemy.orm import Session

from src.celery_app import app as celery_app
from src.database import SessionLocal
from src.services.errors import ReminderError
from src.services.escalation import EscalationEngine
from src.services.events import ReminderEventPublisher, get_sync_redis
from src.services.health import SchedulerStatsRepository
from src.services.notifier import get_notifier
from src.services.scheduler import ReminderScheduler
from src.services.store import ReminderStore

logger = logging.getLogger(__name__)

SCHEDULER_LOCK = "lock:scheduler-cycle"
ESCALATION_LOCK = "lock:escalation-check"
# Matches task_time_limit so a killed worker cannot hold the lock forever
LOCK_TIMEOUT_SECONDS = 300


@celery_app.task
def run_scheduler_cycle() -> dict:
    """Deliver due reminders.

    Runs every poll interval via celery-beat. Only one cycle runs at a time across
    all workers; a trigger that finds the lock taken is dropped.

    Returns:
        dict with cycle statistics
    """
    repository = SchedulerStatsRepository()
    lock = get_sync_redis().lock(SCHEDULER_LOCK, timeout=LOCK_TIMEOUT_SECONDS)
    try:
        acquired = lock.acquire(blocking=False)
    except redis.RedisError as e:
        logger.error(f"Could not acquire scheduler lock: {e}")
        return {"error": str(e)}

    if not acquired:
        repository.record_dropped_trigger()
        logger.warning("Previous scheduler cycle still running, dropping trigger")
        return {"skipped": True}

    db: Session = SessionLocal()
    try:
        scheduler = ReminderScheduler(
            ReminderStore(db),
            get_notifier(),
            events=ReminderEventPublisher(),
            stats=repository.load(),
        )
        scheduler.start()
        cycle = asyncio.run(scheduler.run_cycle())
        repository.save(scheduler.stats)
        return cycle.model_dump(mode="json") if cycle else {"skipped": True}

    except Exception as e:
        logger.error(f"Error running scheduler cycle: {e}", exc_info=True)
        db.rollback()
        return {"error": str(e)}

    finally:
        db.close()
        _release(lock)


@celery_app.task
def check_escalations() -> dict:
    """Escalate delivered reminders nobody acknowledged.

    Runs every escalation check interval via celery-beat.

    Returns:
        dict with escalation statistics
    """
    lock = get_sync_redis().lock(ESCALATION_LOCK, timeout=LOCK_TIMEOUT_SECONDS)
    try:
        acquired = lock.acquire(blocking=False)
    except redis.RedisError as e:
        logger.error(f"Could not acquire escalation lock: {e}")
        return {"error": str(e)}

    if not acquired:
        logger.warning("Previous escalation check still running, skipping")
        return {"skipped": True}

    db: Session = SessionLocal()
    try:
        engine = EscalationEngine(ReminderStore(db), get_notifier(), events=ReminderEventPublisher())
        summary = asyncio.run(engine.check_escalations())
        return summary.model_dump(mode="json", exclude={"results"})

    except Exception as e:
        logger.error(f"Error checking escalations: {e}", exc_info=True)
        db.rollback()
        return {"error": str(e)}

    finally:
        db.close()
        _release(lock)


@celery_app.task
def run_manual_escalation(delivery_id: int, actor_id: str, level: int | None = None) -> dict:
    """Run an escalation level requested through an acknowledgment.

    Args:
        delivery_id: Original delivery whose chain to escalate
        actor_id: User who asked for the escalation (already authorized)
        level: Level to run, defaults to the next one

    Returns:
        dict with the escalation result
    """
    db: Session = SessionLocal()
    try:
        engine = EscalationEngine(ReminderStore(db), get_notifier(), events=ReminderEventPublisher())
        result = asyncio.run(
            engine.escalate_manually(delivery_id, actor_id, level=level, check_access=False)
        )
        return result.model_dump(mode="json")

    except ReminderError as e:
        logger.warning(f"Manual escalation of delivery {delivery_id} rejected: {e.message}")
        return {"error": e.message, "code": e.code}

    except Exception as e:
        logger.error(f"Error escalating delivery {delivery_id}: {e}", exc_info=True)
        db.rollback()
        return {"error": str(e)}

    finally:
        db.close()


def request_manual_escalation(delivery_id: int, actor_id: str) -> None:
    """Queue a manual escalation. Used by the acknowledgment tracker."""
    run_manual_escalation.delay(delivery_id, actor_id)
    logger.info(f"Queued manual escalation of delivery {delivery_id} by {actor_id}")


def _release(lock) -> None:
    try:
        lock.release()
    except LockError:
        # Expired while we were running; someone else may hold it now
        logger.warning(f"Lock {lock.name} expired before release")
    except redis.RedisError as e:
        logger.error(f"Failed to release lock {lock.name}: {e}")
