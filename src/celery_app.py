"""Celery application configuration."""

from celery import Celery

from src.config import get_settings

settings = get_settings()

app = Celery(
    "reminders",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["src.tasks.reminders"],
)

# Celery configuration
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes max per task
    task_soft_time_limit=240,  # 4 minutes soft limit
)

# Periodic triggers; each task runs a single cycle and returns
app.conf.beat_schedule = {
    "run-scheduler-cycle": {
        "task": "src.tasks.reminders.run_scheduler_cycle",
        "schedule": float(settings.scheduler_poll_interval_seconds),
    },
    "check-escalations": {
        "task": "src.tasks.reminders.check_escalations",
        "schedule": float(settings.escalation_check_interval_seconds),
    },
}
