"""Scheduler status and manual trigger endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, status

from src.api.dependencies import get_current_actor, get_stats_repository
from src.clock import utcnow
from src.schemas.health import HealthReport
from src.services.health import SchedulerStatsRepository, classify_health
from src.tasks.reminders import run_scheduler_cycle

router = APIRouter(prefix="/api/v1/scheduler", tags=["scheduler"])


@router.get("/status", response_model=HealthReport)
def get_scheduler_status(
    actor_id: Annotated[str, Depends(get_current_actor)],
    repository: Annotated[SchedulerStatsRepository, Depends(get_stats_repository)],
):
    """Scheduler statistics with health classification and thresholds."""
    return classify_health(repository.load(), utcnow())


@router.post("/run", status_code=status.HTTP_202_ACCEPTED)
def trigger_scheduler_cycle(
    actor_id: Annotated[str, Depends(get_current_actor)],
):
    """Queue one scheduler cycle outside the regular poll interval."""
    task = run_scheduler_cycle.delay()
    return {"queued": True, "task_id": task.id}
