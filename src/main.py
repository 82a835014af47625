"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api import deliveries, reminders, scheduler
from src.api.dependencies import get_stats_repository
from src.clock import utcnow
from src.config import get_settings
from src.services.health import SchedulerStatsRepository, classify_health

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown events."""
    # Startup: Initialize application resources here
    yield
    # Shutdown: Clean up resources here


app = FastAPI(
    title="Reminders API",
    description="Recurring reminders with delivery tracking, acknowledgment and escalation",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware for development
if settings.is_development:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:3001"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Register routers
app.include_router(reminders.router)
app.include_router(deliveries.router)
app.include_router(scheduler.router)


@app.get("/health")
def health_check(
    repository: Annotated[SchedulerStatsRepository, Depends(get_stats_repository)],
):
    """Health check endpoint, including the scheduler's health."""
    report = classify_health(repository.load(), utcnow())
    return {
        "status": report.status,
        "environment": settings.environment,
        "scheduler": {"running": report.stats.running, "issues": report.issues},
    }
