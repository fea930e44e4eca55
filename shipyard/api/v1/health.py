"""Health check endpoints."""

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel

from shipyard import __version__
from shipyard.api.deps import SchedulerDep
from shipyard.config import settings
from shipyard.models.deployment import utc_now

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str
    environment: str
    scheduler_running: bool
    timestamp: datetime


@router.get("/health", response_model=HealthResponse)
async def health_check(scheduler: SchedulerDep) -> HealthResponse:
    """Check API health status."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        environment=settings.app_env,
        scheduler_running=scheduler.is_running,
        timestamp=utc_now(),
    )
