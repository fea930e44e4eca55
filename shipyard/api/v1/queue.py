"""Queue introspection and control endpoints."""

from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Query

from shipyard.api.deps import ControllerDep, SchedulerDep

router = APIRouter()


@router.get("", summary="Queue status")
async def get_queue_status(
    controller: ControllerDep,
    scheduler: SchedulerDep,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> dict[str, Any]:
    """Counts of queued/building deployments and the most recent ones."""
    status = await controller.queue_status(limit=limit)
    status["in_flight"] = scheduler.in_flight
    return status


@router.post("/retry/{deployment_id}", summary="Retry a failed deployment")
async def retry_deployment(
    deployment_id: UUID,
    controller: ControllerDep,
) -> dict[str, Any]:
    deployment = await controller.retry(deployment_id)
    return {
        "success": True,
        "message": "Deployment queued for retry",
        "deployment_id": str(deployment.id),
        "status": deployment.status.value,
    }


@router.post("/cancel/{deployment_id}", summary="Cancel a queued or building deployment")
async def cancel_deployment(
    deployment_id: UUID,
    controller: ControllerDep,
) -> dict[str, Any]:
    deployment = await controller.cancel(deployment_id)
    return {
        "success": True,
        "message": "Deployment cancelled",
        "deployment_id": str(deployment.id),
        "status": deployment.status.value,
    }


@router.post("/cleanup", summary="Delete finished deployments past retention")
async def cleanup_deployments(
    controller: ControllerDep,
    retention_days: Annotated[int | None, Query(ge=0)] = None,
) -> dict[str, Any]:
    removed = await controller.cleanup_old(retention_days)
    return {"success": True, "removed": removed}
