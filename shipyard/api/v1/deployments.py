"""Deployment read, manual trigger and live stream endpoints."""

import asyncio
import json
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Query, status
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from shipyard.api.deps import ControllerDep, DeploymentDep, EventsDep, StoreDep
from shipyard.core.events import LOG_LINE, STATUS_UPDATE, Event
from shipyard.models.commit import CommitEvent
from shipyard.models.deployment import (
    TERMINAL_STATUSES,
    Deployment,
    DeploymentSummary,
    Environment,
)
from shipyard.models.project import GitProvider

router = APIRouter()

KEEPALIVE_SECONDS = 30.0


def _message(event_type: str, data: dict[str, Any]) -> dict[str, str]:
    return {"event": event_type, "data": json.dumps(data)}


def _drain_status_events(queue: asyncio.Queue[Event]) -> list[Event]:
    """Empty the queue, keeping status updates.

    Log lines already queued are part of the persisted log read just before.
    """
    pending = []
    while not queue.empty():
        event = queue.get_nowait()
        if event.event_type != LOG_LINE:
            pending.append(event)
    return pending


class DeploymentListResponse(BaseModel):
    """Response for listing deployments."""

    deployments: list[DeploymentSummary]
    limit: int


class ManualDeployRequest(BaseModel):
    """Optional commit details for a manual deployment."""

    branch: str | None = None
    commit_sha: str | None = None
    commit_message: str | None = None
    environment: Environment = Environment.PRODUCTION


@router.get(
    "/deployments",
    response_model=DeploymentListResponse,
    summary="List deployments",
)
async def list_deployments(
    store: StoreDep,
    controller: ControllerDep,
    project_id: UUID | None = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
) -> DeploymentListResponse:
    """List deployments newest first, optionally for a single project."""
    deployments = await store.list_recent(project_id=project_id, limit=limit)
    return DeploymentListResponse(
        deployments=[await controller.summarize(d) for d in deployments],
        limit=limit,
    )


@router.get(
    "/deployments/{deployment_id}",
    response_model=Deployment,
    summary="Get deployment details",
)
async def get_deployment(deployment: DeploymentDep) -> Deployment:
    """Full deployment record, including the build log."""
    return deployment


@router.post(
    "/projects/{project_id}/deploy",
    response_model=Deployment,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Trigger a deployment manually",
)
async def trigger_deployment(
    project_id: UUID,
    controller: ControllerDep,
    data: ManualDeployRequest | None = None,
) -> Deployment:
    """Queue a deployment of the project's configured branch."""
    data = data or ManualDeployRequest()
    commit = None
    if data.branch or data.commit_sha or data.commit_message:
        project = await controller.projects.require_active(project_id)
        commit = CommitEvent(
            provider=GitProvider.GENERIC,
            repository_url=project.repository.url,
            branch=data.branch or project.repository.branch,
            commit_sha=data.commit_sha,
            commit_message=data.commit_message or "Manual deployment",
        )
    return await controller.trigger(project_id, commit, data.environment)


@router.get(
    "/deployments/{deployment_id}/stream",
    summary="Stream deployment events (SSE)",
)
async def stream_deployment_events(
    deployment: DeploymentDep,
    events: EventsDep,
    store: StoreDep,
) -> EventSourceResponse:
    """Replay the persisted build log, then tail live events."""

    async def event_generator():
        # Subscribe before reading history so nothing falls in between
        queue = events.subscribe(deployment.id)
        try:
            current = await store.get(deployment.id) or deployment
            pending = _drain_status_events(queue)
            yield _message(
                "connected",
                {"deployment_id": str(current.id), "status": current.status.value},
            )

            for line in current.build_log:
                yield _message(LOG_LINE, {"message": line, "replayed": True})

            for event in pending:
                yield _message(event.event_type, event.payload)

            if current.status in TERMINAL_STATUSES:
                return

            while True:
                try:
                    event: Event = await asyncio.wait_for(
                        queue.get(), timeout=KEEPALIVE_SECONDS
                    )
                except asyncio.TimeoutError:
                    yield _message("keepalive", {})
                    continue

                yield _message(event.event_type, event.payload)

                if event.event_type == STATUS_UPDATE and event.data.get("status") in {
                    s.value for s in TERMINAL_STATUSES
                }:
                    break
        finally:
            events.unsubscribe(deployment.id, queue)

    return EventSourceResponse(event_generator())
