"""Dependency injection for API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import Depends

from shipyard.core.controller import DeploymentController, get_controller
from shipyard.core.events import EventBroadcaster, get_event_broadcaster
from shipyard.core.store import (
    DeploymentStore,
    ProjectRegistry,
    get_deployment_store,
    get_project_registry,
)
from shipyard.core.scheduler import DeploymentScheduler, get_scheduler
from shipyard.models.deployment import Deployment
from shipyard.webhooks.gateway import WebhookGateway, get_gateway


async def get_store() -> DeploymentStore:
    """Get the deployment store."""
    return get_deployment_store()


async def get_projects() -> ProjectRegistry:
    """Get the project registry."""
    return get_project_registry()


async def get_events() -> EventBroadcaster:
    """Get the event broadcaster."""
    return get_event_broadcaster()


async def get_deployment_controller() -> DeploymentController:
    return get_controller()


async def get_webhook_gateway() -> WebhookGateway:
    return get_gateway()


async def get_deployment_scheduler() -> DeploymentScheduler:
    return get_scheduler()


async def get_deployment_by_id(
    deployment_id: UUID,
    store: Annotated[DeploymentStore, Depends(get_store)],
) -> Deployment:
    """Get a deployment by ID or raise DeploymentNotFoundError (404)."""
    return await store.require(deployment_id)


# Type aliases for cleaner signatures
StoreDep = Annotated[DeploymentStore, Depends(get_store)]
ProjectsDep = Annotated[ProjectRegistry, Depends(get_projects)]
EventsDep = Annotated[EventBroadcaster, Depends(get_events)]
ControllerDep = Annotated[DeploymentController, Depends(get_deployment_controller)]
GatewayDep = Annotated[WebhookGateway, Depends(get_webhook_gateway)]
SchedulerDep = Annotated[DeploymentScheduler, Depends(get_deployment_scheduler)]
DeploymentDep = Annotated[Deployment, Depends(get_deployment_by_id)]
