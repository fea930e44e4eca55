"""Core functionality for Shipyard."""

from shipyard.core.exceptions import (
    AuthenticationError,
    DeploymentNotFoundError,
    InvalidStateTransition,
    NotFoundError,
    ProjectNotFoundError,
    ShipyardError,
    StageCancelled,
    StageFailure,
    StageTimeoutError,
    StoreError,
    ValidationError,
)
from shipyard.core.store import (
    DeploymentStore,
    ProjectRegistry,
    get_deployment_store,
    get_project_registry,
)
from shipyard.core.events import Event, EventBroadcaster, get_event_broadcaster

__all__ = [
    "ShipyardError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ProjectNotFoundError",
    "DeploymentNotFoundError",
    "InvalidStateTransition",
    "StageFailure",
    "StageTimeoutError",
    "StageCancelled",
    "StoreError",
    "DeploymentStore",
    "ProjectRegistry",
    "get_deployment_store",
    "get_project_registry",
    "Event",
    "EventBroadcaster",
    "get_event_broadcaster",
]
