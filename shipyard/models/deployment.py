"""Deployment data models and the deployment state machine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from shipyard.models.commit import PullRequestInfo


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentStatus(str, Enum):
    """Deployment lifecycle status."""

    QUEUED = "queued"
    BUILDING = "building"
    READY = "ready"
    ERROR = "error"
    CANCELLED = "cancelled"


class Environment(str, Enum):
    """Target environment of a deployment."""

    PRODUCTION = "production"
    PREVIEW = "preview"


ALLOWED_TRANSITIONS: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {
    DeploymentStatus.QUEUED: frozenset(
        {DeploymentStatus.BUILDING, DeploymentStatus.CANCELLED}
    ),
    DeploymentStatus.BUILDING: frozenset(
        {
            DeploymentStatus.READY,
            DeploymentStatus.ERROR,
            DeploymentStatus.CANCELLED,
        }
    ),
    DeploymentStatus.ERROR: frozenset({DeploymentStatus.QUEUED}),
    DeploymentStatus.READY: frozenset(),
    DeploymentStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    {DeploymentStatus.READY, DeploymentStatus.ERROR, DeploymentStatus.CANCELLED}
)
ACTIVE_STATUSES = frozenset({DeploymentStatus.QUEUED, DeploymentStatus.BUILDING})


def is_valid_transition(current: DeploymentStatus, target: DeploymentStatus) -> bool:
    """Check whether ``current -> target`` is an edge of the state machine."""
    return target in ALLOWED_TRANSITIONS[current]


class DeploymentError(BaseModel):
    """Failure details exposed on a deployment in error state."""

    message: str
    step: str


class Asset(BaseModel):
    """A single published file."""

    path: str
    size: int
    content_type: str


class Deployment(BaseModel):
    """One attempt to build and publish a project at a specific commit."""

    id: UUID = Field(default_factory=uuid4)
    project_id: UUID

    # Commit
    commit_sha: str | None = None
    commit_message: str = ""
    branch: str = "main"
    author: str | None = None
    pull_request: PullRequestInfo | None = None

    status: DeploymentStatus = DeploymentStatus.QUEUED
    environment: Environment = Environment.PRODUCTION

    # Timestamps
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    # Build output
    build_log: list[str] = Field(default_factory=list)
    build_time: int | None = None
    size: int | None = None
    url: str | None = None
    assets: list[Asset] = Field(default_factory=list)

    error: DeploymentError | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class DeploymentSummary(BaseModel):
    """Compact view used by queue and webhook responses."""

    id: UUID
    project_id: UUID
    project_name: str | None = None
    project_slug: str | None = None
    status: DeploymentStatus
    environment: Environment
    commit_sha: str | None = None
    commit_message: str = ""
    branch: str
    created_at: datetime
    url: str | None = None
    error: DeploymentError | None = None

    # Set when the summary could only be built partially
    annotation: str | None = None

    @classmethod
    def from_deployment(
        cls, deployment: Deployment, **extra: Any
    ) -> "DeploymentSummary":
        return cls(
            id=deployment.id,
            project_id=deployment.project_id,
            status=deployment.status,
            environment=deployment.environment,
            commit_sha=deployment.commit_sha,
            commit_message=deployment.commit_message,
            branch=deployment.branch,
            created_at=deployment.created_at,
            url=deployment.url,
            error=deployment.error,
            **extra,
        )
