"""Data models for Shipyard."""

from shipyard.models.commit import CommitEvent, PullRequestInfo
from shipyard.models.deployment import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    Asset,
    Deployment,
    DeploymentError,
    DeploymentStatus,
    DeploymentSummary,
    Environment,
    is_valid_transition,
)
from shipyard.models.project import (
    BuildSettings,
    GitProvider,
    Project,
    ProjectStatus,
    Repository,
)

__all__ = [
    # Project models
    "Project",
    "ProjectStatus",
    "Repository",
    "BuildSettings",
    "GitProvider",
    # Commit models
    "CommitEvent",
    "PullRequestInfo",
    # Deployment models
    "Deployment",
    "DeploymentError",
    "DeploymentStatus",
    "DeploymentSummary",
    "Environment",
    "Asset",
    "ALLOWED_TRANSITIONS",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "is_valid_transition",
]
