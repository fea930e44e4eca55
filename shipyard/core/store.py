"""Deployment record store and project registry.

Both keep their records in process memory behind an ``asyncio.Lock`` so that
every read-modify-write is atomic with respect to other coroutines. A durable
backend only has to provide the same methods.
"""

import asyncio
from datetime import datetime
from functools import lru_cache
from typing import Any, Collection, Iterable
from uuid import UUID

from shipyard.core.exceptions import (
    DeploymentNotFoundError,
    InvalidStateTransition,
    ProjectNotFoundError,
)
from shipyard.models.deployment import (
    TERMINAL_STATUSES,
    Deployment,
    DeploymentStatus,
    is_valid_transition,
    utc_now,
)
from shipyard.models.project import Project, ProjectStatus


class DeploymentStore:
    """Transactional storage for deployment records."""

    def __init__(self):
        self._deployments: dict[UUID, Deployment] = {}
        self._lock = asyncio.Lock()

    async def create(self, deployment: Deployment) -> Deployment:
        """Persist a new deployment."""
        async with self._lock:
            self._deployments[deployment.id] = deployment.model_copy(deep=True)
            return deployment.model_copy(deep=True)

    async def get(self, deployment_id: UUID) -> Deployment | None:
        """Get a deployment by ID."""
        async with self._lock:
            deployment = self._deployments.get(deployment_id)
            return deployment.model_copy(deep=True) if deployment else None

    async def require(self, deployment_id: UUID) -> Deployment:
        """Get a deployment by ID or raise DeploymentNotFoundError."""
        deployment = await self.get(deployment_id)
        if deployment is None:
            raise DeploymentNotFoundError(deployment_id)
        return deployment

    async def transition(
        self,
        deployment_id: UUID,
        expected: DeploymentStatus,
        target: DeploymentStatus,
        **changes: Any,
    ) -> Deployment | None:
        """Compare-and-swap the status of a deployment.

        Returns the updated record, or ``None`` when the stored status is no
        longer ``expected`` (another writer won the race).

        Raises:
            DeploymentNotFoundError: The deployment does not exist.
            InvalidStateTransition: ``expected -> target`` is not allowed.
        """
        if not is_valid_transition(expected, target):
            raise InvalidStateTransition(deployment_id, expected.value, target.value)

        async with self._lock:
            current = self._deployments.get(deployment_id)
            if current is None:
                raise DeploymentNotFoundError(deployment_id)
            if current.status != expected:
                return None

            now = utc_now()
            updated = current.model_copy(
                update={**changes, "status": target, "updated_at": now}, deep=True
            )
            if target == DeploymentStatus.BUILDING:
                updated.started_at = now
            elif target in TERMINAL_STATUSES:
                updated.completed_at = now
            elif target == DeploymentStatus.QUEUED:
                updated.started_at = None
                updated.completed_at = None

            self._deployments[deployment_id] = updated
            return updated.model_copy(deep=True)

    async def append_log(self, deployment_id: UUID, line: str) -> bool:
        """Append a line to the build log of a building deployment.

        The log is frozen outside the building state, so the call is a no-op
        returning ``False`` once the deployment left it.
        """
        async with self._lock:
            current = self._deployments.get(deployment_id)
            if current is None or current.status != DeploymentStatus.BUILDING:
                return False
            current.build_log.append(line)
            current.updated_at = utc_now()
            return True

    async def query_by_status(
        self,
        statuses: DeploymentStatus | Iterable[DeploymentStatus],
        limit: int | None = None,
        exclude_projects: Collection[UUID] = (),
    ) -> list[Deployment]:
        """List deployments in the given statuses, oldest first.

        Deployments of projects in ``exclude_projects`` are left out before
        ``limit`` applies.
        """
        if isinstance(statuses, DeploymentStatus):
            statuses = {statuses}
        wanted = set(statuses)
        excluded = set(exclude_projects)

        async with self._lock:
            matches = [
                d
                for d in self._deployments.values()
                if d.status in wanted and d.project_id not in excluded
            ]
            # Stable sort keeps insertion order for equal timestamps
            matches.sort(key=lambda d: d.created_at)
            if limit is not None:
                matches = matches[:limit]
            return [d.model_copy(deep=True) for d in matches]

    async def list_recent(
        self,
        project_id: UUID | None = None,
        limit: int = 10,
    ) -> list[Deployment]:
        """List deployments newest first, optionally for one project."""
        async with self._lock:
            deployments = list(self._deployments.values())
            if project_id is not None:
                deployments = [d for d in deployments if d.project_id == project_id]
            deployments.reverse()
            deployments.sort(key=lambda d: d.created_at, reverse=True)
            return [d.model_copy(deep=True) for d in deployments[:limit]]

    async def count_by_status(self) -> dict[DeploymentStatus, int]:
        async with self._lock:
            counts = {status: 0 for status in DeploymentStatus}
            for deployment in self._deployments.values():
                counts[deployment.status] += 1
            return counts

    async def building_project_ids(self) -> set[UUID]:
        """Projects with at least one deployment building."""
        async with self._lock:
            return {
                d.project_id
                for d in self._deployments.values()
                if d.status == DeploymentStatus.BUILDING
            }

    async def delete_terminal_older_than(self, cutoff: datetime) -> list[UUID]:
        """Delete terminal deployments created before ``cutoff``.

        Returns the IDs of the removed records.
        """
        async with self._lock:
            expired = [
                deployment_id
                for deployment_id, deployment in self._deployments.items()
                if deployment.status in TERMINAL_STATUSES
                and deployment.created_at < cutoff
            ]
            for deployment_id in expired:
                del self._deployments[deployment_id]
            return expired

    def clear(self) -> None:
        self._deployments.clear()


class ProjectRegistry:
    """Read-mostly view of the projects deployments are built for."""

    def __init__(self):
        self._projects: dict[UUID, Project] = {}

    async def add(self, project: Project) -> Project:
        self._projects[project.id] = project
        return project

    async def get(self, project_id: UUID) -> Project | None:
        """Get a project by ID, including deleted ones."""
        return self._projects.get(project_id)

    async def require_active(self, project_id: UUID) -> Project:
        """Get an active project or raise ProjectNotFoundError."""
        project = self._projects.get(project_id)
        if project is None or not project.is_active:
            raise ProjectNotFoundError(project_id)
        return project

    async def delete(self, project_id: UUID) -> bool:
        """Soft-delete a project. Existing deployments keep their reference."""
        project = self._projects.get(project_id)
        if project is None:
            return False
        project.status = ProjectStatus.DELETED
        return True

    async def find_by_repository(
        self, repository_url: str, branch: str | None = None
    ) -> list[Project]:
        """Find active projects by exact repository URL and optional branch."""
        return [
            project
            for project in self._projects.values()
            if project.is_active
            and project.repository.url == repository_url
            and (branch is None or project.repository.branch == branch)
        ]

    def clear(self) -> None:
        self._projects.clear()


@lru_cache
def get_deployment_store() -> DeploymentStore:
    """Get the deployment store singleton."""
    return DeploymentStore()


@lru_cache
def get_project_registry() -> ProjectRegistry:
    """Get the project registry singleton."""
    return ProjectRegistry()
