"""Out-of-band deployment control: manual trigger, retry, cancel, cleanup."""

import asyncio
import shutil
from datetime import timedelta
from functools import lru_cache
from typing import Any
from uuid import UUID

from shipyard.config import settings
from shipyard.core.events import EventBroadcaster, get_event_broadcaster
from shipyard.core.exceptions import InvalidStateTransition
from shipyard.core.store import (
    DeploymentStore,
    ProjectRegistry,
    get_deployment_store,
    get_project_registry,
)
from shipyard.models.commit import CommitEvent
from shipyard.models.deployment import (
    Deployment,
    DeploymentStatus,
    DeploymentSummary,
    Environment,
    utc_now,
)
from shipyard.pipeline.executor import BuildExecutor, get_executor
from shipyard.utils.logging import get_logger

RETRY_MARKER = "--- Retrying deployment ---"


class DeploymentController:
    """Valid state changes that happen outside the normal pipeline flow."""

    def __init__(
        self,
        store: DeploymentStore | None = None,
        projects: ProjectRegistry | None = None,
        executor: BuildExecutor | None = None,
        events: EventBroadcaster | None = None,
    ):
        self.store = store or get_deployment_store()
        self.projects = projects or get_project_registry()
        self.executor = executor or get_executor()
        self.events = events or get_event_broadcaster()
        self.logger = get_logger("controller")

    async def trigger(
        self,
        project_id: UUID,
        commit: CommitEvent | None = None,
        environment: Environment = Environment.PRODUCTION,
    ) -> Deployment:
        """Queue a deployment for a project.

        Raises:
            ProjectNotFoundError: Unknown or deleted project.
        """
        project = await self.projects.require_active(project_id)

        deployment = Deployment(
            project_id=project.id,
            environment=environment,
            branch=project.repository.branch,
            commit_message="Manual deployment",
        )
        if commit is not None:
            deployment.branch = commit.branch
            deployment.commit_sha = commit.commit_sha
            deployment.commit_message = commit.commit_message or deployment.commit_message
            deployment.author = commit.author
            deployment.pull_request = commit.pull_request

        created = await self.store.create(deployment)
        self.logger.info(
            "controller.deployment_queued",
            deployment_id=str(created.id),
            project_id=str(project.id),
            environment=environment.value,
            branch=created.branch,
        )
        await self.events.publish_status(
            created.id, DeploymentStatus.QUEUED, "Deployment queued for processing"
        )
        return created

    async def retry(self, deployment_id: UUID) -> Deployment:
        """Re-queue a failed deployment, keeping its log history.

        Raises:
            DeploymentNotFoundError: Unknown deployment.
            InvalidStateTransition: The deployment is not in ``error``.
        """
        deployment = await self.store.require(deployment_id)
        if deployment.status != DeploymentStatus.ERROR:
            raise InvalidStateTransition(
                deployment_id, deployment.status.value, DeploymentStatus.QUEUED.value
            )

        updated = await self.store.transition(
            deployment_id,
            DeploymentStatus.ERROR,
            DeploymentStatus.QUEUED,
            error=None,
            build_log=[*deployment.build_log, RETRY_MARKER],
        )
        if updated is None:
            current = await self.store.require(deployment_id)
            raise InvalidStateTransition(
                deployment_id, current.status.value, DeploymentStatus.QUEUED.value
            )

        self.logger.info("controller.retry_queued", deployment_id=str(deployment_id))
        await self.events.publish_status(
            deployment_id, DeploymentStatus.QUEUED, "Deployment queued for retry"
        )
        return updated

    async def cancel(self, deployment_id: UUID) -> Deployment:
        """Cancel a queued or building deployment.

        A building pipeline is told to stop: its running subprocess is
        terminated and no further stage starts.

        Raises:
            DeploymentNotFoundError: Unknown deployment.
            InvalidStateTransition: The deployment already finished.
        """
        deployment = await self.store.require(deployment_id)

        updated = None
        # The scheduler may claim a queued record between the read and the write
        for expected in (DeploymentStatus.QUEUED, DeploymentStatus.BUILDING):
            if deployment.status != expected:
                continue
            updated = await self.store.transition(
                deployment_id, expected, DeploymentStatus.CANCELLED
            )
            if updated is not None:
                break
            deployment = await self.store.require(deployment_id)

        if updated is None:
            raise InvalidStateTransition(
                deployment_id, deployment.status.value, DeploymentStatus.CANCELLED.value
            )

        signalled = self.executor.request_cancel(deployment_id)
        self.logger.info(
            "controller.cancelled",
            deployment_id=str(deployment_id),
            pipeline_signalled=signalled,
        )
        await self.events.publish_status(
            deployment_id, DeploymentStatus.CANCELLED, "Deployment cancelled"
        )
        return updated

    async def cleanup_old(self, retention_days: int | None = None) -> int:
        """Delete finished deployments older than the retention window.

        Queued and building records are never touched. Returns the number of
        deleted records.
        """
        if retention_days is None:
            retention_days = settings.retention_days
        cutoff = utc_now() - timedelta(days=retention_days)

        removed = await self.store.delete_terminal_older_than(cutoff)
        for deployment_id in removed:
            site_dir = self.executor.site_dir_for(deployment_id)
            if site_dir.exists():
                await asyncio.to_thread(shutil.rmtree, site_dir, True)

        if removed:
            self.logger.info(
                "controller.cleanup",
                removed=len(removed),
                retention_days=retention_days,
            )
        return len(removed)

    async def queue_status(self, limit: int | None = None) -> dict[str, Any]:
        """Counts of active deployments plus the most recent summaries."""
        if limit is None:
            limit = settings.recent_deployments_limit

        counts = await self.store.count_by_status()
        recent = await self.store.list_recent(limit=limit)

        summaries = []
        for deployment in recent:
            summaries.append(await self.summarize(deployment))

        return {
            "queued": counts[DeploymentStatus.QUEUED],
            "building": counts[DeploymentStatus.BUILDING],
            "total": counts[DeploymentStatus.QUEUED] + counts[DeploymentStatus.BUILDING],
            "deployments": summaries,
        }

    async def summarize(self, deployment: Deployment) -> DeploymentSummary:
        """Build a summary, annotating instead of failing on a bad record."""
        try:
            project = await self.projects.get(deployment.project_id)
        except Exception as e:
            self.logger.warning(
                "controller.summary_failed",
                deployment_id=str(deployment.id),
                error=str(e),
            )
            return DeploymentSummary.from_deployment(
                deployment, annotation=f"Project lookup failed: {e}"
            )

        if project is None:
            return DeploymentSummary.from_deployment(
                deployment, annotation="Project not found"
            )
        return DeploymentSummary.from_deployment(
            deployment, project_name=project.name, project_slug=project.slug
        )


@lru_cache
def get_controller() -> DeploymentController:
    """Get the deployment controller singleton."""
    return DeploymentController()
