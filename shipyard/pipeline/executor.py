"""Build Executor.

Runs the staged build-and-publish pipeline for a single deployment that the
scheduler has already claimed (status ``building``).
"""

import asyncio
import time
from contextlib import asynccontextmanager
from functools import lru_cache
from pathlib import Path
from typing import AsyncIterator
from uuid import UUID

from shipyard.config import settings
from shipyard.core.events import EventBroadcaster, get_event_broadcaster
from shipyard.core.exceptions import StageCancelled, StageFailure
from shipyard.core.store import (
    DeploymentStore,
    ProjectRegistry,
    get_deployment_store,
    get_project_registry,
)
from shipyard.models.deployment import Deployment, DeploymentError, DeploymentStatus
from shipyard.pipeline.stages import (
    CancellationToken,
    Stage,
    StageContext,
    default_stages,
)
from shipyard.utils.logging import deployment_context, get_logger


class BuildExecutor:
    """Executes the build pipeline for deployments.

    Pipeline stages (in order):
    1. fetch - shallow clone into the per-project working directory
    2. install - dependency install when a manifest exists
    3. build - the project's build command, when configured
    4. verify - locate the publishable output
    5. publish - copy output to the per-deployment serving location

    Failures never escape ``run``; they end the deployment in ``error``.
    """

    def __init__(
        self,
        store: DeploymentStore | None = None,
        projects: ProjectRegistry | None = None,
        events: EventBroadcaster | None = None,
        stages: list[Stage] | None = None,
        repositories_dir: Path | str | None = None,
        sites_dir: Path | str | None = None,
        cancel_grace: float | None = None,
    ):
        self.store = store or get_deployment_store()
        self.projects = projects or get_project_registry()
        self.events = events or get_event_broadcaster()
        self.stages = stages if stages is not None else default_stages()
        self.repositories_dir = Path(repositories_dir or settings.repositories_dir)
        self.sites_dir = Path(sites_dir or settings.deployed_sites_dir)
        self.cancel_grace = (
            cancel_grace if cancel_grace is not None else settings.cancel_grace_seconds
        )
        self.logger = get_logger("executor")

        self._project_locks: dict[UUID, asyncio.Lock] = {}
        self._lock_users: dict[UUID, int] = {}
        self._tokens: dict[UUID, CancellationToken] = {}

    def work_dir_for(self, project_id: UUID) -> Path:
        return self.repositories_dir / str(project_id)

    def site_dir_for(self, deployment_id: UUID) -> Path:
        return self.sites_dir / str(deployment_id)

    def is_running(self, deployment_id: UUID) -> bool:
        return deployment_id in self._tokens

    @property
    def tracked_projects(self) -> int:
        """Number of projects currently holding or waiting on a lock."""
        return len(self._project_locks)

    @asynccontextmanager
    async def _project_lock(self, project_id: UUID) -> AsyncIterator[None]:
        """Serialize builds of one project; the lock is dropped when unused."""
        lock = self._project_locks.setdefault(project_id, asyncio.Lock())
        self._lock_users[project_id] = self._lock_users.get(project_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[project_id] -= 1
            if not self._lock_users[project_id]:
                del self._lock_users[project_id]
                del self._project_locks[project_id]

    def request_cancel(self, deployment_id: UUID) -> bool:
        """Signal a running pipeline to stop.

        The current subprocess, if any, is terminated; the pipeline exits at
        the next stage boundary. Returns ``False`` when nothing is running.
        """
        token = self._tokens.get(deployment_id)
        if token is None:
            return False
        token.cancel()
        return True

    async def run(self, deployment_id: UUID) -> Deployment | None:
        """Run the pipeline for a claimed deployment.

        Returns the final record, or ``None`` if it was removed meanwhile.
        """
        if deployment_id in self._tokens:
            self.logger.warning(
                "executor.already_running", deployment_id=str(deployment_id)
            )
            return await self.store.get(deployment_id)

        token = CancellationToken()
        self._tokens[deployment_id] = token
        try:
            with deployment_context(deployment_id):
                return await self._run(deployment_id, token)
        finally:
            self._tokens.pop(deployment_id, None)

    async def _run(
        self, deployment_id: UUID, token: CancellationToken
    ) -> Deployment | None:
        deployment = await self.store.get(deployment_id)
        if deployment is None:
            return None
        if deployment.status != DeploymentStatus.BUILDING:
            self.logger.info("executor.skipped", status=deployment.status.value)
            return deployment

        started = time.monotonic()
        await self.events.publish_status(
            deployment_id, DeploymentStatus.BUILDING, "Starting build process"
        )

        project = await self.projects.get(deployment.project_id)
        if project is None:
            return await self._fail(
                deployment_id, "setup", f"Project not found: {deployment.project_id}"
            )

        self.logger.info(
            "executor.pipeline.started",
            project_id=str(project.id),
            branch=deployment.branch,
        )

        async def emit(message: str) -> bool:
            return await self.events.publish_log(deployment_id, message)

        context = StageContext(
            deployment=deployment,
            project=project,
            work_dir=self.work_dir_for(project.id),
            site_dir=self.site_dir_for(deployment_id),
            emit=emit,
            cancel_grace=self.cancel_grace,
        )

        # The working directory is shared by every build of the project
        async with self._project_lock(project.id):
            for stage in self.stages:
                if await self._should_stop(deployment_id, token):
                    return await self._stopped(deployment_id, stage.name)

                await emit(stage.start_message)
                stage_started = time.monotonic()
                try:
                    message = await stage.run(context, token)
                except StageCancelled:
                    return await self._stopped(deployment_id, stage.name)
                except StageFailure as e:
                    return await self._fail(deployment_id, e.step, e.message)
                except Exception as e:
                    self.logger.exception("executor.stage.crashed", step=stage.name)
                    return await self._fail(deployment_id, stage.name, str(e) or type(e).__name__)

                await emit(message)
                self.logger.info(
                    "executor.stage.completed",
                    step=stage.name,
                    duration_ms=int((time.monotonic() - stage_started) * 1000),
                )

            if await self._should_stop(deployment_id, token):
                return await self._stopped(deployment_id, "publish")

            build_time = round(time.monotonic() - started)
            await emit(f"Deployment successful in {build_time}s")
            updated = await self.store.transition(
                deployment_id,
                DeploymentStatus.BUILDING,
                DeploymentStatus.READY,
                build_time=build_time,
                size=context.size,
                url=context.url,
                assets=context.assets,
            )

        if updated is None:
            return await self._stopped(deployment_id, "publish")

        self.logger.info(
            "executor.pipeline.completed",
            build_time=build_time,
            size=context.size,
            url=context.url,
        )
        await self.events.publish_status(
            deployment_id,
            DeploymentStatus.READY,
            f"Deployment successful in {build_time}s",
            url=context.url,
            build_time=build_time,
            size=context.size,
        )
        return updated

    async def _should_stop(self, deployment_id: UUID, token: CancellationToken) -> bool:
        """Stage-boundary check: cancelled locally or no longer building."""
        if token.cancelled:
            return True
        current = await self.store.get(deployment_id)
        return current is None or current.status != DeploymentStatus.BUILDING

    async def _stopped(self, deployment_id: UUID, step: str) -> Deployment | None:
        self.logger.info("executor.pipeline.stopped", step=step)
        return await self.store.get(deployment_id)

    async def _fail(self, deployment_id: UUID, step: str, message: str) -> Deployment | None:
        """Record a stage failure and end the deployment in ``error``."""
        self.logger.error("executor.stage.failed", step=step, error=message)
        await self.events.publish_log(deployment_id, f"Error in {step} step: {message}")
        updated = await self.store.transition(
            deployment_id,
            DeploymentStatus.BUILDING,
            DeploymentStatus.ERROR,
            error=DeploymentError(message=message, step=step),
        )
        if updated is None:
            # Cancelled concurrently; the cancellation stands
            return await self.store.get(deployment_id)

        await self.events.publish_status(
            deployment_id, DeploymentStatus.ERROR, message, step=step
        )
        return updated


@lru_cache
def get_executor() -> BuildExecutor:
    """Get the build executor singleton."""
    return BuildExecutor()
