"""Deployment Scheduler.

Turns queued deployment records into running pipelines. All work is derived
from store queries, so a restarted process simply picks up where the store
left off.
"""

import asyncio
from abc import ABC, abstractmethod
from functools import lru_cache
from uuid import UUID

from shipyard.config import settings
from shipyard.core.events import EventBroadcaster, get_event_broadcaster
from shipyard.core.store import DeploymentStore, get_deployment_store
from shipyard.models.deployment import Deployment, DeploymentError, DeploymentStatus
from shipyard.pipeline.executor import BuildExecutor, get_executor
from shipyard.utils.logging import get_logger


class WorkSource(ABC):
    """Supplies candidate deployments to the scheduler."""

    @abstractmethod
    async def next_batch(
        self, limit: int, exclude_projects: frozenset[UUID] = frozenset()
    ) -> list[Deployment]:
        """Return up to ``limit`` queued deployments, oldest first.

        Deployments of projects in ``exclude_projects`` must not count
        against ``limit``.
        """
        pass

    async def wait(self, timeout: float) -> None:
        """Block until more work may be available."""
        await asyncio.sleep(timeout)


class PollingWorkSource(WorkSource):
    """Polls the store for queued deployments on a fixed interval."""

    def __init__(self, store: DeploymentStore):
        self.store = store

    async def next_batch(
        self, limit: int, exclude_projects: frozenset[UUID] = frozenset()
    ) -> list[Deployment]:
        return await self.store.query_by_status(
            DeploymentStatus.QUEUED, limit=limit, exclude_projects=exclude_projects
        )


class DeploymentScheduler:
    """Claims queued deployments and dispatches them to the executor.

    At most ``max_concurrency`` pipelines run at once, and never two for the
    same project. A scan only looks for as many deployments as there are free
    slots, so nothing already in flight is dispatched twice.
    """

    def __init__(
        self,
        store: DeploymentStore | None = None,
        executor: BuildExecutor | None = None,
        events: EventBroadcaster | None = None,
        work_source: WorkSource | None = None,
        max_concurrency: int | None = None,
        interval: float | None = None,
    ):
        self.store = store or get_deployment_store()
        self.executor = executor or get_executor()
        self.events = events or get_event_broadcaster()
        self.work_source = work_source or PollingWorkSource(self.store)
        self.max_concurrency = max_concurrency or settings.scheduler_max_concurrency
        self.interval = interval if interval is not None else settings.scheduler_interval_seconds
        self.logger = get_logger("scheduler")

        self._in_flight: dict[UUID, asyncio.Task[None]] = {}
        self._in_flight_projects: dict[UUID, UUID] = {}
        self._loop_task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        """Start the scan loop."""
        if self.is_running:
            return
        self._stopping.clear()
        self._loop_task = asyncio.create_task(self._loop())
        self.logger.info(
            "scheduler.started",
            interval=self.interval,
            max_concurrency=self.max_concurrency,
        )

    async def stop(self, wait_for_builds: bool = False) -> None:
        """Stop the scan loop; in-flight pipelines keep running unless awaited."""
        self._stopping.set()
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if wait_for_builds:
            await self.wait_idle()
        self.logger.info("scheduler.stopped", in_flight=self.in_flight)

    async def wait_idle(self) -> None:
        """Wait until every dispatched pipeline has finished."""
        while self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:
                # Store outages are retried on the next tick
                self.logger.exception("scheduler.scan_failed")
            await self.work_source.wait(self.interval)

    async def run_once(self) -> list[UUID]:
        """Run one scan: claim and dispatch up to the free slot count.

        Projects that are busy are excluded from the query itself, so a long
        backlog for one project never hides another project's work. Returns
        the IDs dispatched during this scan.
        """
        free_slots = self.max_concurrency - len(self._in_flight)
        if free_slots <= 0:
            return []

        excluded = set(self._in_flight_projects.values())
        excluded |= await self.store.building_project_ids()
        dispatched: list[UUID] = []

        while len(dispatched) < free_slots:
            candidates = await self.work_source.next_batch(
                free_slots - len(dispatched), exclude_projects=frozenset(excluded)
            )
            progressed = False
            for deployment in candidates:
                if len(dispatched) >= free_slots:
                    break
                if deployment.id in self._in_flight or deployment.project_id in excluded:
                    continue
                # One claim attempt per project per scan, won or lost
                excluded.add(deployment.project_id)
                progressed = True

                claimed = await self.store.transition(
                    deployment.id, DeploymentStatus.QUEUED, DeploymentStatus.BUILDING
                )
                if claimed is None:
                    self.logger.info(
                        "scheduler.claim_lost", deployment_id=str(deployment.id)
                    )
                    continue

                self._dispatch(claimed)
                dispatched.append(claimed.id)
            if not progressed:
                break

        if dispatched:
            self.logger.info(
                "scheduler.dispatched",
                count=len(dispatched),
                in_flight=len(self._in_flight),
            )
        return dispatched

    def _dispatch(self, deployment: Deployment) -> None:
        self.logger.info(
            "scheduler.claimed",
            deployment_id=str(deployment.id),
            project_id=str(deployment.project_id),
        )
        task = asyncio.create_task(self._execute(deployment.id))
        self._in_flight[deployment.id] = task
        self._in_flight_projects[deployment.id] = deployment.project_id

    async def _execute(self, deployment_id: UUID) -> None:
        try:
            await self.executor.run(deployment_id)
        except Exception as e:
            self.logger.exception(
                "scheduler.executor_failed", deployment_id=str(deployment_id)
            )
            try:
                updated = await self.store.transition(
                    deployment_id,
                    DeploymentStatus.BUILDING,
                    DeploymentStatus.ERROR,
                    error=DeploymentError(message=str(e) or type(e).__name__, step="executor"),
                )
                if updated is not None:
                    await self.events.publish_status(
                        deployment_id, DeploymentStatus.ERROR, updated.error.message
                    )
            except Exception:
                self.logger.exception(
                    "scheduler.mark_failed_error", deployment_id=str(deployment_id)
                )
        finally:
            self._in_flight.pop(deployment_id, None)
            self._in_flight_projects.pop(deployment_id, None)


@lru_cache
def get_scheduler() -> DeploymentScheduler:
    """Get the deployment scheduler singleton."""
    return DeploymentScheduler()
