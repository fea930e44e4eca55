"""Unit tests for the deployment scheduler."""

import asyncio
from pathlib import Path
from uuid import UUID, uuid4

import pytest

from shipyard.core.exceptions import StoreError
from shipyard.core.scheduler import DeploymentScheduler, PollingWorkSource, WorkSource
from shipyard.core.store import DeploymentStore
from shipyard.models.deployment import Deployment, DeploymentStatus, utc_now


class GatedExecutor:
    """Executor stand-in whose pipelines finish when the gate opens."""

    def __init__(self, store: DeploymentStore):
        self.store = store
        self.gate = asyncio.Event()
        self.started: list[UUID] = []

    async def run(self, deployment_id: UUID) -> Deployment | None:
        self.started.append(deployment_id)
        await self.gate.wait()
        return await self.store.transition(
            deployment_id, DeploymentStatus.BUILDING, DeploymentStatus.READY
        )


class CrashingExecutor:
    async def run(self, deployment_id: UUID) -> Deployment | None:
        raise RuntimeError("executor exploded")


class FlakyWorkSource(PollingWorkSource):
    """Fails the first scan the way an unreachable store would."""

    def __init__(self, store: DeploymentStore):
        super().__init__(store)
        self.calls = 0

    async def next_batch(self, limit, exclude_projects=frozenset()):
        self.calls += 1
        if self.calls == 1:
            raise StoreError("store unavailable")
        return await super().next_batch(limit, exclude_projects)


class StaleWorkSource(WorkSource):
    """Hands out snapshots taken before another writer changed them."""

    def __init__(self, snapshot: list[Deployment]):
        self.snapshot = snapshot

    async def next_batch(self, limit, exclude_projects=frozenset()):
        return self.snapshot[:limit]


async def enqueue(store: DeploymentStore, project_id: UUID | None = None) -> Deployment:
    return await store.create(Deployment(project_id=project_id or uuid4(), created_at=utc_now()))


@pytest.fixture
def gated(store: DeploymentStore) -> GatedExecutor:
    return GatedExecutor(store)


def make_scheduler(store, events, executor, **kwargs) -> DeploymentScheduler:
    kwargs.setdefault("max_concurrency", 2)
    kwargs.setdefault("interval", 0.01)
    return DeploymentScheduler(store=store, executor=executor, events=events, **kwargs)


class TestDeploymentScheduler:
    """Tests for DeploymentScheduler."""

    @pytest.mark.asyncio
    async def test_dispatches_oldest_first(self, store, events, gated):
        scheduler = make_scheduler(store, events, gated, max_concurrency=1)
        first = await enqueue(store)
        await enqueue(store)

        dispatched = await scheduler.run_once()

        assert dispatched == [first.id]
        assert (await store.get(first.id)).status == DeploymentStatus.BUILDING
        gated.gate.set()
        await scheduler.wait_idle()

    @pytest.mark.asyncio
    async def test_respects_max_concurrency(self, store, events, gated):
        scheduler = make_scheduler(store, events, gated, max_concurrency=2)
        for _ in range(5):
            await enqueue(store)

        assert len(await scheduler.run_once()) == 2
        assert await scheduler.run_once() == []
        assert scheduler.in_flight == 2

        counts = await store.count_by_status()
        assert counts[DeploymentStatus.BUILDING] == 2
        assert counts[DeploymentStatus.QUEUED] == 3

        gated.gate.set()
        await scheduler.wait_idle()
        assert len(await scheduler.run_once()) == 2
        await scheduler.wait_idle()

    @pytest.mark.asyncio
    async def test_one_build_per_project(self, store, events, gated):
        scheduler = make_scheduler(store, events, gated, max_concurrency=5)
        project_id = uuid4()
        first = await enqueue(store, project_id)
        second = await enqueue(store, project_id)
        other = await enqueue(store)

        dispatched = await scheduler.run_once()

        assert dispatched == [first.id, other.id]
        assert (await store.get(second.id)).status == DeploymentStatus.QUEUED
        assert await scheduler.run_once() == []

        gated.gate.set()
        await scheduler.wait_idle()
        assert await scheduler.run_once() == [second.id]
        await scheduler.wait_idle()

    @pytest.mark.asyncio
    async def test_backlog_does_not_starve_other_projects(self, store, events, gated):
        scheduler = make_scheduler(store, events, gated, max_concurrency=5)
        busy = uuid4()
        backlog = [await enqueue(store, busy) for _ in range(10)]
        other = await enqueue(store)

        dispatched = await scheduler.run_once()

        assert dispatched == [backlog[0].id, other.id]
        assert scheduler.in_flight == 2
        gated.gate.set()
        await scheduler.wait_idle()

    @pytest.mark.asyncio
    async def test_skips_project_already_building(self, store, events, gated):
        scheduler = make_scheduler(store, events, gated)
        project_id = uuid4()
        running = await enqueue(store, project_id)
        await store.transition(running.id, DeploymentStatus.QUEUED, DeploymentStatus.BUILDING)
        await enqueue(store, project_id)

        assert await scheduler.run_once() == []

    @pytest.mark.asyncio
    async def test_lost_claim_is_skipped(self, store, events, gated):
        deployment = await enqueue(store)
        snapshot = [await store.get(deployment.id)]
        await store.transition(deployment.id, DeploymentStatus.QUEUED, DeploymentStatus.CANCELLED)
        scheduler = make_scheduler(
            store, events, gated, work_source=StaleWorkSource(snapshot)
        )

        assert await scheduler.run_once() == []
        assert gated.started == []
        assert (await store.get(deployment.id)).status == DeploymentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_executor_crash_marks_error(self, store, events):
        scheduler = make_scheduler(store, events, CrashingExecutor())
        deployment = await enqueue(store)

        await scheduler.run_once()
        await scheduler.wait_idle()

        result = await store.get(deployment.id)
        assert result.status == DeploymentStatus.ERROR
        assert result.error.step == "executor"
        assert result.error.message == "executor exploded"
        assert scheduler.in_flight == 0

    @pytest.mark.asyncio
    async def test_loop_survives_store_errors(self, store, events, gated, wait_until):
        source = FlakyWorkSource(store)
        scheduler = make_scheduler(store, events, gated, work_source=source)
        deployment = await enqueue(store)
        gated.gate.set()

        async def finished() -> bool:
            return (await store.get(deployment.id)).status == DeploymentStatus.READY

        await scheduler.start()
        try:
            await wait_until(finished)
        finally:
            await scheduler.stop(wait_for_builds=True)

        assert source.calls >= 2
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_runs_real_pipeline(
        self, store, events, executor, queued, static_repo: Path
    ):
        scheduler = make_scheduler(store, events, executor)
        deployment = await queued()

        assert await scheduler.run_once() == [deployment.id]
        await scheduler.wait_idle()

        result = await store.get(deployment.id)
        assert result.status == DeploymentStatus.READY
        assert result.url == "https://marketing-site.example.test"
