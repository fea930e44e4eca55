"""Pytest configuration and fixtures."""

import asyncio
import shlex
import shutil
import sys
from pathlib import Path
from typing import Awaitable, Callable

import pytest
from httpx import ASGITransport, AsyncClient

from shipyard.core.controller import DeploymentController, get_controller
from shipyard.core.events import EventBroadcaster, get_event_broadcaster
from shipyard.core.exceptions import StageFailure
from shipyard.core.scheduler import get_scheduler
from shipyard.core.store import (
    DeploymentStore,
    ProjectRegistry,
    get_deployment_store,
    get_project_registry,
)
from shipyard.main import app
from shipyard.models.deployment import Deployment, DeploymentStatus
from shipyard.models.project import BuildSettings, Project, Repository
from shipyard.pipeline.executor import BuildExecutor, get_executor
from shipyard.pipeline.stages import (
    BuildStage,
    CancellationToken,
    FetchStage,
    InstallStage,
    PublishStage,
    StageContext,
    VerifyStage,
)
from shipyard.webhooks.gateway import get_gateway

REPO_URL = "https://github.com/acme/r1.git"

SINGLETONS = (
    get_deployment_store,
    get_project_registry,
    get_event_broadcaster,
    get_executor,
    get_scheduler,
    get_controller,
    get_gateway,
)


def python_command(code: str) -> str:
    """A shell-style command line running ``code`` with this interpreter."""
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


class LocalFetchStage(FetchStage):
    """Fetch stage that copies a prepared directory instead of cloning."""

    def __init__(self, sources: dict[str, Path]):
        super().__init__(timeout=10)
        self.sources = sources

    async def run(self, context: StageContext, token: CancellationToken) -> str:
        source = self.sources.get(context.project.repository.url)
        if source is None:
            raise StageFailure(self.name, "Failed to clone repository: not found")
        if context.work_dir.exists():
            shutil.rmtree(context.work_dir)
        shutil.copytree(source, context.work_dir)
        return f"Fetched {context.project.repository.url} ({context.deployment.branch})"


@pytest.fixture
def store() -> DeploymentStore:
    """Create a fresh deployment store."""
    return DeploymentStore()


@pytest.fixture
def projects() -> ProjectRegistry:
    """Create a fresh project registry."""
    return ProjectRegistry()


@pytest.fixture
def events(store: DeploymentStore) -> EventBroadcaster:
    return EventBroadcaster(store=store)


@pytest.fixture
async def project(projects: ProjectRegistry) -> Project:
    """A production project watching ``main`` of the sample repository."""
    return await projects.add(
        Project(
            name="Marketing Site",
            slug="marketing-site",
            repository=Repository(url=REPO_URL, branch="main"),
            build_settings=BuildSettings(command=None, directory="dist"),
        )
    )


@pytest.fixture
def repo_sources() -> dict[str, Path]:
    """Repository URL -> local directory served by the fetch stage."""
    return {}


@pytest.fixture
def static_repo(tmp_path: Path, repo_sources: dict[str, Path]) -> Path:
    """A plain static site: root index.html, no manifest, no build."""
    source = tmp_path / "source"
    (source / "css").mkdir(parents=True)
    (source / "index.html").write_text("<h1>Hello</h1>")
    (source / "css" / "site.css").write_text("body { color: red; }")
    (source / ".git").mkdir()
    (source / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    repo_sources[REPO_URL] = source
    return source


@pytest.fixture
def executor(
    store: DeploymentStore,
    projects: ProjectRegistry,
    events: EventBroadcaster,
    tmp_path: Path,
    repo_sources: dict[str, Path],
) -> BuildExecutor:
    """Executor with a local fetch stage and fast timeouts."""
    return BuildExecutor(
        store=store,
        projects=projects,
        events=events,
        stages=[
            LocalFetchStage(repo_sources),
            InstallStage(command=python_command("print('installed')"), timeout=10),
            BuildStage(timeout=10),
            VerifyStage(),
            PublishStage(public_domain="example.test"),
        ],
        repositories_dir=tmp_path / "repositories",
        sites_dir=tmp_path / "sites",
        cancel_grace=1,
    )


@pytest.fixture
def controller(
    store: DeploymentStore,
    projects: ProjectRegistry,
    executor: BuildExecutor,
    events: EventBroadcaster,
) -> DeploymentController:
    return DeploymentController(
        store=store, projects=projects, executor=executor, events=events
    )


@pytest.fixture
def queued(store: DeploymentStore, project: Project) -> Callable[..., Awaitable[Deployment]]:
    """Factory creating queued deployments for the sample project."""

    async def factory(**overrides) -> Deployment:
        data = {
            "project_id": project.id,
            "commit_sha": "abc123",
            "commit_message": "fix",
            "branch": "main",
            **overrides,
        }
        return await store.create(Deployment(**data))

    return factory


@pytest.fixture
def building(
    store: DeploymentStore, queued: Callable[..., Awaitable[Deployment]]
) -> Callable[..., Awaitable[Deployment]]:
    """Factory creating deployments already claimed for building."""

    async def factory(**overrides) -> Deployment:
        deployment = await queued(**overrides)
        return await store.transition(
            deployment.id, DeploymentStatus.QUEUED, DeploymentStatus.BUILDING
        )

    return factory


@pytest.fixture
def python_cmd() -> Callable[[str], str]:
    """Expose ``python_command`` to tests."""
    return python_command


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll an async predicate until it holds."""

    async def waiter(predicate: Callable[[], Awaitable[bool]], timeout: float = 5.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not await predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.02)

    return waiter


@pytest.fixture
async def client() -> AsyncClient:
    """Create an async test client backed by fresh singletons."""
    for getter in SINGLETONS:
        getter.cache_clear()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    for getter in SINGLETONS:
        getter.cache_clear()
