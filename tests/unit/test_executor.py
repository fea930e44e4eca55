"""Unit tests for the build executor."""

import asyncio
import time
from pathlib import Path
from uuid import uuid4

import pytest

from shipyard.core.events import STATUS_UPDATE
from shipyard.models.deployment import Deployment, DeploymentStatus
from shipyard.pipeline.stages import BuildStage


def make_dist(content_env: str) -> str:
    return (
        "import os, pathlib\n"
        "out = pathlib.Path('dist')\n"
        "out.mkdir()\n"
        f"(out / 'index.html').write_text(os.environ[{content_env!r}])\n"
        "print('built', flush=True)"
    )


class TestBuildExecutor:
    """Tests for BuildExecutor."""

    @pytest.mark.asyncio
    async def test_static_site_without_build(
        self, executor, building, static_repo: Path, tmp_path: Path
    ):
        deployment = await building()

        result = await executor.run(deployment.id)

        assert result.status == DeploymentStatus.READY
        assert result.url == "https://marketing-site.example.test"
        assert result.error is None
        assert result.completed_at is not None

        site = executor.site_dir_for(deployment.id)
        assert (site / "index.html").read_text() == "<h1>Hello</h1>"
        assert not (site / ".git").exists()
        assert [a.path for a in result.assets] == ["css/site.css", "index.html"]
        assert result.size == len("<h1>Hello</h1>") + len("body { color: red; }")
        assert result.size == sum(a.size for a in result.assets)

    @pytest.mark.asyncio
    async def test_log_follows_stage_order(self, executor, building, static_repo: Path):
        deployment = await building()

        result = await executor.run(deployment.id)

        log = result.build_log
        expected_order = [
            "Fetching repository...",
            "Installing dependencies...",
            "No package.json found, skipping dependency installation",
            "Running build command...",
            "No build command specified, skipping build step",
            "Verifying build output...",
            "No dist directory, publishing repository root as a static site",
            "Deploying to CDN...",
        ]
        positions = [log.index(line) for line in expected_order]
        assert positions == sorted(positions)
        assert log[-1].startswith("Deployment successful in ")

    @pytest.mark.asyncio
    async def test_build_with_environment(
        self, executor, building, project, static_repo: Path, python_cmd
    ):
        project.build_settings.command = python_cmd(make_dist("GREETING"))
        project.build_settings.environment = {"GREETING": "hello"}
        deployment = await building()

        result = await executor.run(deployment.id)

        assert result.status == DeploymentStatus.READY
        assert "built" in result.build_log
        assert "Found build output in dist" in result.build_log
        assert result.size == len("hello")
        assert [a.path for a in result.assets] == ["index.html"]

    @pytest.mark.asyncio
    async def test_install_runs_when_manifest_present(
        self, executor, building, static_repo: Path
    ):
        (static_repo / "package.json").write_text("{}")
        deployment = await building()

        result = await executor.run(deployment.id)

        assert result.status == DeploymentStatus.READY
        log = result.build_log
        assert log.index("installed") < log.index("Dependencies installed")

    @pytest.mark.asyncio
    async def test_failing_build(
        self, executor, building, project, static_repo: Path, python_cmd, store
    ):
        project.build_settings.command = python_cmd(
            "print('compiling', flush=True)\n"
            "print('failed to compile', flush=True)\n"
            "raise SystemExit(1)"
        )
        deployment = await building()

        result = await executor.run(deployment.id)

        assert result.status == DeploymentStatus.ERROR
        assert result.error.step == "build"
        assert result.error.message == "Build command failed with code 1"
        log = result.build_log
        assert log.index("compiling") < log.index("failed to compile")
        assert log[-1] == "Error in build step: Build command failed with code 1"
        assert "Verifying build output..." not in log

        # Frozen once terminal
        assert await executor.events.publish_log(deployment.id, "late") is False
        assert (await store.get(deployment.id)).build_log == log

    @pytest.mark.asyncio
    async def test_build_timeout(
        self, executor, building, project, static_repo: Path, python_cmd
    ):
        executor.stages[2] = BuildStage(timeout=0.5)
        project.build_settings.command = python_cmd("import time; time.sleep(30)")
        deployment = await building()
        started = time.monotonic()

        result = await executor.run(deployment.id)

        assert time.monotonic() - started < 10
        assert result.status == DeploymentStatus.ERROR
        assert result.error.step == "build"
        assert result.error.message == "build step timed out after 0.5s"

    @pytest.mark.asyncio
    async def test_fetch_failure(self, executor, building):
        deployment = await building()

        result = await executor.run(deployment.id)

        assert result.status == DeploymentStatus.ERROR
        assert result.error.step == "fetch"

    @pytest.mark.asyncio
    async def test_missing_project(self, executor, store):
        deployment = await store.create(Deployment(project_id=uuid4()))
        await store.transition(deployment.id, DeploymentStatus.QUEUED, DeploymentStatus.BUILDING)

        result = await executor.run(deployment.id)

        assert result.status == DeploymentStatus.ERROR
        assert result.error.step == "setup"

    @pytest.mark.asyncio
    async def test_skips_deployment_not_building(self, executor, queued, static_repo: Path):
        deployment = await queued()

        result = await executor.run(deployment.id)

        assert result.status == DeploymentStatus.QUEUED
        assert result.build_log == []

    @pytest.mark.asyncio
    async def test_cancel_mid_build(
        self,
        executor,
        controller,
        building,
        project,
        static_repo: Path,
        python_cmd,
        store,
        wait_until,
    ):
        project.build_settings.command = python_cmd(
            "import time\nprint('started', flush=True)\ntime.sleep(30)"
        )
        deployment = await building()
        task = asyncio.create_task(executor.run(deployment.id))

        async def build_started() -> bool:
            current = await store.get(deployment.id)
            return "started" in current.build_log

        await wait_until(build_started)
        started = time.monotonic()
        await controller.cancel(deployment.id)
        result = await asyncio.wait_for(task, timeout=10)

        assert time.monotonic() - started < 10
        assert result.status == DeploymentStatus.CANCELLED
        assert result.error is None
        assert not any(line.startswith("Deployment successful") for line in result.build_log)
        assert not executor.site_dir_for(deployment.id).exists()
        assert not executor.is_running(deployment.id)

    @pytest.mark.asyncio
    async def test_builds_of_one_project_do_not_overlap(
        self, executor, building, project, static_repo: Path, python_cmd, tmp_path: Path
    ):
        marker = tmp_path / "markers.txt"
        project.build_settings.command = python_cmd(
            "import time\n"
            f"open({str(marker)!r}, 'a').write('start\\n')\n"
            "time.sleep(0.3)\n"
            f"open({str(marker)!r}, 'a').write('end\\n')"
        )
        first = await building()
        second = await building()

        results = await asyncio.gather(executor.run(first.id), executor.run(second.id))

        assert [r.status for r in results] == [DeploymentStatus.READY] * 2
        assert marker.read_text().split() == ["start", "end", "start", "end"]
        assert executor.tracked_projects == 0

    @pytest.mark.asyncio
    async def test_project_lock_released_after_failure(
        self, executor, building, project, static_repo: Path, python_cmd
    ):
        project.build_settings.command = python_cmd("raise SystemExit(2)")
        deployment = await building()

        result = await executor.run(deployment.id)

        assert result.status == DeploymentStatus.ERROR
        assert executor.tracked_projects == 0

    @pytest.mark.asyncio
    async def test_build_printing_oversized_line(
        self, executor, building, project, static_repo: Path, python_cmd
    ):
        project.build_settings.command = python_cmd(
            "import sys\nsys.stdout.write('x' * 200000 + '\\n')\nprint('built')"
        )
        deployment = await building()

        result = await executor.run(deployment.id)

        assert result.status == DeploymentStatus.READY
        assert "built" in result.build_log

    @pytest.mark.asyncio
    async def test_status_events(self, executor, events, building, static_repo: Path):
        deployment = await building()
        queue = events.subscribe(deployment.id)

        await executor.run(deployment.id)

        received = []
        while not queue.empty():
            received.append(queue.get_nowait())
        statuses = [e.data for e in received if e.event_type == STATUS_UPDATE]
        assert statuses[0]["status"] == "building"
        assert statuses[-1]["status"] == "ready"
        assert statuses[-1]["url"] == "https://marketing-site.example.test"
        assert "build_time" in statuses[-1]
