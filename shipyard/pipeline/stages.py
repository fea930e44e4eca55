"""Build pipeline stages.

Every stage follows the same contract: ``run(context, token)`` either returns
a completion message or raises ``StageFailure``. Subprocess-backed stages
share ``run_command``, which streams output lines into the build log and
enforces the stage timeout and cancellation.
"""

import asyncio
import mimetypes
import os
import re
import shlex
import shutil
import signal
from abc import ABC, abstractmethod
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from shipyard.config import settings
from shipyard.core.exceptions import StageCancelled, StageFailure, StageTimeoutError
from shipyard.models.deployment import Asset, Deployment
from shipyard.models.project import Project
from shipyard.utils.logging import get_logger

logger = get_logger(__name__)

LogEmitter = Callable[[str], Awaitable[object]]

IGNORED_PUBLISH_PATTERNS = (".git",)

OUTPUT_CHUNK_BYTES = 64 * 1024
MAX_LINE_BYTES = 16 * 1024
LINE_BREAK = re.compile(rb"\r\n|\r|\n")


class CancellationToken:
    """Cooperative cancellation flag shared by a pipeline and its controller."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class StageContext:
    """State handed from stage to stage for one deployment."""

    deployment: Deployment
    project: Project
    work_dir: Path
    site_dir: Path
    emit: LogEmitter
    cancel_grace: float = 5.0

    # Filled in by later stages
    output_dir: Path | None = None
    assets: list[Asset] = field(default_factory=list)
    size: int = 0
    url: str | None = None

    @property
    def build_env(self) -> dict[str, str]:
        """Process environment with the project's variables merged on top."""
        return {**os.environ, **self.project.build_settings.environment}


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    # The command leads its own session, so its pid is also the group id
    with suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, sig)


async def _terminate(process: asyncio.subprocess.Process, grace: float) -> None:
    """Stop a command and everything it spawned.

    SIGTERM goes to the whole process group first, SIGKILL once the grace
    period ends. Children left behind by a command that already exited are
    killed as well, so nothing keeps writing into the working directory.
    """
    if process.returncode is None:
        _signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            _signal_group(process, signal.SIGKILL)
            await process.wait()
    _signal_group(process, signal.SIGKILL)


async def _emit_line(emit: LogEmitter, raw: bytes) -> None:
    line = raw.decode("utf-8", errors="replace").rstrip()
    if line:
        await emit(line)


async def _pump_output(process: asyncio.subprocess.Process, emit: LogEmitter) -> int:
    """Forward output line by line until the stream closes.

    Carriage returns end a line too, and a line longer than
    ``MAX_LINE_BYTES`` is emitted in pieces of that size.
    """
    assert process.stdout is not None
    buffer = b""
    while True:
        chunk = await process.stdout.read(OUTPUT_CHUNK_BYTES)
        if not chunk:
            break
        *lines, buffer = LINE_BREAK.split(buffer + chunk)
        for raw in lines:
            await _emit_line(emit, raw)
        while len(buffer) > MAX_LINE_BYTES:
            await _emit_line(emit, buffer[:MAX_LINE_BYTES])
            buffer = buffer[MAX_LINE_BYTES:]
    await _emit_line(emit, buffer)
    return await process.wait()


async def run_command(
    args: list[str],
    *,
    step: str,
    cwd: Path | None,
    emit: LogEmitter,
    token: CancellationToken,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
    grace: float = 5.0,
) -> int:
    """Run a subprocess, streaming merged stdout/stderr into ``emit``.

    Returns the exit code. The command runs in its own process group, which
    is torn down before this returns or raises.

    Raises:
        StageFailure: The executable could not be started.
        StageTimeoutError: The command ran longer than ``timeout``.
        StageCancelled: ``token`` was cancelled while the command ran.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
    except (FileNotFoundError, PermissionError) as e:
        raise StageFailure(step, f"Could not start '{args[0]}': {e}") from e

    pump_task = asyncio.ensure_future(_pump_output(process, emit))
    cancel_task = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {pump_task, cancel_task},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if pump_task in done:
            return pump_task.result()

        logger.info(
            "stage.command.terminating",
            step=step,
            command=args[0],
            reason="cancelled" if token.cancelled else "timeout",
        )
    finally:
        cancel_task.cancel()
        await _terminate(process, grace)
        if not pump_task.done():
            pump_task.cancel()
            with suppress(asyncio.CancelledError):
                await pump_task

    if token.cancelled:
        raise StageCancelled(step)
    raise StageTimeoutError(step, timeout or 0)


class Stage(ABC):
    """One discrete, ordered step of the build pipeline."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Step identifier reported in ``error.step``."""
        pass

    @property
    @abstractmethod
    def start_message(self) -> str:
        """Log line emitted when the stage begins."""
        pass

    @abstractmethod
    async def run(self, context: StageContext, token: CancellationToken) -> str:
        """Execute the stage and return its completion log line."""
        pass


class FetchStage(Stage):
    """Shallow-clone the repository into the project's working directory."""

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout or settings.fetch_timeout_seconds

    @property
    def name(self) -> str:
        return "fetch"

    @property
    def start_message(self) -> str:
        return "Fetching repository..."

    async def run(self, context: StageContext, token: CancellationToken) -> str:
        deployment = context.deployment
        repository_url = context.project.repository.url

        # No history is kept between builds
        if context.work_dir.exists():
            await asyncio.to_thread(shutil.rmtree, context.work_dir)
        context.work_dir.parent.mkdir(parents=True, exist_ok=True)

        args = [
            "git",
            "clone",
            "--depth",
            "1",
            "--branch",
            deployment.branch,
            "--",
            repository_url,
            str(context.work_dir),
        ]
        code = await run_command(
            args,
            step=self.name,
            cwd=None,
            emit=context.emit,
            token=token,
            timeout=self.timeout,
            env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            grace=context.cancel_grace,
        )
        if code != 0:
            raise StageFailure(
                self.name,
                f"Failed to clone repository: git exited with code {code}",
                {"exit_code": code},
            )
        return f"Fetched {repository_url} ({deployment.branch})"


class InstallStage(Stage):
    """Install dependencies when a manifest is present."""

    def __init__(
        self,
        command: str | None = None,
        manifest: str | None = None,
        timeout: float | None = None,
    ):
        self.command = command or settings.install_command
        self.manifest = manifest or settings.dependency_manifest
        self.timeout = timeout or settings.install_timeout_seconds

    @property
    def name(self) -> str:
        return "install"

    @property
    def start_message(self) -> str:
        return "Installing dependencies..."

    async def run(self, context: StageContext, token: CancellationToken) -> str:
        if not (context.work_dir / self.manifest).exists():
            return f"No {self.manifest} found, skipping dependency installation"

        code = await run_command(
            shlex.split(self.command),
            step=self.name,
            cwd=context.work_dir,
            emit=context.emit,
            token=token,
            timeout=self.timeout,
            env=context.build_env,
            grace=context.cancel_grace,
        )
        if code != 0:
            raise StageFailure(
                self.name,
                f"{self.command} failed with code {code}",
                {"exit_code": code},
            )
        return "Dependencies installed"


class BuildStage(Stage):
    """Run the project's build command, if it has one."""

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout or settings.build_timeout_seconds

    @property
    def name(self) -> str:
        return "build"

    @property
    def start_message(self) -> str:
        return "Running build command..."

    async def run(self, context: StageContext, token: CancellationToken) -> str:
        command = context.project.build_settings.command
        if not command or not command.strip():
            return "No build command specified, skipping build step"

        try:
            args = shlex.split(command)
        except ValueError as e:
            raise StageFailure(self.name, f"Invalid build command: {e}") from e

        code = await run_command(
            args,
            step=self.name,
            cwd=context.work_dir,
            emit=context.emit,
            token=token,
            timeout=self.timeout,
            env=context.build_env,
            grace=context.cancel_grace,
        )
        if code != 0:
            raise StageFailure(
                self.name,
                f"Build command failed with code {code}",
                {"exit_code": code},
            )
        return "Build completed"


class VerifyStage(Stage):
    """Locate the directory that will be published."""

    index_file = "index.html"

    @property
    def name(self) -> str:
        return "verify"

    @property
    def start_message(self) -> str:
        return "Verifying build output..."

    async def run(self, context: StageContext, token: CancellationToken) -> str:
        directory = context.project.build_settings.directory
        output_dir = (context.work_dir / directory).resolve()

        if not output_dir.is_relative_to(context.work_dir.resolve()):
            raise StageFailure(
                self.name, f"Output directory escapes the repository: {directory}"
            )

        if output_dir.is_dir():
            context.output_dir = output_dir
            return f"Found build output in {directory}"

        if (context.work_dir / self.index_file).is_file():
            context.output_dir = context.work_dir
            return f"No {directory} directory, publishing repository root as a static site"

        raise StageFailure(self.name, "no publishable output")


def _copy_tree(source: Path, destination: Path) -> list[Asset]:
    """Copy ``source`` into ``destination`` and describe every copied file."""
    if destination.exists():
        shutil.rmtree(destination)
    shutil.copytree(
        source,
        destination,
        ignore=shutil.ignore_patterns(*IGNORED_PUBLISH_PATTERNS),
    )

    assets = []
    for path in sorted(p for p in destination.rglob("*") if p.is_file()):
        content_type, _ = mimetypes.guess_type(path.name)
        assets.append(
            Asset(
                path=path.relative_to(destination).as_posix(),
                size=path.stat().st_size,
                content_type=content_type or "application/octet-stream",
            )
        )
    return assets


class PublishStage(Stage):
    """Copy the output tree to the deployment's serving location."""

    def __init__(self, public_domain: str | None = None):
        self.public_domain = public_domain or settings.public_domain

    @property
    def name(self) -> str:
        return "publish"

    @property
    def start_message(self) -> str:
        return "Deploying to CDN..."

    def public_url(self, project: Project) -> str:
        return f"https://{project.slug}.{self.public_domain}"

    async def run(self, context: StageContext, token: CancellationToken) -> str:
        if context.output_dir is None:
            raise StageFailure(self.name, "no publishable output")

        context.site_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            assets = await asyncio.to_thread(
                _copy_tree, context.output_dir, context.site_dir
            )
        except OSError as e:
            raise StageFailure(self.name, f"Failed to copy build output: {e}") from e

        context.assets = assets
        context.size = sum(asset.size for asset in assets)
        context.url = self.public_url(context.project)
        return f"Published {len(assets)} files ({context.size} bytes)"


def default_stages() -> list[Stage]:
    """The fetch, install, build, verify, publish pipeline."""
    return [FetchStage(), InstallStage(), BuildStage(), VerifyStage(), PublishStage()]
