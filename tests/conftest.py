"""Test fixtures for py-code-sandbox.

FakeRuntime stands in for Docker: a "container" is a host workspace
directory and every exec is a host process started in it. That keeps the
engine's real behavior (files, exit codes, timeouts, streaming) observable
without a daemon.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import signal
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from py_code_sandbox.config import EngineConfig
from py_code_sandbox.containers.config import ContainerConfig
from py_code_sandbox.errors import ContainerRuntimeError
from py_code_sandbox.runtime.protocol import (
    ContainerInspection,
    ExecOutput,
    OutputCallback,
    RuntimeContainer,
)


@dataclass
class FakeContainerState:
    workspace: Path
    workdir: str
    environment: dict[str, str]
    running: bool = False
    processes: set[asyncio.subprocess.Process] = field(default_factory=set)


class FakeRuntime:
    """ContainerRuntime running commands as host processes in the workspace."""

    def __init__(self, fail_creates: int = 0, fail_starts: int = 0) -> None:
        self.fail_creates = fail_creates
        self.fail_starts = fail_starts
        self.create_calls = 0
        self.created: list[str] = []
        self.removed: list[str] = []
        self.killed: list[str] = []
        self.stopped: list[str] = []
        self.copied: list[tuple[str, list[str], str]] = []
        self.exec_commands: list[list[str]] = []
        self.exec_limits: list[tuple[str | None, str | None]] = []
        self.live: set[str] = set()
        self.max_live = 0
        self.active_execs = 0

    async def create(
        self,
        config: ContainerConfig,
        workspace_dir: Path,
        workdir: str,
        labels: dict[str, str] | None = None,
    ) -> RuntimeContainer:
        self.create_calls += 1
        if self.fail_creates:
            self.fail_creates -= 1
            raise ContainerRuntimeError("create", RuntimeError("daemon unavailable"))
        container_id = uuid.uuid4().hex
        self.created.append(container_id)
        self.live.add(container_id)
        self.max_live = max(self.max_live, len(self.live))
        return RuntimeContainer(
            id=container_id,
            name=config.name or f"fake-{container_id[:8]}",
            image=str(config.image),
            native=FakeContainerState(
                workspace=Path(workspace_dir),
                workdir=workdir,
                environment=dict(config.environment),
            ),
        )

    async def start(self, container: RuntimeContainer) -> None:
        if self.fail_starts:
            self.fail_starts -= 1
            raise ContainerRuntimeError("start", RuntimeError("start failed"))
        container.native.running = True

    def _host_dir(self, container: RuntimeContainer, path: str) -> Path:
        state: FakeContainerState = container.native
        if path == state.workdir or path.startswith(state.workdir.rstrip("/") + "/"):
            rel = path[len(state.workdir) :].lstrip("/")
            return state.workspace / rel
        raise AssertionError(f"FakeRuntime cannot map {path} outside {state.workdir}")

    async def exec(
        self,
        container: RuntimeContainer,
        command: list[str],
        *,
        workdir: str,
        environment: dict[str, str] | None = None,
        cpu_limit: str | None = None,
        memory_limit: str | None = None,
        on_output: OutputCallback | None = None,
    ) -> ExecOutput:
        state: FakeContainerState = container.native
        if not state.running:
            raise ContainerRuntimeError("exec", RuntimeError("container is not running"))
        self.exec_commands.append(list(command))
        self.exec_limits.append((cpu_limit, memory_limit))

        env = {**os.environ, **state.environment, **(environment or {})}
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=self._host_dir(container, workdir),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        state.processes.add(process)
        self.active_execs += 1
        parts: dict[str, list[str]] = {"stdout": [], "stderr": []}

        async def pump(reader: asyncio.StreamReader, name: str) -> None:
            while chunk := await reader.read(4096):
                text = chunk.decode(errors="replace")
                parts[name].append(text)
                if on_output is not None:
                    on_output(name, text)

        try:
            await asyncio.gather(pump(process.stdout, "stdout"), pump(process.stderr, "stderr"))
            exit_code = await process.wait()
        except asyncio.CancelledError:
            _kill_group(process)
            raise
        finally:
            self.active_execs -= 1
            state.processes.discard(process)

        return ExecOutput("".join(parts["stdout"]), "".join(parts["stderr"]), exit_code)

    async def kill(self, container: RuntimeContainer) -> None:
        self.killed.append(container.id)
        for process in list(container.native.processes):
            _kill_group(process)

    async def stop(self, container: RuntimeContainer, timeout: int = 5) -> None:
        self.stopped.append(container.id)
        container.native.running = False

    async def remove(self, container: RuntimeContainer) -> None:
        self.removed.append(container.id)
        self.live.discard(container.id)

    async def inspect(self, container: RuntimeContainer) -> ContainerInspection:
        return ContainerInspection(image=container.image, running=container.native.running)

    async def copy_in(self, container: RuntimeContainer, source: Path, target: str) -> None:
        names = sorted(p.relative_to(source).as_posix() for p in source.rglob("*"))
        self.copied.append((container.id, names, target))
        dest = self._host_dir(container, target)
        shutil.copytree(source, dest, dirs_exist_ok=True)


def _kill_group(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(
        workspace_root=tmp_path / "sandbox",
        default_timeout=10.0,
        provisioning_backoff=0.01,
        provisioning_backoff_max=0.02,
    )


def make_app(root: Path, files: dict[str, str]) -> Path:
    """Write an application directory for run-app requests."""
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def app_factory(tmp_path: Path) -> Any:
    def _make(files: dict[str, str], name: str = "app") -> Path:
        return make_app(tmp_path / name, files)

    return _make
