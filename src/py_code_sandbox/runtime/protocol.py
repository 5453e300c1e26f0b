"""Container runtime protocol.

The engine never talks to Docker directly. It drives a ContainerRuntime,
which creates, starts, execs into, inspects, stops and removes containers.
DockerRuntime is the production implementation.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from py_code_sandbox.containers.config import ContainerConfig

# Called with ("stdout" | "stderr", text) for every chunk of exec output
OutputCallback = Callable[[str, str], None]


@dataclass
class RuntimeContainer:
    """Runtime-side reference to a created container."""

    id: str
    name: str
    image: str
    native: Any = field(default=None, repr=False)


@dataclass(frozen=True)
class ExecOutput:
    """Collected output of one exec."""

    stdout: str
    stderr: str
    exit_code: int


@dataclass(frozen=True)
class ContainerInspection:
    image: str
    running: bool


@runtime_checkable
class ContainerRuntime(Protocol):
    """Capability interface of a container runtime."""

    async def create(
        self,
        config: ContainerConfig,
        workspace_dir: Path,
        workdir: str,
        labels: dict[str, str] | None = None,
    ) -> RuntimeContainer:
        """Create (but do not start) a container with the workspace mounted at workdir."""
        ...

    async def start(self, container: RuntimeContainer) -> None: ...

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
        """Run a command to completion, reporting output chunks as they arrive.

        Cancelling the awaiting task must not leave the caller blocked; the
        process itself is terminated by kill().
        """
        ...

    async def kill(self, container: RuntimeContainer) -> None:
        """Forcibly terminate everything running in the container."""
        ...

    async def stop(self, container: RuntimeContainer, timeout: int = 5) -> None: ...

    async def remove(self, container: RuntimeContainer) -> None: ...

    async def inspect(self, container: RuntimeContainer) -> ContainerInspection: ...

    async def copy_in(self, container: RuntimeContainer, source: Path, target: str) -> None:
        """Copy a host file or directory tree into the container at target."""
        ...
