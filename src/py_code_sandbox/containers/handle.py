"""Container handle: one live container plus its metadata and lifecycle state."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from py_code_sandbox.runtime.protocol import RuntimeContainer


class ContainerState(str, Enum):
    PROVISIONING = "provisioning"
    READY = "ready"
    EXECUTING = "executing"
    EVICTED = "evicted"
    RELEASED = "released"
    DESTROYED = "destroyed"


_TRANSITIONS: dict[ContainerState, frozenset[ContainerState]] = {
    ContainerState.PROVISIONING: frozenset({ContainerState.READY, ContainerState.DESTROYED}),
    ContainerState.READY: frozenset(
        {
            ContainerState.EXECUTING,
            ContainerState.EVICTED,
            ContainerState.RELEASED,
            ContainerState.DESTROYED,
        }
    ),
    ContainerState.EXECUTING: frozenset({ContainerState.READY, ContainerState.DESTROYED}),
    ContainerState.EVICTED: frozenset({ContainerState.DESTROYED}),
    ContainerState.RELEASED: frozenset({ContainerState.DESTROYED}),
    ContainerState.DESTROYED: frozenset(),
}

TERMINAL_STATES = frozenset(
    {ContainerState.EVICTED, ContainerState.RELEASED, ContainerState.DESTROYED}
)


@dataclass
class ContainerMeta:
    """Inspectable metadata of a container, kept in session history after teardown."""

    container_id: str
    container_name: str
    image_name: str
    workspace_dir: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_executed_at: datetime | None = None
    is_running: bool = False
    session_generated_files: set[str] = field(default_factory=set)

    def record_generated(self, files: list[str]) -> None:
        """Merge files into the cumulative set. The set only ever grows."""
        self.session_generated_files.update(files)

    def to_dict(self) -> dict[str, Any]:
        return {
            "container_id": self.container_id,
            "container_name": self.container_name,
            "image_name": self.image_name,
            "workspace_dir": self.workspace_dir,
            "created_at": self.created_at.isoformat(),
            "last_executed_at": (
                self.last_executed_at.isoformat() if self.last_executed_at else None
            ),
            "is_running": self.is_running,
            "session_generated_files": sorted(self.session_generated_files),
        }


class ContainerHandle:
    """In-process representative of a live container.

    Tracks the lifecycle state machine:
        PROVISIONING -> READY -> EXECUTING -> READY ... -> EVICTED | RELEASED | DESTROYED
    """

    def __init__(
        self,
        container: RuntimeContainer,
        meta: ContainerMeta,
        pool_key: str | None = None,
        shared_workspace: bool = False,
        owns_workspace: bool = True,
    ) -> None:
        self.container = container
        self.meta = meta
        self.pool_key = pool_key
        self.shared_workspace = shared_workspace
        # Only a workspace the factory created for this container dies with it
        self.owns_workspace = owns_workspace
        self.state = ContainerState.PROVISIONING
        self.healthy = True
        # Monotonic timestamp used for idle eviction
        self.idle_since = time.monotonic()

    @property
    def id(self) -> str:
        return self.container.id

    @property
    def workspace_dir(self) -> Path:
        return Path(self.meta.workspace_dir)

    @property
    def is_alive(self) -> bool:
        return self.state not in TERMINAL_STATES

    def transition(self, new_state: ContainerState) -> None:
        """Move to new_state.

        Raises:
            RuntimeError: On a transition the lifecycle does not allow.
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal container transition {self.state.value} -> {new_state.value} "
                f"for {self.id[:12]}"
            )
        self.state = new_state
        self.meta.is_running = new_state in (ContainerState.READY, ContainerState.EXECUTING)

    def mark_ready(self) -> None:
        self.transition(ContainerState.READY)
        self.idle_since = time.monotonic()

    def begin_execution(self) -> None:
        """Enter EXECUTING. A handle never runs two executions at once."""
        if self.state is ContainerState.EXECUTING:
            raise RuntimeError(f"Container {self.id[:12]} is already executing")
        self.transition(ContainerState.EXECUTING)

    def end_execution(self) -> None:
        """Back to READY after a run that left the container healthy."""
        self.meta.last_executed_at = datetime.now(UTC)
        self.mark_ready()

    def touch(self) -> None:
        """Restart the idle clock."""
        self.idle_since = time.monotonic()

    def mark_unhealthy(self) -> None:
        self.healthy = False

    def idle_for(self, now: float | None = None) -> float:
        return (now if now is not None else time.monotonic()) - self.idle_since

    def __repr__(self) -> str:
        return (
            f"ContainerHandle(id={self.id[:12]!r}, image={self.meta.image_name!r}, "
            f"state={self.state.value}, healthy={self.healthy})"
        )
