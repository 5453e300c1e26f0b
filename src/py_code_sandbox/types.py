"""Core type definitions for py-code-sandbox."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from py_code_sandbox.errors import SandboxError

# Exit status reported when an execution is killed for exceeding its timeout
TIMEOUT_EXIT_CODE = 124

# A sink receives output chunks as they arrive. Coroutine functions are awaited.
OutputSink = Callable[[str], Awaitable[None] | None]


class ContainerStrategy(str, Enum):
    """Container lifetime policy, chosen per session."""

    PER_EXECUTION = "per_execution"
    POOL = "pool"
    PER_SESSION = "per_session"


class WorkspaceSharing(str, Enum):
    """Whether pooled containers of one key share a host workspace."""

    ISOLATED = "isolated"
    SHARED = "shared"


@dataclass(frozen=True)
class InlineCode:
    """Run a code snippet materialized into the language's code file."""

    code: str


@dataclass(frozen=True)
class RunApp:
    """Run an existing application.

    cwd is a host directory copied into the workspace; entry_file is
    relative to it.
    """

    cwd: str
    entry_file: str


RequestSource = InlineCode | RunApp


@dataclass(frozen=True)
class StreamSinks:
    """Optional sinks for incremental output."""

    stdout: OutputSink | None = None
    stderr: OutputSink | None = None
    dependency_stdout: OutputSink | None = None
    dependency_stderr: OutputSink | None = None


@dataclass(frozen=True)
class ExecutionRequest:
    """A single execution request.

    Build with ExecutionRequest.inline() or ExecutionRequest.run_app() so the
    source is always exactly one of the two forms.
    """

    language: str
    source: RequestSource
    dependencies: tuple[str, ...] = ()
    timeout: float | None = None
    cpu_limit: str | None = None
    memory_limit: str | None = None
    streams: StreamSinks | None = None
    workspace_sharing: WorkspaceSharing = WorkspaceSharing.ISOLATED
    environment: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.source, (InlineCode, RunApp)):
            raise TypeError(
                f"source must be InlineCode or RunApp, got {type(self.source).__name__}"
            )
        # Accept any iterable of dependencies but store an immutable tuple
        object.__setattr__(self, "dependencies", tuple(self.dependencies))
        object.__setattr__(self, "workspace_sharing", WorkspaceSharing(self.workspace_sharing))

    @classmethod
    def inline(cls, language: str, code: str, **kwargs: Any) -> ExecutionRequest:
        return cls(language=language, source=InlineCode(code), **kwargs)

    @classmethod
    def run_app(cls, language: str, cwd: str, entry_file: str, **kwargs: Any) -> ExecutionRequest:
        return cls(language=language, source=RunApp(cwd=cwd, entry_file=entry_file), **kwargs)

    @property
    def code(self) -> str | None:
        """Inline code, or None for run-app requests."""
        if isinstance(self.source, InlineCode):
            return self.source.code
        return None


@dataclass
class ExecutionResult:
    """Result of one execution request."""

    stdout: str
    stderr: str
    dependency_stdout: str
    dependency_stderr: str
    exit_code: int
    execution_time: float
    workspace_dir: str
    generated_files: list[str] = field(default_factory=list)
    session_generated_files: list[str] = field(default_factory=list)
    timed_out: bool = False
    error: SandboxError | None = None

    @property
    def is_ok(self) -> bool:
        """True if the code ran to completion and exited zero."""
        return self.error is None and self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "dependency_stdout": self.dependency_stdout,
            "dependency_stderr": self.dependency_stderr,
            "exit_code": self.exit_code,
            "execution_time": self.execution_time,
            "workspace_dir": self.workspace_dir,
            "generated_files": list(self.generated_files),
            "session_generated_files": list(self.session_generated_files),
            "timed_out": self.timed_out,
            "error": str(self.error) if self.error is not None else None,
            "error_type": type(self.error).__name__ if self.error is not None else None,
        }
