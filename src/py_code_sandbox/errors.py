"""Error types for py-code-sandbox.

All errors inherit from SandboxError for easy catching at framework level.
"""

from __future__ import annotations


class SandboxError(Exception):
    """Base class for all py-code-sandbox errors."""

    pass


class ConfigurationError(SandboxError):
    """Error in configuration (bad strategy, pool bounds, invalid config file)."""

    pass


class UnknownLanguageError(ConfigurationError):
    """Raised when a language identifier is not registered."""

    def __init__(self, language: str, available: list[str] | None = None) -> None:
        self.language = language
        self.available = available or []
        msg = f"Language '{language}' is not registered"
        if self.available:
            msg += f". Available: {', '.join(sorted(self.available))}"
        super().__init__(msg)


class InvalidRequestError(SandboxError):
    """Raised when an execution request cannot be satisfied as given."""

    pass


class ContainerRuntimeError(SandboxError):
    """A container runtime operation failed (daemon error, missing container)."""

    def __init__(self, operation: str, cause: Exception) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"Container runtime '{operation}' failed: {cause}")


class ProvisioningError(SandboxError):
    """Raised when the container runtime fails to create or start a container."""

    def __init__(self, image: str, attempts: int, cause: Exception | None = None) -> None:
        self.image = image
        self.attempts = attempts
        self.cause = cause
        msg = f"Failed to provision container from '{image}' after {attempts} attempt(s)"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class PathSecurityError(SandboxError):
    """Raised when a path resolves outside of its sandbox root."""

    def __init__(self, path: str, root: str) -> None:
        self.path = path
        self.root = root
        super().__init__(f"Path '{path}' resolves outside of sandbox root '{root}'")


class PoolExhaustedError(SandboxError):
    """Raised when no pooled container became available within acquire_timeout."""

    def __init__(self, key: str, waited: float) -> None:
        self.key = key
        self.waited = waited
        super().__init__(f"Container pool '{key[:12]}' exhausted after waiting {waited:.1f}s")


class DependencyInstallError(SandboxError):
    """Dependency installation exited non-zero; the main code was not run.

    Attached to ExecutionResult.error rather than raised.
    """

    def __init__(self, language: str, dependencies: list[str], exit_code: int) -> None:
        self.language = language
        self.dependencies = dependencies
        self.exit_code = exit_code
        super().__init__(
            f"Installing {language} dependencies {dependencies} failed with exit code {exit_code}"
        )


class ExecutionTimeoutError(SandboxError):
    """Execution exceeded its timeout and was forcibly terminated.

    Attached to ExecutionResult.error rather than raised.
    """

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Execution timed out after {timeout_seconds}s")


class CleanupError(SandboxError):
    """Best-effort teardown failed. Logged, never raised over a primary result."""

    def __init__(self, container_id: str, cause: Exception) -> None:
        self.container_id = container_id
        self.cause = cause
        super().__init__(f"Failed to clean up container {container_id}: {cause}")


class SessionNotFoundError(SandboxError):
    """Raised when a session id is not known to the engine."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' not found")


class SessionClosedError(SandboxError):
    """Raised when executing against a session that was cleaned up."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' has been cleaned up")
