"""py-code-sandbox: run untrusted code in isolated containers."""

# Configuration
from py_code_sandbox.config import EngineConfig, PoolConfig, SessionConfig
from py_code_sandbox.containers import ContainerConfig, Mount, MountType

# Core entry point
from py_code_sandbox.engine import ExecutionEngine
# All errors (foundational)
from py_code_sandbox.errors import (
    CleanupError,
    ConfigurationError,
    ContainerRuntimeError,
    DependencyInstallError,
    ExecutionTimeoutError,
    InvalidRequestError,
    PathSecurityError,
    PoolExhaustedError,
    ProvisioningError,
    SandboxError,
    SessionClosedError,
    SessionNotFoundError,
    UnknownLanguageError,
)
from py_code_sandbox.file_tools import FileTools
from py_code_sandbox.languages import LanguageConfig, LanguageRegistry
from py_code_sandbox.session import SessionInfo

# Core types (foundational, used everywhere)
from py_code_sandbox.types import (
    TIMEOUT_EXIT_CODE,
    ContainerStrategy,
    ExecutionRequest,
    ExecutionResult,
    InlineCode,
    RunApp,
    StreamSinks,
    WorkspaceSharing,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "ExecutionEngine",
    "SessionInfo",
    "FileTools",
    # Config
    "EngineConfig",
    "PoolConfig",
    "SessionConfig",
    "ContainerConfig",
    "Mount",
    "MountType",
    # Languages
    "LanguageConfig",
    "LanguageRegistry",
    # Types
    "TIMEOUT_EXIT_CODE",
    "ContainerStrategy",
    "ExecutionRequest",
    "ExecutionResult",
    "InlineCode",
    "RunApp",
    "StreamSinks",
    "WorkspaceSharing",
    # Errors
    "SandboxError",
    "ConfigurationError",
    "UnknownLanguageError",
    "InvalidRequestError",
    "ContainerRuntimeError",
    "ProvisioningError",
    "PathSecurityError",
    "PoolExhaustedError",
    "DependencyInstallError",
    "ExecutionTimeoutError",
    "CleanupError",
    "SessionNotFoundError",
    "SessionClosedError",
]
