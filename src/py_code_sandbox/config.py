"""Engine, pool and session configuration.

EngineConfig can be loaded from environment variables or a YAML file:

``CODE_SANDBOX_WORKSPACE_ROOT``
    Host directory under which workspaces are created. Defaults to
    ``<tmp>/py-code-sandbox``.

``CODE_SANDBOX_STRATEGY``
    Default container strategy for sessions created implicitly:
    ``per_execution``, ``pool`` or ``per_session``. Defaults to
    ``per_execution``.

``CODE_SANDBOX_TIMEOUT``
    Default per-execution timeout in seconds. Defaults to 30.

``CODE_SANDBOX_POOL_MIN_SIZE`` / ``CODE_SANDBOX_POOL_MAX_SIZE``
    Pool bounds per key. Defaults to 0 and 3.

``CODE_SANDBOX_POOL_IDLE_TIMEOUT``
    Seconds an idle pooled container may live. Defaults to 300.

``CODE_SANDBOX_POOL_ACQUIRE_TIMEOUT``
    Seconds to wait for a pooled container at capacity. Defaults to 60.

``CODE_SANDBOX_PROVISIONING_RETRIES``
    Attempts to create/start a container before giving up. Defaults to 3.

``CODE_SANDBOX_KEEP_WORKSPACES``
    If ``true``, workspace directories survive container teardown.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from py_code_sandbox.containers.config import ContainerConfig
from py_code_sandbox.errors import ConfigurationError
from py_code_sandbox.types import ContainerStrategy


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y"}


def _parse_strategy(value: Any) -> ContainerStrategy:
    try:
        return ContainerStrategy(value)
    except ValueError:
        choices = ", ".join(s.value for s in ContainerStrategy)
        raise ConfigurationError(f"Invalid strategy: {value!r}. Use one of: {choices}") from None


@dataclass
class PoolConfig:
    """Bounds and timing of the container pool (per pool key)."""

    min_size: int = 0
    max_size: int = 3
    idle_timeout: float = 300.0
    acquire_timeout: float = 60.0
    maintenance_interval: float = 30.0

    def validate(self) -> None:
        if self.max_size < 1:
            raise ConfigurationError(f"Pool max_size must be at least 1, got {self.max_size}")
        if not 0 <= self.min_size <= self.max_size:
            raise ConfigurationError(
                f"Pool min_size must be within [0, max_size={self.max_size}], got {self.min_size}"
            )
        for name in ("idle_timeout", "acquire_timeout", "maintenance_interval"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"Pool {name} must be positive")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PoolConfig:
        config = cls(
            min_size=int(data.get("min_size", 0)),
            max_size=int(data.get("max_size", 3)),
            idle_timeout=float(data.get("idle_timeout", 300.0)),
            acquire_timeout=float(data.get("acquire_timeout", 60.0)),
            maintenance_interval=float(data.get("maintenance_interval", 30.0)),
        )
        config.validate()
        return config


@dataclass
class SessionConfig:
    """How a session runs its containers."""

    strategy: ContainerStrategy = ContainerStrategy.PER_EXECUTION
    container_config: ContainerConfig = field(default_factory=ContainerConfig)
    pool_config: PoolConfig | None = None
    session_id: str | None = None
    enforce_new_session: bool = False

    def __post_init__(self) -> None:
        self.strategy = _parse_strategy(self.strategy)
        if self.pool_config is not None:
            self.pool_config.validate()


@dataclass
class EngineConfig:
    """Configuration of the execution engine on the host side."""

    workspace_root: Path = field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "py-code-sandbox"
    )
    default_strategy: ContainerStrategy = ContainerStrategy.PER_EXECUTION
    default_timeout: float = 30.0
    pool: PoolConfig = field(default_factory=PoolConfig)

    # Provisioning
    provisioning_retries: int = 3
    provisioning_backoff: float = 0.5
    provisioning_backoff_max: float = 5.0

    # Container settings
    container_workdir: str = "/workspace"
    stop_timeout: int = 5
    keep_workspaces: bool = False
    labels: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.workspace_root = Path(self.workspace_root)
        self.default_strategy = _parse_strategy(self.default_strategy)
        self.validate()

    def validate(self) -> None:
        self.pool.validate()
        if self.default_timeout <= 0:
            raise ConfigurationError("default_timeout must be positive")
        if self.provisioning_retries < 1:
            raise ConfigurationError("provisioning_retries must be at least 1")
        if not self.container_workdir.startswith("/"):
            raise ConfigurationError(
                f"container_workdir must be absolute, got {self.container_workdir!r}"
            )

    @classmethod
    def from_yaml(cls, path: Path) -> EngineConfig:
        """Load configuration from YAML file."""
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot load engine config from {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Engine config in {path} must be a mapping")
        return cls._from_dict(data)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables."""

        def _num(name: str, default: float, kind: type = float) -> Any:
            val = os.getenv(name)
            if val is None:
                return default
            try:
                return kind(val)
            except ValueError:
                raise ConfigurationError(f"Invalid number for {name}: {val}") from None

        pool = PoolConfig(
            min_size=_num("CODE_SANDBOX_POOL_MIN_SIZE", 0, int),
            max_size=_num("CODE_SANDBOX_POOL_MAX_SIZE", 3, int),
            idle_timeout=_num("CODE_SANDBOX_POOL_IDLE_TIMEOUT", 300.0),
            acquire_timeout=_num("CODE_SANDBOX_POOL_ACQUIRE_TIMEOUT", 60.0),
        )
        kwargs: dict[str, Any] = {
            "default_strategy": os.getenv("CODE_SANDBOX_STRATEGY", "per_execution").lower(),
            "default_timeout": _num("CODE_SANDBOX_TIMEOUT", 30.0),
            "pool": pool,
            "provisioning_retries": _num("CODE_SANDBOX_PROVISIONING_RETRIES", 3, int),
            "keep_workspaces": _parse_bool(os.getenv("CODE_SANDBOX_KEEP_WORKSPACES"), False),
        }
        if workspace_root := os.getenv("CODE_SANDBOX_WORKSPACE_ROOT"):
            kwargs["workspace_root"] = Path(workspace_root)
        return cls(**kwargs)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        """Create config from dictionary."""
        kwargs: dict[str, Any] = {
            "default_strategy": data.get("default_strategy", "per_execution"),
            "default_timeout": float(data.get("default_timeout", 30.0)),
            "pool": PoolConfig.from_dict(data.get("pool") or {}),
            "provisioning_retries": int(data.get("provisioning_retries", 3)),
            "provisioning_backoff": float(data.get("provisioning_backoff", 0.5)),
            "container_workdir": data.get("container_workdir", "/workspace"),
            "stop_timeout": int(data.get("stop_timeout", 5)),
            "keep_workspaces": bool(data.get("keep_workspaces", False)),
            "labels": {str(k): str(v) for k, v in (data.get("labels") or {}).items()},
        }
        if "workspace_root" in data:
            kwargs["workspace_root"] = Path(data["workspace_root"])
        return cls(**kwargs)
