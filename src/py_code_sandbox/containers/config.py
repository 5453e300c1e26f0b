"""Container configuration and pool-key fingerprinting."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from py_code_sandbox.errors import ConfigurationError
from py_code_sandbox.types import WorkspaceSharing


class MountType(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"
    ZIP = "zip"


@dataclass(frozen=True)
class Mount:
    """A host file, directory or zip archive exposed at a container path."""

    type: MountType
    source: str
    target: str

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "type", MountType(self.type))
        except ValueError:
            raise ConfigurationError(
                f"Invalid mount type: {self.type!r}. Use 'file', 'directory' or 'zip'."
            ) from None
        if not self.target.startswith("/"):
            raise ConfigurationError(f"Mount target must be an absolute path: {self.target!r}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Mount:
        return cls(type=data["type"], source=data["source"], target=data["target"])


@dataclass(frozen=True)
class ContainerConfig:
    """What to run a container from.

    image=None means "use the default image of the request's language".
    """

    image: str | None = None
    mounts: tuple[Mount, ...] = ()
    environment: dict[str, str] = field(default_factory=dict)
    name: str | None = None
    ports: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "mounts", tuple(self.mounts))
        object.__setattr__(self, "ports", tuple(self.ports))

    def with_image(self, image: str) -> ContainerConfig:
        """Return a copy with the image filled in."""
        return ContainerConfig(
            image=image,
            mounts=self.mounts,
            environment=dict(self.environment),
            name=self.name,
            ports=self.ports,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContainerConfig:
        """Create config from dictionary (YAML/JSON shaped)."""
        return cls(
            image=data.get("image"),
            mounts=tuple(Mount.from_dict(m) for m in data.get("mounts", [])),
            environment={str(k): str(v) for k, v in (data.get("environment") or {}).items()},
            name=data.get("name"),
            ports=tuple(int(p) for p in data.get("ports", [])),
        )


def fingerprint(
    config: ContainerConfig,
    sharing: WorkspaceSharing = WorkspaceSharing.ISOLATED,
) -> str:
    """Compute the pool key of a container configuration.

    Image, mounts and environment decide compatibility. The sharing mode is
    folded in because shared keys mount one common host workspace.
    """
    content = json.dumps(
        {
            "image": config.image,
            "mounts": sorted([m.type.value, m.source, m.target] for m in config.mounts),
            "environment": sorted(config.environment.items()),
            "sharing": WorkspaceSharing(sharing).value,
        },
        sort_keys=True,
    )
    return hashlib.sha256(content.encode()).hexdigest()
