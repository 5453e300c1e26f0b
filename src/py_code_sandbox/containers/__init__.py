"""py_code_sandbox.containers - container configuration, handles, factory and pool.

Only the leaf modules are re-exported here; import ContainerFactory and
ContainerPool from their modules.
"""

from py_code_sandbox.containers.config import ContainerConfig, Mount, MountType, fingerprint
from py_code_sandbox.containers.handle import ContainerHandle, ContainerMeta, ContainerState

__all__ = [
    "ContainerConfig",
    "ContainerHandle",
    "ContainerMeta",
    "ContainerState",
    "Mount",
    "MountType",
    "fingerprint",
]
