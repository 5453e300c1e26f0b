"""py_code_sandbox.runtime - container runtime boundary."""

from py_code_sandbox.runtime.docker_runtime import DockerRuntime
from py_code_sandbox.runtime.protocol import (
    ContainerInspection,
    ContainerRuntime,
    ExecOutput,
    OutputCallback,
    RuntimeContainer,
)

__all__ = [
    "ContainerInspection",
    "ContainerRuntime",
    "DockerRuntime",
    "ExecOutput",
    "OutputCallback",
    "RuntimeContainer",
]
