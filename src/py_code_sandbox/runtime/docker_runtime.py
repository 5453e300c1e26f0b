"""Docker implementation of the container runtime.

Containers are created from the requested image, kept alive with an idle
command, and receive the host workspace as a read-write bind mount. Code
runs through ``docker exec``; output is demultiplexed and streamed back to
the event loop chunk by chunk. All Docker SDK calls are blocking and run in
worker threads.

Usage:
    runtime = DockerRuntime()
    container = await runtime.create(ContainerConfig(image="alpine:3.20"), workspace, "/workspace")
    await runtime.start(container)
    output = await runtime.exec(container, ["sh", "-c", "ls"], workdir="/workspace")
"""

from __future__ import annotations

import asyncio
import codecs
import io
import logging
import tarfile
import uuid
from pathlib import Path
from typing import Any

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from py_code_sandbox.containers.config import ContainerConfig, MountType
from py_code_sandbox.errors import ContainerRuntimeError
from py_code_sandbox.runtime.protocol import (
    ContainerInspection,
    ExecOutput,
    OutputCallback,
    RuntimeContainer,
)

logger = logging.getLogger(__name__)

# Keeps a container alive between execs
IDLE_COMMAND = ["tail", "-f", "/dev/null"]

CPU_PERIOD = 100_000


class DockerRuntime:
    """ContainerRuntime backed by the Docker SDK for Python."""

    def __init__(self, client: Any = None, name_prefix: str = "code-sandbox") -> None:
        """Initialize the runtime.

        Args:
            client: Docker client to use. Created lazily from the environment
                when None.
            name_prefix: Prefix of auto-generated container names.
        """
        self._docker: Any = client
        self._name_prefix = name_prefix

    @property
    def client(self) -> Any:
        """Lazy initialization of the Docker client."""
        if self._docker is None:
            self._docker = self._create_docker_client()
        return self._docker

    def _create_docker_client(self) -> Any:
        """Create Docker client, trying multiple socket locations if needed."""
        last_error: Exception | None = None

        # Try standard from_env first (respects DOCKER_HOST)
        try:
            client = docker.from_env()
            client.ping()
            return client
        except DockerException as e:
            logger.debug(f"docker.from_env() failed: {e}")
            last_error = e

        socket_paths = [
            Path.home() / ".docker" / "run" / "docker.sock",  # Docker Desktop (macOS/Windows)
            Path("/var/run/docker.sock"),  # Linux default
            Path("/run/docker.sock"),  # Some Linux distros
        ]

        for socket_path in socket_paths:
            if socket_path.exists():
                try:
                    client = docker.DockerClient(base_url=f"unix://{socket_path}")
                    client.ping()
                    return client
                except DockerException as e:
                    logger.debug(f"Failed to connect via {socket_path}: {e}")
                    last_error = e

        error_msg = (
            "Could not connect to Docker. Make sure Docker is running.\n"
            "Tried DOCKER_HOST env var and common socket locations."
        )
        if last_error:
            error_msg += f"\nLast error: {last_error}"
        raise ContainerRuntimeError("connect", RuntimeError(error_msg))

    def _ensure_image(self, image: str) -> None:
        """Pull the image if it is not present locally."""
        try:
            self.client.images.get(image)
            return
        except ImageNotFound:
            pass
        logger.info(f"Pulling image {image}...")
        self.client.images.pull(image)
        logger.info(f"Pulled image {image}")

    def _build_create_kwargs(
        self,
        config: ContainerConfig,
        workspace_dir: Path,
        workdir: str,
        labels: dict[str, str] | None,
    ) -> dict[str, Any]:
        """Convert to Docker SDK create() configuration."""
        if config.image is None:
            raise ContainerRuntimeError("create", ValueError("container config has no image"))

        volumes: dict[str, dict[str, str]] = {
            str(Path(workspace_dir).absolute()): {"bind": workdir, "mode": "rw"},
        }
        for mount in config.mounts:
            # Zip archives are extracted and copied in after start
            if mount.type in (MountType.FILE, MountType.DIRECTORY):
                volumes[str(Path(mount.source).absolute())] = {
                    "bind": mount.target,
                    "mode": "rw",
                }

        kwargs: dict[str, Any] = {
            "image": config.image,
            "command": IDLE_COMMAND,
            "detach": True,
            "init": True,
            "working_dir": workdir,
            "volumes": volumes,
            "environment": {**config.environment},
            "labels": {**(labels or {})},
            "name": config.name or f"{self._name_prefix}-{uuid.uuid4().hex[:12]}",
        }
        if config.ports:
            kwargs["ports"] = {f"{port}/tcp": port for port in config.ports}
        return kwargs

    def _create_blocking(
        self,
        config: ContainerConfig,
        workspace_dir: Path,
        workdir: str,
        labels: dict[str, str] | None,
    ) -> RuntimeContainer:
        kwargs = self._build_create_kwargs(config, workspace_dir, workdir, labels)
        self._ensure_image(kwargs["image"])
        native = self.client.containers.create(**kwargs)
        return RuntimeContainer(
            id=native.id,
            name=kwargs["name"],
            image=kwargs["image"],
            native=native,
        )

    async def create(
        self,
        config: ContainerConfig,
        workspace_dir: Path,
        workdir: str,
        labels: dict[str, str] | None = None,
    ) -> RuntimeContainer:
        try:
            return await asyncio.to_thread(
                self._create_blocking, config, workspace_dir, workdir, labels
            )
        except DockerException as e:
            raise ContainerRuntimeError("create", e) from e

    async def start(self, container: RuntimeContainer) -> None:
        try:
            await asyncio.to_thread(container.native.start)
        except DockerException as e:
            raise ContainerRuntimeError("start", e) from e

    def _apply_limits(
        self, container: RuntimeContainer, cpu_limit: str | None, memory_limit: str | None
    ) -> None:
        update: dict[str, Any] = {}
        if cpu_limit is not None:
            update["cpu_period"] = CPU_PERIOD
            update["cpu_quota"] = int(float(cpu_limit) * CPU_PERIOD)
        if memory_limit is not None:
            update["mem_limit"] = memory_limit
            update["memswap_limit"] = memory_limit
        if update:
            container.native.update(**update)

    def _exec_blocking(
        self,
        container: RuntimeContainer,
        command: list[str],
        workdir: str,
        environment: dict[str, str] | None,
        cpu_limit: str | None,
        memory_limit: str | None,
        emit: OutputCallback,
    ) -> ExecOutput:
        self._apply_limits(container, cpu_limit, memory_limit)

        api = self.client.api
        exec_id = api.exec_create(
            container.id,
            command,
            stdout=True,
            stderr=True,
            workdir=workdir,
            environment=environment or None,
        )["Id"]

        decoders = {
            "stdout": codecs.getincrementaldecoder("utf-8")(errors="replace"),
            "stderr": codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }
        parts: dict[str, list[str]] = {"stdout": [], "stderr": []}

        def _push(stream: str, data: bytes | None, final: bool = False) -> None:
            text = decoders[stream].decode(data or b"", final=final)
            if text:
                parts[stream].append(text)
                emit(stream, text)

        for stdout_chunk, stderr_chunk in api.exec_start(exec_id, stream=True, demux=True):
            if stdout_chunk:
                _push("stdout", stdout_chunk)
            if stderr_chunk:
                _push("stderr", stderr_chunk)
        _push("stdout", None, final=True)
        _push("stderr", None, final=True)

        exit_code = api.exec_inspect(exec_id).get("ExitCode")
        return ExecOutput(
            stdout="".join(parts["stdout"]),
            stderr="".join(parts["stderr"]),
            # None when the exec was torn down with the container
            exit_code=exit_code if exit_code is not None else -1,
        )

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
        loop = asyncio.get_running_loop()

        def emit(stream: str, text: str) -> None:
            # Called from the worker thread; deliver on the event loop
            if on_output is not None:
                loop.call_soon_threadsafe(on_output, stream, text)

        try:
            return await asyncio.to_thread(
                self._exec_blocking,
                container,
                command,
                workdir,
                environment,
                cpu_limit,
                memory_limit,
                emit,
            )
        except DockerException as e:
            raise ContainerRuntimeError("exec", e) from e

    async def kill(self, container: RuntimeContainer) -> None:
        try:
            await asyncio.to_thread(container.native.kill)
            logger.debug(f"Killed container {container.id[:12]}")
        except NotFound:
            logger.debug(f"Container {container.id[:12]} already gone on kill")
        except APIError as e:
            # Not fatal - container might already be stopped
            logger.debug(f"Container kill failed (may be already stopped): {e}")

    async def stop(self, container: RuntimeContainer, timeout: int = 5) -> None:
        try:
            await asyncio.to_thread(container.native.stop, timeout=timeout)
        except NotFound:
            logger.debug(f"Container {container.id[:12]} already gone on stop")
        except DockerException as e:
            raise ContainerRuntimeError("stop", e) from e

    async def remove(self, container: RuntimeContainer) -> None:
        try:
            # force=True handles both stopped and running containers
            await asyncio.to_thread(container.native.remove, force=True)
        except NotFound:
            logger.debug(f"Container {container.id[:12]} already removed")
        except DockerException as e:
            raise ContainerRuntimeError("remove", e) from e

    async def inspect(self, container: RuntimeContainer) -> ContainerInspection:
        def _inspect() -> ContainerInspection:
            container.native.reload()
            image = container.native.attrs.get("Config", {}).get("Image", container.image)
            return ContainerInspection(image=image, running=container.native.status == "running")

        try:
            return await asyncio.to_thread(_inspect)
        except DockerException as e:
            raise ContainerRuntimeError("inspect", e) from e

    async def copy_in(self, container: RuntimeContainer, source: Path, target: str) -> None:
        def _copy() -> None:
            buffer = io.BytesIO()
            with tarfile.open(fileobj=buffer, mode="w") as tar:
                if source.is_dir():
                    for entry in sorted(source.iterdir()):
                        tar.add(str(entry), arcname=entry.name)
                else:
                    tar.add(str(source), arcname=source.name)
            buffer.seek(0)
            container.native.exec_run(["mkdir", "-p", target])
            container.native.put_archive(target, buffer.getvalue())

        try:
            await asyncio.to_thread(_copy)
        except DockerException as e:
            raise ContainerRuntimeError("copy_in", e) from e
