"""Provisioning and teardown of containers.

ContainerFactory is the only place that creates or destroys runtime
containers. Provisioning retries with bounded exponential backoff and never
leaks a half-created container; teardown is best-effort and only logs.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import uuid
import zipfile
from pathlib import Path

from py_code_sandbox.config import EngineConfig
from py_code_sandbox.containers.config import ContainerConfig, MountType
from py_code_sandbox.containers.handle import ContainerHandle, ContainerMeta, ContainerState
from py_code_sandbox.errors import (
    CleanupError,
    ConfigurationError,
    ContainerRuntimeError,
    ProvisioningError,
)
from py_code_sandbox.runtime.protocol import ContainerRuntime, RuntimeContainer

logger = logging.getLogger(__name__)

MANAGED_LABEL = "py-code-sandbox.managed"


class ContainerFactory:
    """Creates ready ContainerHandles and tears them down."""

    def __init__(self, runtime: ContainerRuntime, config: EngineConfig) -> None:
        self.runtime = runtime
        self.config = config

    def new_workspace_dir(self, *parts: str) -> Path:
        """Create a fresh host workspace directory under the workspace root."""
        path = self.config.workspace_root.joinpath(*(parts or ("containers", uuid.uuid4().hex)))
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _validate(self, config: ContainerConfig) -> None:
        if not config.image:
            raise ConfigurationError("Container config has no image")
        for mount in config.mounts:
            source = Path(mount.source)
            if mount.type is MountType.ZIP and not zipfile.is_zipfile(source):
                raise ConfigurationError(f"Zip mount source is not a zip archive: {source}")
            if mount.type is MountType.DIRECTORY and not source.is_dir():
                raise ConfigurationError(f"Directory mount source not found: {source}")
            if mount.type is MountType.FILE and not source.is_file():
                raise ConfigurationError(f"File mount source not found: {source}")

    async def _copy_zip_mounts(self, container: RuntimeContainer, config: ContainerConfig) -> None:
        for mount in config.mounts:
            if mount.type is not MountType.ZIP:
                continue
            with tempfile.TemporaryDirectory(prefix="code-sandbox-zip-") as tmp:
                with zipfile.ZipFile(mount.source) as archive:
                    archive.extractall(tmp)
                await self.runtime.copy_in(container, Path(tmp), mount.target)

    async def _try_create(
        self, config: ContainerConfig, workspace_dir: Path, labels: dict[str, str]
    ) -> RuntimeContainer:
        container = await self.runtime.create(
            config, workspace_dir, self.config.container_workdir, labels
        )
        try:
            await self.runtime.start(container)
            await self._copy_zip_mounts(container, config)
        except (ContainerRuntimeError, OSError, zipfile.BadZipFile):
            await self._remove_quietly(container)
            raise
        return container

    async def _remove_quietly(self, container: RuntimeContainer) -> None:
        try:
            await self.runtime.remove(container)
        except ContainerRuntimeError as e:
            logger.error(str(CleanupError(container.id, e)))

    async def provision(
        self,
        config: ContainerConfig,
        workspace_dir: Path | None = None,
        pool_key: str | None = None,
        shared: bool = False,
    ) -> ContainerHandle:
        """Create and start a container, returning a READY handle.

        Args:
            config: Container configuration with a concrete image.
            workspace_dir: Host workspace to mount, left in place on destroy.
                When None a fresh one is created and removed with the container.
            pool_key: Pool key the handle belongs to, if pooled.
            shared: Whether the workspace is shared across containers.

        Raises:
            ConfigurationError: If the config cannot work (no image, bad mounts).
            ProvisioningError: If create/start kept failing after all retries.
        """
        self._validate(config)
        owns_workspace = workspace_dir is None
        workspace = workspace_dir if workspace_dir is not None else self.new_workspace_dir()
        workspace.mkdir(parents=True, exist_ok=True)
        labels = {**self.config.labels, MANAGED_LABEL: "true"}

        attempts = self.config.provisioning_retries
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                container = await self._try_create(config, workspace, labels)
            except (ContainerRuntimeError, OSError, zipfile.BadZipFile) as e:
                last_error = e
                if attempt == attempts:
                    break
                delay = min(
                    self.config.provisioning_backoff * 2 ** (attempt - 1),
                    self.config.provisioning_backoff_max,
                )
                logger.warning(
                    f"Provisioning {config.image} failed (attempt {attempt}/{attempts}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
                continue

            handle = ContainerHandle(
                container,
                ContainerMeta(
                    container_id=container.id,
                    container_name=container.name,
                    image_name=container.image,
                    workspace_dir=str(workspace),
                ),
                pool_key=pool_key,
                shared_workspace=shared,
                owns_workspace=owns_workspace,
            )
            handle.mark_ready()
            logger.info(f"Provisioned container {container.id[:12]} from {container.image}")
            return handle

        if owns_workspace and not self.config.keep_workspaces:
            shutil.rmtree(workspace, ignore_errors=True)
        raise ProvisioningError(str(config.image), attempts, last_error)

    async def destroy(self, handle: ContainerHandle, reason: str = "") -> None:
        """Stop and remove a container. Failures are logged, never raised."""
        if handle.state is ContainerState.DESTROYED:
            return
        container_id = handle.id[:12]
        try:
            await self.runtime.stop(handle.container, timeout=self.config.stop_timeout)
        except ContainerRuntimeError as e:
            # Not fatal - remove(force) below still tears it down
            logger.debug(f"Container stop failed (may be already stopped): {e}")
        try:
            await self.runtime.remove(handle.container)
        except ContainerRuntimeError as e:
            logger.error(str(CleanupError(handle.id, e)))
        finally:
            handle.transition(ContainerState.DESTROYED)

        if handle.owns_workspace and not self.config.keep_workspaces:
            try:
                shutil.rmtree(handle.workspace_dir)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error(f"Failed to remove workspace {handle.workspace_dir}: {e}")

        suffix = f" ({reason})" if reason else ""
        logger.info(f"Destroyed container {container_id}{suffix}")
