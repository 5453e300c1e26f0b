"""Bounded, keyed pool of idle containers with idle-timeout eviction.

Containers are bucketed by the fingerprint of their ContainerConfig. For
each key the number of live containers (idle plus borrowed plus being
provisioned) never exceeds max_size; callers beyond that wait for a release
up to acquire_timeout. A time-driven maintenance pass destroys containers
idle for longer than idle_timeout and keeps min_size warm per key.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import uuid
from collections import defaultdict, deque
from pathlib import Path
from typing import Any

from py_code_sandbox.config import PoolConfig
from py_code_sandbox.containers.config import ContainerConfig, fingerprint
from py_code_sandbox.containers.factory import ContainerFactory
from py_code_sandbox.containers.handle import ContainerHandle, ContainerState
from py_code_sandbox.errors import PoolExhaustedError, SandboxError
from py_code_sandbox.types import WorkspaceSharing

logger = logging.getLogger(__name__)


class ContainerPool:
    """Keyed container pool.

    Usage:
        pool = ContainerPool(factory, PoolConfig(max_size=3))
        pool.start()  # background maintenance
        handle = await pool.acquire(config)
        ...
        await pool.release(handle, healthy=True)
        await pool.close()
    """

    def __init__(self, factory: ContainerFactory, config: PoolConfig) -> None:
        config.validate()
        self._factory = factory
        self.config = config
        # Guards _idle, _live, _configs and _closed
        self._cond = asyncio.Condition()
        self._idle: dict[str, deque[ContainerHandle]] = defaultdict(deque)
        self._live: dict[str, int] = defaultdict(int)
        self._configs: dict[str, tuple[ContainerConfig, WorkspaceSharing]] = {}
        self._shared_dirs: dict[str, Path] = {}
        self._maintenance_task: asyncio.Task[None] | None = None
        self._closed = False

    @staticmethod
    def key_for(
        config: ContainerConfig, sharing: WorkspaceSharing = WorkspaceSharing.ISOLATED
    ) -> str:
        return fingerprint(config, sharing)

    def shared_workspace_for(self, key: str) -> Path:
        """Host workspace mounted by every container of a shared key."""
        if key not in self._shared_dirs:
            self._shared_dirs[key] = self._factory.new_workspace_dir("pools", key[:16], "shared")
        return self._shared_dirs[key]

    async def _provision(self, key: str) -> ContainerHandle:
        config, sharing = self._configs[key]
        if config.name:
            # Several containers of one key may be alive at once
            config = dataclasses.replace(config, name=f"{config.name}-{uuid.uuid4().hex[:8]}")
        shared = sharing is WorkspaceSharing.SHARED
        workspace = self.shared_workspace_for(key) if shared else None
        return await self._factory.provision(config, workspace, pool_key=key, shared=shared)

    async def acquire(
        self,
        config: ContainerConfig,
        sharing: WorkspaceSharing = WorkspaceSharing.ISOLATED,
    ) -> ContainerHandle:
        """Borrow a READY container for config.

        Reuses an idle container of the same key, provisions a new one while
        the key is below max_size, otherwise waits for a release.

        Raises:
            PoolExhaustedError: If nothing became available within acquire_timeout.
            ProvisioningError: If a new container could not be created.
        """
        key = self.key_for(config, sharing)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.acquire_timeout

        async with self._cond:
            self._configs.setdefault(key, (config, WorkspaceSharing(sharing)))
            while True:
                if self._closed:
                    raise SandboxError("Container pool is closed")
                idle = self._idle[key]
                if idle:
                    handle = idle.pop()
                    logger.debug(f"Reusing pooled container {handle.id[:12]}")
                    return handle
                if self._live[key] < self.config.max_size:
                    self._live[key] += 1
                    break
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise PoolExhaustedError(key, self.config.acquire_timeout)
                try:
                    await asyncio.wait_for(self._cond.wait(), remaining)
                except TimeoutError:
                    raise PoolExhaustedError(key, self.config.acquire_timeout) from None

        try:
            return await self._provision(key)
        except BaseException:
            async with self._cond:
                self._live[key] -= 1
                self._cond.notify()
            raise

    async def release(self, handle: ContainerHandle, healthy: bool = True) -> None:
        """Return a borrowed container.

        Healthy READY containers go back to the idle set while there is room;
        anything else is destroyed. Capacity is freed only once the container
        is actually gone.
        """
        key = handle.pool_key
        if key is None:
            raise ValueError(f"{handle!r} does not belong to a pool")

        async with self._cond:
            keep = (
                healthy
                and handle.healthy
                and not self._closed
                and handle.state is ContainerState.READY
                and len(self._idle[key]) < self.config.max_size
            )
            if keep:
                handle.touch()
                self._idle[key].append(handle)
                self._cond.notify()
                return

        if handle.state is ContainerState.READY:
            handle.transition(ContainerState.RELEASED)
        await self._factory.destroy(handle, "released" if handle.healthy else "unhealthy")
        async with self._cond:
            self._live[key] -= 1
            self._cond.notify()

    async def warm(
        self,
        config: ContainerConfig,
        sharing: WorkspaceSharing = WorkspaceSharing.ISOLATED,
    ) -> None:
        """Register a key and provision up to min_size idle containers for it."""
        key = self.key_for(config, sharing)
        async with self._cond:
            self._configs.setdefault(key, (config, WorkspaceSharing(sharing)))
        await self._top_up(key)

    async def _top_up(self, key: str) -> None:
        async with self._cond:
            if self._closed:
                return
            deficit = self.config.min_size - len(self._idle[key])
            room = self.config.max_size - self._live[key]
            count = max(0, min(deficit, room))
            self._live[key] += count

        provisioned = 0
        try:
            for _ in range(count):
                try:
                    handle = await self._provision(key)
                except (SandboxError, OSError) as e:
                    logger.warning(f"Could not keep pool {key[:12]} warm: {e}")
                    break
                async with self._cond:
                    self._idle[key].append(handle)
                    self._cond.notify()
                provisioned += 1
        finally:
            # Slots reserved above but never filled go back to waiters
            unfilled = count - provisioned
            if unfilled:
                async with self._cond:
                    self._live[key] -= unfilled
                    self._cond.notify_all()

    async def run_maintenance(self) -> None:
        """One maintenance pass: evict stale idle containers, then refill to min_size."""
        now = time.monotonic()
        evicted: list[ContainerHandle] = []
        async with self._cond:
            for idle in self._idle.values():
                stale = [h for h in idle if h.idle_for(now) > self.config.idle_timeout]
                for handle in stale:
                    idle.remove(handle)
                    handle.transition(ContainerState.EVICTED)
                    evicted.append(handle)

        for handle in evicted:
            logger.info(f"Evicting idle container {handle.id[:12]}")
            await self._factory.destroy(handle, "idle timeout")
            async with self._cond:
                self._live[handle.pool_key] -= 1  # type: ignore[index]
                self._cond.notify()

        for key in list(self._configs):
            await self._top_up(key)

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.maintenance_interval)
            try:
                await self.run_maintenance()
            except SandboxError as e:
                logger.error(f"Pool maintenance failed: {e}")

    def start(self) -> None:
        """Start the background maintenance task (requires a running loop)."""
        if self._maintenance_task is None or self._maintenance_task.done():
            self._maintenance_task = asyncio.get_running_loop().create_task(
                self._maintenance_loop()
            )

    async def close(self) -> None:
        """Stop maintenance and destroy every idle container."""
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None

        async with self._cond:
            self._closed = True
            drained = [h for idle in self._idle.values() for h in idle]
            for idle in self._idle.values():
                idle.clear()
            self._cond.notify_all()

        for handle in drained:
            handle.transition(ContainerState.RELEASED)
            await self._factory.destroy(handle, "pool closed")
            async with self._cond:
                self._live[handle.pool_key] -= 1  # type: ignore[index]

    def stats(self) -> dict[str, dict[str, Any]]:
        """Idle and live counts per pool key."""
        return {
            key: {"idle": len(self._idle[key]), "live": self._live[key]}
            for key in self._configs
        }
