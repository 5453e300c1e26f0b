"""Execution engine - runs requests in containers according to session strategy.

ExecutionEngine is the public entry point. Each request goes through the
same protocol regardless of strategy:

    1. Resolve the language
    2. Acquire a container (fresh, pooled or session-bound)
    3. Materialize code or the application into the workspace
    4. Install dependencies (a failure aborts the run)
    5. Snapshot the workspace
    6. Run with timeout and limits, streaming output to sinks
    7. Snapshot again and diff
    8. Release the container per strategy

Usage:
    async with ExecutionEngine() as engine:
        info = await engine.create_session(SessionConfig(strategy="per_session"))
        result = await engine.execute_code(
            info.session_id, ExecutionRequest.inline("python", "print('hi')")
        )
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
import shutil
import time
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from py_code_sandbox.config import EngineConfig, PoolConfig, SessionConfig
from py_code_sandbox.containers.config import ContainerConfig
from py_code_sandbox.containers.factory import ContainerFactory
from py_code_sandbox.containers.handle import ContainerHandle
from py_code_sandbox.containers.pool import ContainerPool
from py_code_sandbox.errors import (
    DependencyInstallError,
    ExecutionTimeoutError,
    SandboxError,
    SessionNotFoundError,
)
from py_code_sandbox.file_tools import FileTools
from py_code_sandbox.languages import LanguageConfig, LanguageRegistry
from py_code_sandbox.runtime.protocol import ContainerRuntime, ExecOutput
from py_code_sandbox.session import Session, SessionInfo, SessionManager
from py_code_sandbox.types import (
    TIMEOUT_EXIT_CODE,
    ContainerStrategy,
    ExecutionRequest,
    ExecutionResult,
    OutputSink,
    StreamSinks,
)
from py_code_sandbox.workspace import clear_workspace, diff_snapshots, snapshot_workspace

logger = logging.getLogger(__name__)


class _OutputRelay:
    """Buffers exec output and forwards each chunk to the caller's sinks.

    Chunks are queued in arrival order and drained by one task, so sinks that
    are coroutine functions see them in order and never block the exec.
    """

    def __init__(self, stdout: OutputSink | None, stderr: OutputSink | None) -> None:
        self._sinks = {"stdout": stdout, "stderr": stderr}
        self._parts: dict[str, list[str]] = {"stdout": [], "stderr": []}
        self._queue: asyncio.Queue[tuple[str, str] | None] = asyncio.Queue()
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    def __call__(self, stream: str, text: str) -> None:
        self._parts[stream].append(text)
        if self._sinks.get(stream) is not None:
            self._queue.put_nowait((stream, text))

    def text(self, stream: str) -> str:
        return "".join(self._parts[stream])

    async def _drain(self) -> None:
        while (item := await self._queue.get()) is not None:
            stream, text = item
            sink = self._sinks[stream]
            try:
                result = sink(text)  # type: ignore[misc]
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Output sink for {stream} raised {type(e).__name__}: {e}")

    async def close(self) -> None:
        self._queue.put_nowait(None)
        await self._drain_task


class ExecutionEngine:
    """Runs execution requests in containers, one session at a time per container.

    Sessions execute fully in parallel; there is no global execution lock.
    Within one PER_SESSION session, executions run in arrival order.
    """

    def __init__(
        self,
        runtime: ContainerRuntime | None = None,
        config: EngineConfig | None = None,
        registry: LanguageRegistry | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            runtime: Container runtime. Defaults to DockerRuntime().
            config: Engine configuration. Defaults to EngineConfig().
            registry: Language registry. Defaults to the built-in languages.
        """
        if runtime is None:
            from py_code_sandbox.runtime.docker_runtime import DockerRuntime

            runtime = DockerRuntime()
        self.config = config or EngineConfig()
        self.registry = registry or LanguageRegistry.with_defaults()
        self._runtime = runtime
        self._factory = ContainerFactory(runtime, self.config)
        self._sessions = SessionManager(self.config.workspace_root, self.config.default_strategy)
        self._pools: dict[tuple[Any, ...], ContainerPool] = {}
        self._closed = False

    async def __aenter__(self) -> ExecutionEngine:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # -- sessions -----------------------------------------------------------

    async def create_session(self, config: SessionConfig | None = None) -> SessionInfo:
        """Create a session, or return the active one config names.

        With enforce_new_session, an active session of the same id is
        cleaned up and replaced.
        """
        if config is None:
            config = SessionConfig(strategy=self.config.default_strategy)

        if config.session_id and config.enforce_new_session:
            try:
                existing = self._sessions.get(config.session_id)
            except SessionNotFoundError:
                existing = None
            if existing is not None and existing.is_active:
                logger.info(f"Replacing session {config.session_id}")
                await self.cleanup_session(config.session_id)

        session = self._sessions.create(config)
        if session.strategy is ContainerStrategy.POOL:
            pool = self._pool_for(config.pool_config)
            if pool.config.min_size and config.container_config.image:
                await pool.warm(config.container_config)
        return self._sessions.info(session.session_id)

    def get_session_info(self, session_id: str) -> SessionInfo:
        """Snapshot of a session's containers, timestamps and state.

        Raises:
            SessionNotFoundError: If the session is unknown.
        """
        return self._sessions.info(session_id)

    async def cleanup_session(self, session_id: str) -> None:
        """Tear a session down. Calling it again is a no-op.

        Pending executions are cancelled, the bound container is destroyed
        and the session workspace plus every per-execution workspace are
        removed (unless keep_workspaces).

        Raises:
            SessionNotFoundError: If the session was never created.
        """
        session = self._sessions.get(session_id)
        if not session.is_active:
            logger.debug(f"Session {session_id} already cleaned up")
            return
        session.is_active = False

        pending = [task for task in session.tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        handle = session.current_container
        if handle is not None and session.strategy is ContainerStrategy.PER_SESSION:
            await self._factory.destroy(handle, "session cleanup")
            self._sessions.retire_container(session, handle)

        if not self.config.keep_workspaces:
            for directory in (
                session.workspace_dir,
                self._sessions.executions_dir_for(session_id),
            ):
                await asyncio.to_thread(shutil.rmtree, directory, ignore_errors=True)
        logger.info(f"Cleaned up session {session_id}")

    def cancel_execution(self, session_id: str) -> int:
        """Cancel the session's queued and in-flight executions.

        A queued execution is dropped before it touches a container. An
        in-flight one is killed and its container destroyed. The awaiting
        callers see asyncio.CancelledError.

        Returns:
            Number of executions cancelled.
        """
        session = self._sessions.get(session_id)
        pending = [task for task in session.tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            logger.info(f"Cancelled {len(pending)} execution(s) in session {session_id}")
        return len(pending)

    def file_tools(
        self, session_id: str, path_mappings: Mapping[str, str] | None = None
    ) -> FileTools:
        """File tools rooted at the session workspace.

        Container paths under the container workdir map onto the root unless
        other path_mappings are given. For strategies other than PER_SESSION
        the files are copied into each execution's workspace before it runs.
        """
        session = self._sessions.get(session_id)
        session.ensure_active()
        if path_mappings is None:
            path_mappings = {self.config.container_workdir: "."}
        return FileTools(session.workspace_dir, path_mappings)

    # -- execution ----------------------------------------------------------

    async def execute_code(self, session_id: str, request: ExecutionRequest) -> ExecutionResult:
        """Run one request in the session, creating the session if unknown.

        Non-zero exits, dependency install failures and timeouts come back as
        results. Everything else raises.

        Raises:
            UnknownLanguageError: If the language is not registered.
            SessionClosedError: If the session was cleaned up.
            ProvisioningError: If no container could be created.
            PoolExhaustedError: If the pool stayed at capacity too long.
            PathSecurityError: If request files would escape the workspace.
            InvalidRequestError: If a run-app entry file does not exist.
        """
        session = self._sessions.get_or_create(session_id)
        session.ensure_active()
        language = self.registry.resolve(request.language)

        task = asyncio.create_task(self._dispatch(session, language, request))
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)
        return await task

    async def _dispatch(
        self, session: Session, language: LanguageConfig, request: ExecutionRequest
    ) -> ExecutionResult:
        container_config = session.config.container_config
        if container_config.image is None:
            container_config = container_config.with_image(language.default_image)

        if session.strategy is ContainerStrategy.PER_SESSION:
            return await self._execute_per_session(session, container_config, language, request)
        if session.strategy is ContainerStrategy.POOL:
            return await self._execute_pooled(session, container_config, language, request)
        return await self._execute_per_execution(session, container_config, language, request)

    async def _execute_per_execution(
        self,
        session: Session,
        container_config: ContainerConfig,
        language: LanguageConfig,
        request: ExecutionRequest,
    ) -> ExecutionResult:
        # Outlives the container so the caller can read generated files
        workspace = self._sessions.executions_dir_for(session.session_id) / uuid.uuid4().hex
        handle = await self._factory.provision(container_config, workspace)
        self._sessions.bind(session, handle)
        try:
            return await self._run_protocol(session, handle, language, request)
        finally:
            await self._factory.destroy(handle, "per-execution")
            self._sessions.retire_container(session, handle)

    async def _execute_pooled(
        self,
        session: Session,
        container_config: ContainerConfig,
        language: LanguageConfig,
        request: ExecutionRequest,
    ) -> ExecutionResult:
        pool = self._pool_for(session.config.pool_config)
        handle = await pool.acquire(container_config, request.workspace_sharing)
        self._sessions.bind(session, handle)
        self._sessions.borrowed_meta(session, handle)
        try:
            if not handle.shared_workspace:
                await asyncio.to_thread(clear_workspace, handle.workspace_dir)
            return await self._run_protocol(session, handle, language, request)
        finally:
            self._sessions.unbind(session, handle)
            await pool.release(handle, healthy=handle.healthy)

    async def _execute_per_session(
        self,
        session: Session,
        container_config: ContainerConfig,
        language: LanguageConfig,
        request: ExecutionRequest,
    ) -> ExecutionResult:
        async with session.lock:
            session.ensure_active()
            handle = await self._session_container(session, container_config)
            try:
                return await self._run_protocol(session, handle, language, request)
            finally:
                if not handle.healthy:
                    # Next request reprovisions onto the same workspace
                    await self._factory.destroy(handle, "unhealthy")
                    self._sessions.retire_container(session, handle)

    async def _session_container(
        self, session: Session, container_config: ContainerConfig
    ) -> ContainerHandle:
        current = session.current_container
        if current is not None and current.is_alive and current.healthy:
            if current.meta.image_name == container_config.image:
                return current
            logger.info(
                f"Session {session.session_id} switches image "
                f"{current.meta.image_name} -> {container_config.image}"
            )
            await self._factory.destroy(current, "image change")
            self._sessions.retire_container(session, current)
        elif current is not None:
            self._sessions.retire_container(session, current)

        handle = await self._factory.provision(
            container_config, session.workspace_dir, shared=True
        )
        self._sessions.bind(session, handle)
        return handle

    def _stage_files(
        self,
        session: Session,
        language: LanguageConfig,
        request: ExecutionRequest,
        workspace: Path,
    ) -> None:
        # Files laid out with file_tools() live in the session workspace
        staged = session.workspace_dir
        if staged.resolve() != workspace.resolve() and staged.is_dir() and any(staged.iterdir()):
            shutil.copytree(staged, workspace, symlinks=True, dirs_exist_ok=True)
        language.prepare_files(request, workspace)

    async def _exec_with_timeout(
        self,
        handle: ContainerHandle,
        command: list[str],
        request: ExecutionRequest,
        timeout: float,
        relay: _OutputRelay,
    ) -> ExecOutput | None:
        """Run command; None means it timed out and the container was killed."""
        try:
            return await asyncio.wait_for(
                self._runtime.exec(
                    handle.container,
                    command,
                    workdir=self.config.container_workdir,
                    environment=dict(request.environment) or None,
                    cpu_limit=request.cpu_limit,
                    memory_limit=request.memory_limit,
                    on_output=relay,
                ),
                timeout,
            )
        except TimeoutError:
            logger.warning(f"Execution in {handle.id[:12]} timed out after {timeout}s, killing")
            handle.mark_unhealthy()
            await self._runtime.kill(handle.container)
            return None

    async def _run_protocol(
        self,
        session: Session,
        handle: ContainerHandle,
        language: LanguageConfig,
        request: ExecutionRequest,
    ) -> ExecutionResult:
        sinks = request.streams or StreamSinks()
        timeout = request.timeout if request.timeout is not None else self.config.default_timeout
        workspace = handle.workspace_dir
        started = time.monotonic()

        await asyncio.to_thread(self._stage_files, session, language, request, workspace)

        handle.begin_execution()
        dep_relay = _OutputRelay(sinks.dependency_stdout, sinks.dependency_stderr)
        relay = _OutputRelay(sinks.stdout, sinks.stderr)
        dependency_output: ExecOutput | None = None
        output: ExecOutput | None = None
        exit_code = 0
        timed_out = False
        error: SandboxError | None = None
        generated: list[str] = []

        try:
            install = language.build_install_command(list(request.dependencies))
            if install is not None:
                logger.debug(f"Installing {list(request.dependencies)} in {handle.id[:12]}")
                dependency_output = await self._exec_with_timeout(
                    handle, install, request, timeout, dep_relay
                )
                if dependency_output is None:
                    timed_out = True
                elif dependency_output.exit_code != 0:
                    # A half-installed environment must not serve anyone else
                    handle.mark_unhealthy()
                    exit_code = dependency_output.exit_code
                    error = DependencyInstallError(
                        language.language, list(request.dependencies), exit_code
                    )
                    logger.warning(str(error))

            if error is None and not timed_out:
                baseline = await asyncio.to_thread(snapshot_workspace, workspace)
                command = language.build_command(request)
                logger.debug(f"Running {command} in {handle.id[:12]}")
                output = await self._exec_with_timeout(handle, command, request, timeout, relay)
                if output is None:
                    timed_out = True
                else:
                    exit_code = output.exit_code
                after = await asyncio.to_thread(snapshot_workspace, workspace)
                generated = diff_snapshots(baseline, after)

            if timed_out:
                exit_code = TIMEOUT_EXIT_CODE
                error = ExecutionTimeoutError(timeout)
        except asyncio.CancelledError:
            logger.info(f"Execution in {handle.id[:12]} cancelled, killing container")
            handle.mark_unhealthy()
            await self._runtime.kill(handle.container)
            raise
        except BaseException:
            handle.mark_unhealthy()
            raise
        finally:
            await dep_relay.close()
            await relay.close()
            handle.meta.last_executed_at = datetime.now(UTC)
            session.last_executed_at = handle.meta.last_executed_at
            if handle.healthy:
                handle.end_execution()

        if handle.pool_key is None:
            container_meta = handle.meta
        else:
            container_meta = self._sessions.borrowed_meta(session, handle)
            container_meta.last_executed_at = handle.meta.last_executed_at
        container_meta.record_generated(generated)
        session.generated_files.update(generated)

        def _text(result: ExecOutput | None, buffered: _OutputRelay, stream: str) -> str:
            if result is not None:
                return getattr(result, stream)
            return buffered.text(stream)

        return ExecutionResult(
            stdout=_text(output, relay, "stdout"),
            stderr=_text(output, relay, "stderr"),
            dependency_stdout=_text(dependency_output, dep_relay, "stdout"),
            dependency_stderr=_text(dependency_output, dep_relay, "stderr"),
            exit_code=exit_code,
            execution_time=time.monotonic() - started,
            workspace_dir=str(workspace),
            generated_files=generated,
            session_generated_files=sorted(container_meta.session_generated_files),
            timed_out=timed_out,
            error=error,
        )

    # -- pools --------------------------------------------------------------

    def _pool_for(self, pool_config: PoolConfig | None) -> ContainerPool:
        """One pool per distinct pool configuration."""
        pool_config = pool_config or self.config.pool
        key = dataclasses.astuple(pool_config)
        pool = self._pools.get(key)
        if pool is None:
            pool = ContainerPool(self._factory, pool_config)
            pool.start()
            self._pools[key] = pool
        return pool

    def pool_stats(self) -> list[dict[str, dict[str, Any]]]:
        return [pool.stats() for pool in self._pools.values()]

    async def close(self) -> None:
        """Clean up every active session and close the pools."""
        if self._closed:
            return
        self._closed = True
        for session in self._sessions.active_sessions():
            await self.cleanup_session(session.session_id)
        for pool in self._pools.values():
            await pool.close()
        self._pools.clear()
