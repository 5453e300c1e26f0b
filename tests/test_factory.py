"""Tests for container provisioning and teardown."""

import zipfile
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from py_code_sandbox.config import EngineConfig
from py_code_sandbox.containers.config import ContainerConfig, Mount, MountType
from py_code_sandbox.containers.factory import MANAGED_LABEL, ContainerFactory
from py_code_sandbox.containers.handle import ContainerState
from py_code_sandbox.errors import ConfigurationError, ContainerRuntimeError, ProvisioningError
from tests.conftest import FakeRuntime

ALPINE = ContainerConfig(image="alpine:3.20")


class TestProvision:
    @pytest.mark.asyncio
    async def test_provision_returns_ready_handle(
        self, fake_runtime: FakeRuntime, engine_config: EngineConfig
    ) -> None:
        factory = ContainerFactory(fake_runtime, engine_config)

        handle = await factory.provision(ALPINE)

        assert handle.state is ContainerState.READY
        assert handle.meta.image_name == "alpine:3.20"
        assert handle.workspace_dir.is_dir()
        assert handle.workspace_dir.is_relative_to(engine_config.workspace_root)
        assert fake_runtime.live == {handle.id}

    @pytest.mark.asyncio
    async def test_managed_label_applied(self, engine_config: EngineConfig) -> None:
        runtime = FakeRuntime()
        runtime.create = AsyncMock(wraps=runtime.create)  # type: ignore[method-assign]
        factory = ContainerFactory(runtime, engine_config)

        await factory.provision(ALPINE)

        labels = runtime.create.call_args.args[3]
        assert labels[MANAGED_LABEL] == "true"

    @pytest.mark.asyncio
    async def test_no_image_is_configuration_error(
        self, fake_runtime: FakeRuntime, engine_config: EngineConfig
    ) -> None:
        factory = ContainerFactory(fake_runtime, engine_config)
        with pytest.raises(ConfigurationError, match="no image"):
            await factory.provision(ContainerConfig())
        assert fake_runtime.create_calls == 0

    @pytest.mark.asyncio
    async def test_missing_mount_source(
        self, fake_runtime: FakeRuntime, engine_config: EngineConfig, tmp_path: Path
    ) -> None:
        config = ContainerConfig(
            image="alpine:3.20",
            mounts=(Mount(MountType.DIRECTORY, str(tmp_path / "missing"), "/data"),),
        )
        factory = ContainerFactory(fake_runtime, engine_config)
        with pytest.raises(ConfigurationError, match="not found"):
            await factory.provision(config)
        assert fake_runtime.create_calls == 0

    @pytest.mark.asyncio
    async def test_zip_mount_copied_in(
        self, fake_runtime: FakeRuntime, engine_config: EngineConfig, tmp_path: Path
    ) -> None:
        archive = tmp_path / "bundle.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("data/input.csv", "a,b\n1,2\n")
            zf.writestr("README", "bundle")
        config = ContainerConfig(
            image="alpine:3.20",
            mounts=(Mount(MountType.ZIP, str(archive), "/workspace/bundle"),),
        )
        factory = ContainerFactory(fake_runtime, engine_config)

        handle = await factory.provision(config)

        container_id, names, target = fake_runtime.copied[0]
        assert container_id == handle.id
        assert target == "/workspace/bundle"
        assert "data/input.csv" in names
        assert (handle.workspace_dir / "bundle" / "README").read_text() == "bundle"

    @pytest.mark.asyncio
    async def test_not_a_zip_rejected(
        self, fake_runtime: FakeRuntime, engine_config: EngineConfig, tmp_path: Path
    ) -> None:
        bogus = tmp_path / "bogus.zip"
        bogus.write_text("not a zip")
        config = ContainerConfig(
            image="alpine:3.20", mounts=(Mount(MountType.ZIP, str(bogus), "/data"),)
        )
        with pytest.raises(ConfigurationError, match="zip"):
            await ContainerFactory(fake_runtime, engine_config).provision(config)


class TestProvisionRetries:
    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, engine_config: EngineConfig) -> None:
        runtime = FakeRuntime(fail_creates=2)
        factory = ContainerFactory(runtime, engine_config)

        handle = await factory.provision(ALPINE)

        assert handle.state is ContainerState.READY
        assert runtime.create_calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self, engine_config: EngineConfig) -> None:
        runtime = FakeRuntime(fail_creates=10)
        factory = ContainerFactory(runtime, engine_config)

        with pytest.raises(ProvisioningError) as exc_info:
            await factory.provision(ALPINE)

        assert exc_info.value.attempts == engine_config.provisioning_retries
        assert isinstance(exc_info.value.cause, ContainerRuntimeError)
        assert runtime.create_calls == engine_config.provisioning_retries
        # The workspace it made for the attempt is gone too
        containers_dir = engine_config.workspace_root / "containers"
        assert not containers_dir.exists() or list(containers_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_failed_start_does_not_leak(self, engine_config: EngineConfig) -> None:
        """A container that was created but failed to start is removed."""
        runtime = FakeRuntime(fail_starts=1)
        factory = ContainerFactory(runtime, engine_config)

        handle = await factory.provision(ALPINE)

        assert len(runtime.created) == 2
        assert runtime.removed == [runtime.created[0]]
        assert runtime.live == {handle.id}

    @pytest.mark.asyncio
    async def test_caller_workspace_kept_on_failure(
        self, engine_config: EngineConfig, tmp_path: Path
    ) -> None:
        runtime = FakeRuntime(fail_creates=10)
        workspace = tmp_path / "session-ws"
        workspace.mkdir()
        (workspace / "keep.txt").write_text("keep")

        with pytest.raises(ProvisioningError):
            await ContainerFactory(runtime, engine_config).provision(ALPINE, workspace)

        assert (workspace / "keep.txt").exists()


class TestDestroy:
    @pytest.mark.asyncio
    async def test_destroy_stops_removes_and_cleans_workspace(
        self, fake_runtime: FakeRuntime, engine_config: EngineConfig
    ) -> None:
        factory = ContainerFactory(fake_runtime, engine_config)
        handle = await factory.provision(ALPINE)

        await factory.destroy(handle)

        assert handle.state is ContainerState.DESTROYED
        assert fake_runtime.stopped == [handle.id]
        assert fake_runtime.removed == [handle.id]
        assert not handle.workspace_dir.exists()

    @pytest.mark.asyncio
    async def test_destroy_is_idempotent(
        self, fake_runtime: FakeRuntime, engine_config: EngineConfig
    ) -> None:
        factory = ContainerFactory(fake_runtime, engine_config)
        handle = await factory.provision(ALPINE)

        await factory.destroy(handle)
        await factory.destroy(handle)

        assert fake_runtime.removed == [handle.id]

    @pytest.mark.asyncio
    async def test_shared_workspace_survives(
        self, fake_runtime: FakeRuntime, engine_config: EngineConfig, tmp_path: Path
    ) -> None:
        workspace = tmp_path / "shared"
        factory = ContainerFactory(fake_runtime, engine_config)
        handle = await factory.provision(ALPINE, workspace, shared=True)

        await factory.destroy(handle)

        assert workspace.is_dir()

    @pytest.mark.asyncio
    async def test_caller_workspace_survives(
        self, fake_runtime: FakeRuntime, engine_config: EngineConfig, tmp_path: Path
    ) -> None:
        workspace = tmp_path / "executions" / "one"
        factory = ContainerFactory(fake_runtime, engine_config)
        handle = await factory.provision(ALPINE, workspace)
        (workspace / "out.txt").write_text("result")

        await factory.destroy(handle)

        assert not handle.owns_workspace
        assert (workspace / "out.txt").read_text() == "result"

    @pytest.mark.asyncio
    async def test_remove_failure_is_logged_not_raised(
        self, fake_runtime: FakeRuntime, engine_config: EngineConfig, caplog
    ) -> None:
        factory = ContainerFactory(fake_runtime, engine_config)
        handle = await factory.provision(ALPINE)
        fake_runtime.remove = AsyncMock(  # type: ignore[method-assign]
            side_effect=ContainerRuntimeError("remove", RuntimeError("device busy"))
        )

        await factory.destroy(handle, "test")

        assert handle.state is ContainerState.DESTROYED
        assert "device busy" in caplog.text
