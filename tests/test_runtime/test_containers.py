"""Tests for the container manager."""

import subprocess
import time

import pytest
from pydantic import ValidationError

from horizon.errors import ContainerError, ContainerNotFoundError, DuplicateContainerError
from horizon.models.container import (
    ContainerInfo, ContainerRuntime, ContainerSpec, ContainerStatus, HealthCheck, HealthStatus,
    Mount,
)
from horizon.models.snapshot import ContainersConfig
from horizon.runtime.containers import ContainerManager, parse_size, parse_stats


@pytest.fixture
def manager(tmp_path, runner):
    runner.on("podman", "create", stdout="0123456789abcdef\n")
    return ContainerManager(runner, bin_dir=tmp_path / "bin", command_timeout=30)


def _spec(**fields):
    data = {"name": "dev", "image": "archlinux"}
    data.update(fields)
    return ContainerSpec(**data)


class TestCreateCommand:
    """Test runtime argument construction."""

    def test_full_command(self):
        spec = _spec(
            hostname="devbox",
            environment={"EDITOR": "vim"},
            ports=["8080:80"],
            persistent=[Mount(source="/data", target="/data")],
            network_mode="host",
            privileged=True,
            digest="sha256:abc",
        )
        cmd = ContainerManager.build_create_command(
            spec, [Mount(source="/home", target="/home", read_only=True)]
        )

        assert cmd[:4] == ["podman", "create", "--name", "dev"]
        assert cmd[cmd.index("--hostname") + 1] == "devbox"
        assert cmd[cmd.index("--env") + 1] == "EDITOR=vim"
        assert cmd[cmd.index("--publish") + 1] == "8080:80"
        volumes = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "--volume"]
        assert volumes == ["/home:/home:ro", "/data:/data"]
        assert cmd[cmd.index("--network") + 1] == "host"
        assert "--privileged" in cmd
        assert cmd[-1] == "archlinux@sha256:abc"

    def test_runtime_binary(self):
        cmd = ContainerManager.build_create_command(_spec(runtime=ContainerRuntime.DOCKER))
        assert cmd[0] == "docker"


@pytest.mark.asyncio
class TestContainerLifecycle:
    """Test create, start, stop and remove."""

    async def test_create_plain_container(self, manager, runner):
        info = await manager.create(_spec())

        assert info.id == "0123456789ab"
        assert info.status == ContainerStatus.CREATED
        assert runner.called("podman", "start") == []
        assert "dev" in manager

    async def test_create_provisions_packages_and_stops(self, manager, runner):
        info = await manager.create(_spec(packages=["git", "ripgrep"], post_commands=["echo hi"]))

        assert [c[1] for c in runner.calls] == ["create", "start", "exec", "exec", "stop"]
        install = runner.called("podman", "exec")[0]
        assert install[-1] == "pacman -S --noconfirm --needed git ripgrep"
        assert info.status == ContainerStatus.STOPPED

    async def test_auto_start_stays_running(self, manager, runner):
        info = await manager.create(_spec(auto_start=True))

        assert info.status == ContainerStatus.RUNNING
        assert runner.called("podman", "stop") == []

    async def test_failed_step_is_named(self, manager, runner):
        runner.fail("podman", "exec", stderr="target not found: ripgrep")

        with pytest.raises(ContainerError) as exc_info:
            await manager.create(_spec(packages=["ripgrep"]))

        assert exc_info.value.step == "install_packages"
        assert "ripgrep" in str(exc_info.value)
        assert manager.get("dev").status == ContainerStatus.ERROR

    async def test_timeout_becomes_container_error(self, manager, runner):
        runner.raise_on("podman", "create", error=subprocess.TimeoutExpired(["podman"], 900))

        with pytest.raises(ContainerError) as exc_info:
            await manager.create(_spec())
        assert exc_info.value.step == "create"

    async def test_duplicate_name(self, manager):
        await manager.create(_spec())
        with pytest.raises(DuplicateContainerError):
            await manager.create(_spec(image="fedora"))

    async def test_unknown_container(self, manager):
        with pytest.raises(ContainerNotFoundError):
            await manager.start("ghost")

    async def test_binaries_exported_and_removed(self, manager, tmp_path):
        await manager.create(_spec(binaries=["/usr/bin/rg"]))
        shim = tmp_path / "bin" / "rg"

        assert 'exec podman exec dev /usr/bin/rg "$@"' in shim.read_text()
        assert shim.stat().st_mode & 0o111

        await manager.remove("dev", force=True)
        assert not shim.exists()
        assert "dev" not in manager

    async def test_remove_releases_name_lock(self, manager):
        await manager.create(_spec())
        await manager.remove("dev")

        assert "dev" not in manager._name_locks

    async def test_shim_collision_is_rejected(self, manager, tmp_path):
        await manager.create(_spec(binaries=["/usr/bin/rg"]))
        shim = tmp_path / "bin" / "rg"

        with pytest.raises(ContainerError) as exc_info:
            await manager.create(_spec(name="tools", binaries=["/opt/bin/rg"]))

        assert exc_info.value.step == "export_binaries"
        assert "exec podman exec dev" in shim.read_text()

        await manager.remove("tools", force=True)
        assert shim.exists()
        await manager.remove("dev", force=True)
        assert not shim.exists()

    async def test_adopt_registers_without_running_anything(self, manager, runner, tmp_path):
        spec = _spec(binaries=["/usr/bin/rg"])
        info = ContainerInfo(id="0123456789ab", name="dev", image=spec.image_reference)

        assert await manager.adopt(spec, info)
        assert not await manager.adopt(spec, info)
        assert runner.calls == []
        assert manager.get("dev").id == "0123456789ab"

        shim = tmp_path / "bin" / "rg"
        shim.parent.mkdir(parents=True)
        shim.write_text("#!/bin/sh\n")
        await manager.remove("dev", force=True)
        assert not shim.exists()

    async def test_errored_container_can_be_removed(self, manager, runner):
        runner.fail("podman", "create")
        with pytest.raises(ContainerError):
            await manager.create(_spec())
        runner.fail("podman", "rm", stderr="no such container")

        await manager.remove("dev", force=True)
        assert "dev" not in manager

    async def test_cleanup_removes_everything(self, manager, runner):
        await manager.create(_spec())
        await manager.create(_spec(name="tools"))

        await manager.cleanup()

        assert await manager.list() == []
        assert len(runner.called("podman", "rm", "-f")) == 2

    async def test_deploy_collects_errors(self, manager, runner):
        runner.fail("podman", "create", "--name", "bad")
        config = ContainersConfig(containers=(_spec(), _spec(name="bad")))

        deployed, errors = await manager.deploy_containers(config)

        assert [c.name for c in deployed] == ["dev"]
        assert len(errors) == 1 and "bad" in errors[0]


@pytest.mark.asyncio
class TestStatusAndHealth:
    """Test runtime queries."""

    async def test_status_requeried(self, manager, runner):
        await manager.create(_spec())
        runner.on("podman", "inspect", stdout="running\n")

        assert await manager.status("dev") == ContainerStatus.RUNNING
        assert await manager.status("ghost") == ContainerStatus.UNKNOWN

    async def test_liveness_without_probe(self, manager, runner):
        await manager.create(_spec())
        runner.on("podman", "inspect", stdout="exited\n")

        assert await manager.health_check("dev") == HealthStatus.UNHEALTHY

    async def test_probe_retries(self, manager, runner):
        probe = HealthCheck(command=["pg_isready"], retries=2, interval="10ms")
        await manager.create(_spec(health_check=probe))
        runner.on("podman", "inspect", stdout="running\n")
        runner.fail("podman", "exec")

        assert await manager.health_check("dev") == HealthStatus.UNHEALTHY
        assert len(runner.called("podman", "exec", "dev", "pg_isready")) == 2

        runner.on("podman", "exec")
        assert await manager.health_check("dev") == HealthStatus.HEALTHY

    async def test_health_check_honours_timeout_and_interval(self, manager, runner):
        probe = HealthCheck(command=["pg_isready"], retries=3, interval="50ms", timeout="2s")
        await manager.create(_spec(health_check=probe))
        runner.on("podman", "inspect", stdout="running\n")
        runner.fail("podman", "exec")

        started = time.monotonic()
        assert await manager.health_check("dev") == HealthStatus.UNHEALTHY

        assert time.monotonic() - started >= 0.09
        exec_timeouts = [
            timeout for call, timeout in zip(runner.calls, runner.timeouts)
            if call[:2] == ["podman", "exec"]
        ]
        assert exec_timeouts == [2.0, 2.0, 2.0]

    async def test_logs(self, manager, runner):
        await manager.create(_spec())
        runner.on("podman", "logs", stdout="ready\n")

        assert await manager.logs("dev", lines=50) == "ready\n"
        assert runner.calls[-1] == ["podman", "logs", "--tail", "50", "dev"]

        runner.fail("podman", "logs", stderr="no such container")
        with pytest.raises(ContainerError) as exc_info:
            await manager.logs("dev")
        assert exc_info.value.step == "logs"

    async def test_exec_string_uses_shell(self, manager, runner):
        await manager.create(_spec())
        runner.on("podman", "exec", stdout="hello\n")

        result = await manager.exec("dev", "echo hello")

        assert result.stdout == "hello\n"
        assert runner.calls[-1] == ["podman", "exec", "dev", "sh", "-c", "echo hello"]

    async def test_stats(self, manager, runner):
        await manager.create(_spec())
        runner.on("podman", "stats", stdout=(
            '[{"CPUPerc": "1.50%", "MemUsage": "10MiB / 1GiB", '
            '"NetIO": "1kB / 2kB", "BlockIO": "0B / 4kB"}]'
        ))

        stats = await manager.stats("dev")

        assert stats.cpu_percent == 1.5
        assert stats.memory_usage == 10 * 1024 ** 2
        assert stats.memory_limit == 1024 ** 3
        assert stats.network_out == 2000
        assert stats.block_io == 4000


class TestParsing:
    """Test output parsing helpers."""

    def test_health_check_durations_are_validated(self):
        probe = HealthCheck(command=["true"], interval="1m", timeout="500ms")
        assert probe.interval_seconds == 60
        assert probe.timeout_seconds == 0.5
        with pytest.raises(ValidationError):
            HealthCheck(command=["true"], interval="soon")

    def test_parse_size(self):
        assert parse_size("1.5MiB") == int(1.5 * 1024 ** 2)
        assert parse_size("12kB") == 12000
        assert parse_size("garbage") == 0

    def test_parse_stats_empty(self):
        assert parse_stats("") is None
        assert parse_stats("[]") is None
