"""Container lifecycle management over OCI runtimes."""

import asyncio
import json
import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from horizon.errors import ContainerError, ContainerNotFoundError, DuplicateContainerError
from horizon.models.container import (
    ContainerInfo, ContainerRuntime, ContainerSpec, ContainerStatus, HealthStatus,
    Mount, RuntimeStats,
)
from horizon.models.snapshot import ContainersConfig
from horizon.utils.atomic import atomic_write_text
from horizon.utils.process import CommandResult, CommandRunner
from horizon.utils.templates import render_template, BINARY_SHIM_TEMPLATE


logger = logging.getLogger(__name__)

# Image pulls and package installs run far longer than ordinary commands
PROVISION_TIMEOUT = 900

PACKAGE_INSTALL_COMMANDS = {
    ContainerRuntime.PODMAN: "pacman -S --noconfirm --needed",
    ContainerRuntime.DOCKER: "pacman -S --noconfirm --needed",
    ContainerRuntime.DISTROBOX: "pacman -S --noconfirm --needed",
    ContainerRuntime.TOOLBOX: "dnf install -y",
}

RUNTIME_STATUS = {
    "created": ContainerStatus.CREATED,
    "configured": ContainerStatus.CREATED,
    "running": ContainerStatus.RUNNING,
    "stopped": ContainerStatus.STOPPED,
    "exited": ContainerStatus.EXITED,
    "paused": ContainerStatus.PAUSED,
}

LIVENESS_HEALTH = {
    ContainerStatus.RUNNING: HealthStatus.HEALTHY,
    ContainerStatus.CREATED: HealthStatus.STARTING,
    ContainerStatus.STOPPED: HealthStatus.UNHEALTHY,
    ContainerStatus.EXITED: HealthStatus.UNHEALTHY,
    ContainerStatus.ERROR: HealthStatus.UNHEALTHY,
}

_SIZE_UNITS = {
    "": 1, "b": 1,
    "kb": 1000, "mb": 1000 ** 2, "gb": 1000 ** 3, "tb": 1000 ** 4,
    "kib": 1024, "mib": 1024 ** 2, "gib": 1024 ** 3, "tib": 1024 ** 4,
}
_SIZE_RE = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*([A-Za-z]*)\s*$")


def parse_size(value: str) -> int:
    """Parse a runtime size string such as ``1.5MiB`` into bytes."""
    match = _SIZE_RE.match(value or "")
    if not match:
        return 0
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS.get(unit.lower(), 1))


def _split_pair(value: str) -> Tuple[int, int]:
    left, _, right = (value or "").partition("/")
    return parse_size(left), parse_size(right)


def parse_stats(output: str) -> Optional[RuntimeStats]:
    """Parse ``stats --format json --no-stream`` output from podman or docker."""
    output = output.strip()
    if not output:
        return None
    try:
        data = json.loads(output.splitlines()[0] if output.startswith("{") else output)
    except ValueError:
        logger.debug(f"Unparseable stats output: {output!r}")
        return None
    if isinstance(data, list):
        if not data:
            return None
        data = data[0]

    cpu = str(data.get("CPUPerc") or data.get("cpu_percent") or data.get("CPU") or "0")
    mem = str(data.get("MemUsage") or data.get("mem_usage") or "")
    net = str(data.get("NetIO") or data.get("net_io") or "")
    block = str(data.get("BlockIO") or data.get("block_io") or "")

    memory_usage, memory_limit = _split_pair(mem)
    network_in, network_out = _split_pair(net)
    block_in, block_out = _split_pair(block)
    try:
        cpu_percent = float(cpu.rstrip("%") or 0)
    except ValueError:
        cpu_percent = 0.0

    return RuntimeStats(
        cpu_percent=cpu_percent,
        memory_usage=memory_usage,
        memory_limit=memory_limit,
        network_in=network_in,
        network_out=network_out,
        block_io=block_in + block_out,
    )


@dataclass
class ManagedContainer:
    """Registry entry: declared spec, cached metadata and exported shims."""
    spec: ContainerSpec
    info: ContainerInfo
    shims: List[Path] = field(default_factory=list)


class ContainerManager:
    """Owns the lifecycle of OS-level containers.

    The registry is the source of truth for identity and declared spec only;
    runtime status is always re-queried. Operations on one name are
    serialised, and registry mutations happen under a single lock.
    """

    def __init__(
        self,
        runner: CommandRunner,
        bin_dir: Path = Path("/usr/local/bin"),
        command_timeout: Optional[float] = None,
    ):
        self.runner = runner
        self.bin_dir = Path(bin_dir)
        self.command_timeout = command_timeout
        self._containers: Dict[str, ManagedContainer] = {}
        self._registry_lock = asyncio.Lock()
        self._name_locks: Dict[str, asyncio.Lock] = {}
        self._shim_owners: Dict[Path, str] = {}

    def _lock_for(self, name: str) -> asyncio.Lock:
        return self._name_locks.setdefault(name, asyncio.Lock())

    async def _forget(self, entry: ManagedContainer):
        """Drop a container from the registry along with its shims and lock."""
        name = entry.spec.name
        owned = [path for path, owner in self._shim_owners.items() if owner == name]
        await self._delete_shims(name, owned)
        async with self._registry_lock:
            self._containers.pop(name, None)
        self._name_locks.pop(name, None)

    def _entry(self, name: str) -> ManagedContainer:
        entry = self._containers.get(name)
        if entry is None:
            raise ContainerNotFoundError(name)
        return entry

    def __contains__(self, name: str) -> bool:
        return name in self._containers

    async def _run_step(self, name: str, step: str, args: List[str],
                        timeout: Optional[float] = None) -> CommandResult:
        """Run one runtime invocation, converting failures to ContainerError."""
        try:
            result = await self.runner.run(args, timeout=timeout or self.command_timeout)
        except subprocess.TimeoutExpired as e:
            raise ContainerError(name, step, f"timed out after {e.timeout}s") from e
        if not result.ok:
            message = result.stderr.strip() or f"exit code {result.returncode}"
            raise ContainerError(name, step, message)
        return result

    @staticmethod
    def build_create_command(spec: ContainerSpec,
                             global_mounts: Iterable[Mount] = ()) -> List[str]:
        """Build the ``<runtime> create`` invocation for a spec."""
        cmd = [spec.runtime.value, "create", "--name", spec.name]

        if spec.hostname:
            cmd += ["--hostname", spec.hostname]
        if spec.user:
            cmd += ["--user", spec.user]
        if spec.working_dir:
            cmd += ["--workdir", spec.working_dir]
        for key, value in spec.environment.items():
            cmd += ["--env", f"{key}={value}"]
        for port in spec.ports:
            cmd += ["--publish", port]
        for mount in [*global_mounts, *spec.persistent]:
            cmd += ["--volume", mount.volume_arg()]
        for key, value in spec.labels.items():
            cmd += ["--label", f"{key}={value}"]
        if spec.network_mode != "bridge":
            cmd += ["--network", spec.network_mode]
        if spec.privileged:
            cmd.append("--privileged")

        cmd.append(spec.image_reference)
        return cmd

    def package_install_command(self, spec: ContainerSpec) -> str:
        base = spec.package_manager or PACKAGE_INSTALL_COMMANDS[spec.runtime]
        return f"{base} {' '.join(spec.packages)}"

    async def create(self, spec: ContainerSpec,
                     global_mounts: Sequence[Mount] = ()) -> ContainerInfo:
        """Create and provision a container.

        Raises ContainerError naming the failed sub-step. A container whose
        provisioning failed stays registered with status ``error``.
        """
        async with self._lock_for(spec.name):
            async with self._registry_lock:
                if spec.name in self._containers:
                    raise DuplicateContainerError(spec.name)
                entry = ManagedContainer(
                    spec=spec,
                    info=ContainerInfo(
                        name=spec.name,
                        image=spec.image_reference,
                        runtime=spec.runtime,
                        ports=list(spec.ports),
                        mounts=[m.volume_arg() for m in [*global_mounts, *spec.persistent]],
                    ),
                )
                self._containers[spec.name] = entry

            logger.info(f"Creating container {spec.name} from {spec.image_reference}")
            try:
                await self._provision(entry, global_mounts)
            except ContainerError as e:
                logger.error(str(e))
                entry.info.status = ContainerStatus.ERROR
                entry.info.health = HealthStatus.UNHEALTHY
                entry.info.error = str(e)
                raise

            logger.info(f"Container {spec.name} created")
            return entry.info.model_copy()

    async def _provision(self, entry: ManagedContainer, global_mounts: Sequence[Mount]):
        spec = entry.spec
        runtime = spec.runtime.value

        result = await self._run_step(
            spec.name, "create", self.build_create_command(spec, global_mounts),
            timeout=PROVISION_TIMEOUT
        )
        entry.info.id = result.stdout.strip()[:12]
        entry.info.status = ContainerStatus.CREATED

        if spec.packages or spec.post_commands or spec.auto_start:
            await self._run_step(spec.name, "start", [runtime, "start", spec.name])
            entry.info.status = ContainerStatus.RUNNING

        if spec.packages:
            await self._run_step(
                spec.name, "install_packages",
                [runtime, "exec", spec.name, "sh", "-c", self.package_install_command(spec)],
                timeout=PROVISION_TIMEOUT
            )

        for command in spec.post_commands:
            await self._run_step(
                spec.name, "post_command",
                [runtime, "exec", spec.name, "sh", "-c", command],
                timeout=PROVISION_TIMEOUT
            )

        if spec.binaries:
            entry.shims = await self._write_shims(spec)

        if entry.info.status == ContainerStatus.RUNNING and not spec.auto_start:
            await self._run_step(spec.name, "stop", [runtime, "stop", spec.name])
            entry.info.status = ContainerStatus.STOPPED

    async def start(self, name: str):
        """Start the container."""
        async with self._lock_for(name):
            entry = self._entry(name)
            logger.info(f"Starting container {name}")
            await self._run_step(name, "start", [entry.spec.runtime.value, "start", name])
            entry.info.status = ContainerStatus.RUNNING

    async def stop(self, name: str):
        """Stop the container."""
        async with self._lock_for(name):
            entry = self._entry(name)
            logger.info(f"Stopping container {name}")
            await self._run_step(name, "stop", [entry.spec.runtime.value, "stop", name])
            entry.info.status = ContainerStatus.STOPPED

    async def remove(self, name: str, force: bool = False):
        """Remove the container and its exported shims."""
        async with self._lock_for(name):
            entry = self._entry(name)
            logger.info(f"Removing container {name}")
            cmd = [entry.spec.runtime.value, "rm"]
            if force:
                cmd.append("-f")
            cmd.append(name)
            try:
                await self._run_step(name, "remove", cmd)
            except ContainerError:
                # A failed create may have left nothing behind to remove
                if entry.info.status != ContainerStatus.ERROR:
                    raise
                logger.warning(f"Dropping container {name} that the runtime does not know")

            await self._forget(entry)

    async def status(self, name: str) -> ContainerStatus:
        """Query the runtime for the container status."""
        entry = self._containers.get(name)
        if entry is None:
            return ContainerStatus.UNKNOWN

        try:
            result = await self.runner.run(
                [entry.spec.runtime.value, "inspect", "--format", "{{.State.Status}}", name],
                timeout=self.command_timeout
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"Timed out inspecting container {name}")
            return ContainerStatus.UNKNOWN

        if not result.ok:
            if entry.info.status == ContainerStatus.ERROR:
                return ContainerStatus.ERROR
            return ContainerStatus.UNKNOWN

        status = RUNTIME_STATUS.get(result.stdout.strip().lower(), ContainerStatus.UNKNOWN)
        if status != ContainerStatus.UNKNOWN:
            entry.info.status = status
        return status

    async def stats(self, name: str) -> Optional[RuntimeStats]:
        """Resource usage of a container, None if unavailable."""
        entry = self._containers.get(name)
        if entry is None:
            return None
        try:
            result = await self.runner.run(
                [entry.spec.runtime.value, "stats", "--format", "json", "--no-stream", name],
                timeout=self.command_timeout
            )
        except subprocess.TimeoutExpired:
            return None
        if not result.ok:
            return None
        return parse_stats(result.stdout)

    async def exec(self, name: str, command: Union[str, List[str]],
                   timeout: Optional[float] = None) -> CommandResult:
        """Execute a command inside the container."""
        entry = self._entry(name)
        if isinstance(command, str):
            command = ["sh", "-c", command]
        args = [entry.spec.runtime.value, "exec", name, *command]
        try:
            return await self.runner.run(args, timeout=timeout or self.command_timeout)
        except subprocess.TimeoutExpired as e:
            raise ContainerError(name, "exec", f"timed out after {e.timeout}s") from e

    async def logs(self, name: str, lines: int = 100) -> str:
        """The last ``lines`` lines of the container's output."""
        entry = self._entry(name)
        result = await self._run_step(
            name, "logs", [entry.spec.runtime.value, "logs", "--tail", str(lines), name]
        )
        # the runtime replays the container's stderr on its own stderr
        return result.stdout + result.stderr

    async def export_binaries(self, spec: ContainerSpec) -> List[Path]:
        """Write host shims forwarding each declared binary into the container."""
        async with self._lock_for(spec.name):
            entry = self._entry(spec.name)
            shims = await self._write_shims(spec)
            entry.shims = sorted(set(entry.shims) | set(shims))
            return shims

    def _claim_shims(self, spec: ContainerSpec) -> List[Path]:
        """Reserve one shim path per binary; a path owned by another container is an error."""
        paths = [self.bin_dir / Path(binary).name for binary in spec.binaries]
        for path in paths:
            owner = self._shim_owners.get(path)
            if owner is not None and owner != spec.name:
                raise ContainerError(
                    spec.name, "export_binaries", f"{path} is already exported by {owner}"
                )
        for path in paths:
            self._shim_owners[path] = spec.name
        return paths

    async def _write_shims(self, spec: ContainerSpec) -> List[Path]:
        shims = []
        paths = self._claim_shims(spec)
        try:
            for binary, path in zip(spec.binaries, paths):
                content = render_template(
                    BINARY_SHIM_TEMPLATE,
                    container_name=spec.name,
                    runtime=spec.runtime.value,
                    binary=binary,
                    interactive=False,
                )
                await asyncio.to_thread(atomic_write_text, path, content, 0o755)
                shims.append(path)
                logger.debug(f"Exported {binary} from {spec.name} to {path}")
        except OSError as e:
            raise ContainerError(spec.name, "export_binaries", str(e)) from e
        return shims

    async def _delete_shims(self, name: str, shims: Iterable[Path]):
        for path in shims:
            if self._shim_owners.get(path) != name:
                continue
            del self._shim_owners[path]
            try:
                await asyncio.to_thread(path.unlink, True)
            except OSError as e:
                logger.warning(f"Failed to remove shim {path}: {e}")

    async def health_check(self, name: str) -> HealthStatus:
        """Probe health, falling back to liveness when no probe is configured."""
        entry = self._containers.get(name)
        if entry is None:
            return HealthStatus.UNKNOWN

        status = await self.status(name)
        probe = entry.spec.health_check
        if status != ContainerStatus.RUNNING or probe is None:
            health = LIVENESS_HEALTH.get(status, HealthStatus.UNKNOWN)
        else:
            health = HealthStatus.UNHEALTHY
            for attempt in range(1, probe.retries + 1):
                if attempt > 1:
                    await asyncio.sleep(probe.interval_seconds)
                try:
                    result = await self.exec(name, list(probe.command), timeout=probe.timeout_seconds)
                except ContainerError as e:
                    logger.debug(f"Health probe for {name} failed (attempt {attempt}): {e}")
                    continue
                if result.ok:
                    health = HealthStatus.HEALTHY
                    break
                logger.debug(f"Health probe for {name} exited {result.returncode} (attempt {attempt})")

        entry.info.health = health
        return health

    def get(self, name: str) -> Optional[ContainerInfo]:
        """Cached metadata of a registered container."""
        entry = self._containers.get(name)
        return entry.info.model_copy() if entry else None

    def get_spec(self, name: str) -> Optional[ContainerSpec]:
        entry = self._containers.get(name)
        return entry.spec if entry else None

    async def adopt(self, spec: ContainerSpec, info: ContainerInfo) -> bool:
        """Register a container that already exists on the host, e.g. after a restart.

        Nothing is run; status is re-queried on the next list. Returns False
        if the name is already registered.
        """
        async with self._registry_lock:
            if spec.name in self._containers:
                return False
            shims = []
            for path in (self.bin_dir / Path(binary).name for binary in spec.binaries):
                if self._shim_owners.setdefault(path, spec.name) == spec.name:
                    shims.append(path)
            self._containers[spec.name] = ManagedContainer(
                spec=spec, info=info.model_copy(), shims=shims
            )
        logger.info(f"Adopted existing container {spec.name}")
        return True

    async def list(self) -> List[ContainerInfo]:
        """All registered containers with freshly queried status."""
        infos = []
        for name in list(self._containers):
            await self.status(name)
            info = self.get(name)
            if info is not None:
                infos.append(info)
        return infos

    async def deploy_containers(
        self, config: ContainersConfig
    ) -> Tuple[List[ContainerInfo], List[str]]:
        """Create every declared container. Returns (deployed, errors)."""
        deployed, errors = [], []
        for spec in config.containers:
            try:
                deployed.append(await self.create(spec, config.global_mounts))
            except ContainerError as e:
                errors.append(str(e))
        return deployed, errors

    async def cleanup(self):
        """Stop and force-remove every container and delete all shims."""
        for name in list(self._containers):
            entry = self._containers.get(name)
            if entry is None:
                continue
            try:
                await self.stop(name)
            except ContainerError as e:
                logger.warning(f"Failed to stop {name} during cleanup: {e}")
            try:
                await self.remove(name, force=True)
            except ContainerError as e:
                logger.error(f"Failed to remove {name} during cleanup: {e}")
                await self._forget(entry)

    async def available_runtimes(self) -> List[ContainerRuntime]:
        """Runtimes whose front-end binary is installed."""
        available = []
        for runtime in ContainerRuntime:
            try:
                result = await self.runner.run([runtime.value, "--version"], timeout=10)
            except subprocess.TimeoutExpired:
                continue
            if result.ok:
                available.append(runtime)
        return available
