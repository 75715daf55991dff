"""System-level facade over containers, layers and live updates."""

import asyncio
import logging
import subprocess
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from horizon.engine.live_update import (
    LiveUpdateCapability, LiveUpdateManager, PartialSuccess, Success, UpdateResult,
)
from horizon.engine.state_sync import StateSyncManager, SystemSnapshot
from horizon.errors import ConfigValidationError, ContainerError, LayerError, StateSyncError
from horizon.models.config import DEFAULT_EXPECTED_SERVICES, UpdateConfig, UpdateOptions
from horizon.models.container import ContainerSpec, HealthStatus
from horizon.models.layer import LayerSpec, LayerStatus, LayerType
from horizon.models.snapshot import ConfigSnapshot
from horizon.models.state import DeploymentResult, SystemHealth, SystemState
from horizon.runtime.containers import ContainerManager
from horizon.runtime.layers import LayerManager, effective_layer_spec, order_layers
from horizon.utils.atomic import atomic_write_text
from horizon.utils.systemd import SystemdDBus


logger = logging.getLogger(__name__)

STATE_FILE = "system-state.json"


def validate_configuration(config: ConfigSnapshot):
    """Reject configurations that must never reach the host."""
    if not config.system.hostname.strip():
        raise ConfigValidationError("Hostname cannot be empty")

    if config.containers:
        seen = set()
        for container in config.containers.containers:
            if not container.name.strip():
                raise ConfigValidationError("Container name cannot be empty")
            if not container.image.strip():
                raise ConfigValidationError(f"Container {container.name} image cannot be empty")
            if container.name in seen:
                raise ConfigValidationError(f"Duplicate container name {container.name}")
            seen.add(container.name)

    if config.layers:
        for layer in config.layers.system:
            if not layer.container.name.strip() or not layer.container.image.strip():
                raise ConfigValidationError(f"Layer {layer.name} needs a container name and image")
        order_layers(config.layers.system)


def reduce_health(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """All healthy => healthy; any unhealthy => unhealthy; otherwise starting."""
    statuses = list(statuses)
    if all(s == HealthStatus.HEALTHY for s in statuses):
        return HealthStatus.HEALTHY
    if any(s == HealthStatus.UNHEALTHY for s in statuses):
        return HealthStatus.UNHEALTHY
    return HealthStatus.STARTING


class SystemManager:
    """Deploys the whole system and exposes update, rollback and status."""

    def __init__(
        self,
        container_manager: ContainerManager,
        layer_manager: LayerManager,
        live_update: LiveUpdateManager,
        state_sync: StateSyncManager,
        systemd: SystemdDBus,
        state_dir: Path,
        expected_services: Optional[List[str]] = None,
        update_config: Optional[UpdateConfig] = None,
    ):
        self.container_manager = container_manager
        self.layer_manager = layer_manager
        self.live_update = live_update
        self.state_sync = state_sync
        self.systemd = systemd
        self.state_file = Path(state_dir) / STATE_FILE
        self.expected_services = list(
            DEFAULT_EXPECTED_SERVICES if expected_services is None else expected_services
        )
        self.update_config = update_config or UpdateConfig()
        self.reproducible = None
        self.last_health: Optional[SystemHealth] = None

    def validate_configuration(self, config: ConfigSnapshot):
        validate_configuration(config)

    async def deploy_system(self, config: ConfigSnapshot) -> DeploymentResult:
        """Validate, then deploy containers and layers and record the result."""
        try:
            validate_configuration(config)
        except ConfigValidationError as e:
            logger.error(f"Refusing to deploy invalid configuration: {e}")
            return DeploymentResult(
                success=False,
                message=f"Invalid configuration: {e}",
                errors=[str(e)],
            )

        logger.info(f"Deploying system {config.system.hostname}")
        errors: List[str] = []

        containers_deployed = 0
        if config.containers:
            deployed, container_errors = await self.container_manager.deploy_containers(
                config.containers
            )
            containers_deployed = len(deployed)
            errors.extend(container_errors)

        layers_deployed = 0
        if config.layers:
            results = await self.layer_manager.deploy_layers(config.layers)
            layers_deployed = sum(1 for r in results if r.success and r.layer is not None)
            errors.extend(r.message for r in results if not r.success)

        self.reproducible = config.reproducible

        try:
            await self.state_sync.sync_state(config)
            await self.save_system_state()
        except StateSyncError as e:
            errors.append(str(e))

        success = not errors
        message = (
            "System deployed successfully" if success
            else f"System deployed with {len(errors)} error(s)"
        )
        logger.info(message)
        return DeploymentResult(
            success=success,
            message=message,
            containers_deployed=containers_deployed,
            layers_deployed=layers_deployed,
            errors=errors,
        )

    async def _service_health(self, service: str) -> HealthStatus:
        try:
            active = await self.systemd.is_active(service)
        except subprocess.TimeoutExpired:
            return HealthStatus.UNKNOWN
        return HealthStatus.HEALTHY if active else HealthStatus.UNHEALTHY

    async def check_system_health(self) -> SystemHealth:
        """Aggregate container, layer and host service health."""
        layers: Dict[str, HealthStatus] = {}
        layer_containers = set()
        for info in await self.layer_manager.list_layers():
            layers[info.name] = info.health
            if info.container_name:
                layer_containers.add(info.container_name)

        # Layer containers are judged by their layer's activation strategy
        containers: Dict[str, HealthStatus] = {}
        for info in await self.container_manager.list():
            if info.name not in layer_containers:
                containers[info.name] = await self.container_manager.health_check(info.name)

        services: Dict[str, HealthStatus] = {}
        for service in self.expected_services:
            services[service] = await self._service_health(service)

        health = SystemHealth(
            overall=reduce_health([*containers.values(), *layers.values(), *services.values()]),
            containers=containers,
            layers=layers,
            services=services,
        )
        self.last_health = health
        return health

    async def get_system_state(self) -> SystemState:
        """Current containers, layers and health."""
        health = await self.check_system_health()
        return SystemState(
            containers=await self.container_manager.list(),
            layers=await self.layer_manager.list_layers(),
            reproducible=self.reproducible,
            health=health,
        )

    async def save_system_state(self) -> SystemState:
        """Write the system state record atomically."""
        state = await self.get_system_state()
        try:
            await asyncio.to_thread(
                atomic_write_text, self.state_file, state.model_dump_json(indent=2) + "\n"
            )
        except OSError as e:
            raise StateSyncError(f"Failed to write {self.state_file}: {e}") from e
        logger.debug(f"Saved system state to {self.state_file}")
        return state

    async def load_system_state(self) -> Optional[SystemState]:
        """Read the last saved system state record and re-register what it lists."""
        try:
            raw = await asyncio.to_thread(self.state_file.read_text)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateSyncError(f"Failed to read {self.state_file}: {e}") from e
        try:
            state = SystemState.model_validate_json(raw)
        except ValidationError as e:
            raise StateSyncError(f"Corrupt system state {self.state_file}: {e}") from e
        self.reproducible = state.reproducible
        await self._restore_registries(state)
        return state

    async def _restore_registries(self, state: SystemState):
        config = await self.state_sync.load_current()
        if config is None:
            return

        container_specs: Dict[str, ContainerSpec] = {}
        layer_specs: Dict[str, LayerSpec] = {}
        if config.containers:
            container_specs.update((c.name, c) for c in config.containers.containers)
        if config.layers:
            for spec in config.layers.system:
                spec = effective_layer_spec(spec)
                layer_specs[spec.name] = spec
                container_specs.setdefault(spec.container.name, spec.container)

        for info in state.containers:
            spec = container_specs.get(info.name)
            if spec is None:
                logger.warning(f"Container {info.name} is no longer declared, not restoring it")
                continue
            await self.container_manager.adopt(spec, info)

        for info in state.layers:
            if info.layer_type != LayerType.SYSTEM:
                self.layer_manager.adopt(info)
                continue
            spec = layer_specs.get(info.name)
            if spec is None:
                logger.warning(f"Layer {info.name} is no longer declared, not restoring it")
                continue
            self.layer_manager.adopt(info, spec, config.layers.global_mounts)

        logger.info(
            f"Restored {len(state.containers)} container(s) and {len(state.layers)} layer(s) "
            f"from {self.state_file}"
        )

    async def _current_config(self) -> ConfigSnapshot:
        current = await self.state_sync.load_current()
        if current is None:
            raise StateSyncError("No configuration has been applied yet, deploy the system first")
        return current

    async def plan_update(self, desired: ConfigSnapshot) -> LiveUpdateCapability:
        """What an update to ``desired`` would do, without doing it."""
        validate_configuration(desired)
        current = await self._current_config()
        return self.live_update.can_apply_live_updates(current, desired)

    async def update_system(self, desired: ConfigSnapshot,
                            options: Optional[UpdateOptions] = None) -> UpdateResult:
        """Converge the running system to ``desired``."""
        validate_configuration(desired)
        current = await self._current_config()
        result = await self.live_update.apply_live_updates(
            current, desired, options or self.update_config.options()
        )

        if isinstance(result, (Success, PartialSuccess)):
            try:
                await self.save_system_state()
            except StateSyncError as e:
                logger.error(str(e))
        await self.state_sync.cleanup_snapshots(self.update_config.keep_snapshots)
        return result

    async def rollback_system(self) -> SystemSnapshot:
        """Restore the most recent pre-update snapshot."""
        snapshot = await self.state_sync.latest_snapshot()
        if snapshot is None:
            raise StateSyncError("No snapshot available for rollback")

        notifier = self.live_update.notifier
        await notifier.rollback_started()
        try:
            await self.state_sync.restore_snapshot(snapshot)
        except StateSyncError as e:
            logger.critical(f"Manual rollback failed: {e}")
            await notifier.rollback_failed(e)
            raise
        await notifier.rollback_completed()
        return snapshot

    async def start_system(self) -> Dict[str, str]:
        """Start every deployed but idle system layer."""
        outcome = {}
        for layer in await self.layer_manager.list_layers():
            if layer.layer_type != LayerType.SYSTEM or layer.status != LayerStatus.DEPLOYED:
                continue
            try:
                await self.layer_manager.start_layer(layer.name)
                outcome[layer.name] = "started"
            except (ContainerError, LayerError) as e:
                logger.error(f"Failed to start layer {layer.name}: {e}")
                outcome[layer.name] = str(e)
        return outcome

    async def stop_system(self) -> Dict[str, str]:
        """Stop every running system layer."""
        outcome = {}
        for layer in await self.layer_manager.list_layers():
            if layer.layer_type != LayerType.SYSTEM or layer.status != LayerStatus.RUNNING:
                continue
            try:
                await self.layer_manager.stop_layer(layer.name)
                outcome[layer.name] = "stopped"
            except (ContainerError, LayerError) as e:
                logger.error(f"Failed to stop layer {layer.name}: {e}")
                outcome[layer.name] = str(e)
        return outcome

    async def cleanup_system(self):
        """Remove all containers and the system state record."""
        await self.container_manager.cleanup()
        await asyncio.to_thread(self.state_file.unlink, True)
        logger.info("System cleaned up")
