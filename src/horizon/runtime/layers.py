"""Layer deployment and lifecycle."""

import asyncio
import logging
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from horizon.errors import (
    CircularDependencyError, ConfigValidationError, ContainerError, LayerError,
    MissingDependencyError,
)
from horizon.models.container import ContainerStatus, HealthStatus, Mount
from horizon.models.layer import (
    BaseLayerSpec, LayerDeploymentResult, LayerInfo, LayerPurpose, LayerSpec,
    LayerStatus, LayerStrategy, LayerType, LayersConfig, UserLayerSpec,
)
from horizon.runtime.containers import ContainerManager
from horizon.utils.process import CommandRunner


logger = logging.getLogger(__name__)

BASE_LAYER = "base"
USER_LAYER = "user"

CONTAINER_LAYER_STATUS = {
    ContainerStatus.RUNNING: LayerStatus.RUNNING,
    ContainerStatus.STOPPED: LayerStatus.STOPPED,
    ContainerStatus.EXITED: LayerStatus.STOPPED,
    ContainerStatus.CREATED: LayerStatus.DEPLOYED,
    ContainerStatus.ERROR: LayerStatus.FAILED,
}


def order_layers(layers: Sequence[LayerSpec]) -> List[LayerSpec]:
    """Dependency order for deployment.

    Repeatedly takes the ready layer (all dependencies processed) with the
    lowest priority, ties going to declaration order. Raises
    MissingDependencyError or CircularDependencyError before anything is
    deployed.
    """
    names = set()
    for layer in layers:
        if layer.name in names or layer.name in (BASE_LAYER, USER_LAYER):
            raise ConfigValidationError(f"Duplicate or reserved layer name '{layer.name}'")
        names.add(layer.name)

    for layer in layers:
        for dependency in layer.dependencies:
            if dependency not in names and dependency != BASE_LAYER:
                raise MissingDependencyError(layer.name, dependency)

    processed = {BASE_LAYER}
    remaining = list(layers)
    ordered = []
    while remaining:
        ready = [c for c in remaining if all(d in processed for d in c.dependencies)]
        if not ready:
            raise CircularDependencyError(c.name for c in remaining)
        # min() keeps the first of equal priorities, i.e. declaration order
        layer = min(ready, key=lambda c: c.priority)
        ordered.append(layer)
        processed.add(layer.name)
        remaining.remove(layer)
    return ordered


def effective_layer_spec(spec: LayerSpec) -> LayerSpec:
    """Push a layer-level health check down to its container."""
    if spec.health_check and spec.container.health_check is None:
        container = spec.container.model_copy(update={"health_check": spec.health_check})
        return spec.model_copy(update={"container": container})
    return spec


@dataclass
class ManagedLayer:
    """A deployed layer and its declaration (None for base and user layers)."""
    info: LayerInfo
    spec: Optional[LayerSpec] = None
    mounts: Sequence[Mount] = ()

    @property
    def is_container_layer(self) -> bool:
        return self.spec is not None


class LayerManager:
    """Deploys layers in dependency order and starts/stops them by name."""

    def __init__(self, container_manager: ContainerManager,
                 runner: Optional[CommandRunner] = None):
        self.container_manager = container_manager
        self.runner = runner or container_manager.runner
        self._layers: Dict[str, ManagedLayer] = {}
        self._lock = asyncio.Lock()

    async def deploy_layers(self, config: LayersConfig) -> List[LayerDeploymentResult]:
        """Deploy base, system layers in dependency order, then the user layer."""
        ordered = order_layers(config.system)
        logger.info(f"Deploying layers in order: {', '.join(spec.name for spec in ordered) or '(none)'}")

        async with self._lock:
            results = [await self._deploy_base(config.base)]
            for spec in ordered:
                results.append(await self._deploy_system_layer(spec, config.global_mounts))
            if config.user.flatpaks:
                results.append(await self._deploy_user_layer(config.user))
        return results

    async def _deploy_base(self, base: BaseLayerSpec) -> LayerDeploymentResult:
        if base.ostree_commit:
            try:
                result = await self.runner.run(["ostree", "rev-parse", base.ostree_ref])
            except subprocess.TimeoutExpired:
                return LayerDeploymentResult(success=False, message="Timed out verifying base commit")
            if not result.ok or result.stdout.strip() != base.ostree_commit:
                return LayerDeploymentResult(
                    success=False,
                    message=f"OSTree commit verification failed for {base.ostree_ref}@{base.ostree_commit}",
                )

        info = LayerInfo(
            name=BASE_LAYER,
            layer_type=LayerType.BASE,
            purpose=LayerPurpose.CUSTOM,
            status=LayerStatus.DEPLOYED,
            health=HealthStatus.HEALTHY,
        )
        self._layers[BASE_LAYER] = ManagedLayer(info=info)
        return LayerDeploymentResult(
            success=True,
            message=f"Base layer {base.ostree_ref} version {base.version}",
            layer=info,
        )

    async def _deploy_system_layer(self, spec: LayerSpec,
                                   mounts: Sequence[Mount]) -> LayerDeploymentResult:
        if not spec.enabled:
            logger.info(f"Layer {spec.name} is disabled, skipping")
            return LayerDeploymentResult(success=True, message=f"Layer {spec.name} is disabled")

        for dependency in spec.dependencies:
            dep = self._layers.get(dependency)
            if dep is None or dep.info.status == LayerStatus.FAILED:
                return LayerDeploymentResult(
                    success=False,
                    message=f"Layer {spec.name}: dependency {dependency} is not deployed",
                )

        spec = effective_layer_spec(spec)
        container = spec.container

        info = LayerInfo(
            name=spec.name,
            layer_type=LayerType.SYSTEM,
            purpose=spec.purpose,
            status=LayerStatus.DEPLOYED,
            dependencies=list(spec.dependencies),
            container_name=container.name,
        )
        layer = ManagedLayer(info=info, spec=spec, mounts=tuple(mounts))
        self._layers[spec.name] = layer

        if spec.strategy == LayerStrategy.EPHEMERAL:
            logger.info(f"Layer {spec.name} is ephemeral, container is created on start")
            return LayerDeploymentResult(success=True, message=f"Layer {spec.name} deployed", layer=info)

        try:
            if container.name in self.container_manager:
                logger.info(f"Layer {spec.name} reuses existing container {container.name}")
            else:
                await self.container_manager.create(container, mounts)
            if spec.strategy == LayerStrategy.ALWAYS_ON:
                info.status = LayerStatus.STARTING
                await self.container_manager.start(container.name)
                info.status = LayerStatus.RUNNING
        except ContainerError as e:
            info.status = LayerStatus.FAILED
            info.health = HealthStatus.UNHEALTHY
            return LayerDeploymentResult(
                success=False,
                message=f"Layer {spec.name} deployment failed: {e}",
                layer=info,
            )

        logger.info(f"Layer {spec.name} deployed ({spec.strategy.value})")
        return LayerDeploymentResult(success=True, message=f"Layer {spec.name} deployed", layer=info)

    async def _deploy_user_layer(self, user: UserLayerSpec) -> LayerDeploymentResult:
        scope = "--user" if user.user_scope else "--system"
        try:
            for app in user.flatpaks:
                await self.runner.check(["flatpak", "install", scope, "-y", "--noninteractive", app])
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            return LayerDeploymentResult(success=False, message=f"User layer deployment failed: {e}")

        info = LayerInfo(
            name=USER_LAYER,
            layer_type=LayerType.USER,
            status=LayerStatus.DEPLOYED,
            health=HealthStatus.HEALTHY,
            dependencies=[BASE_LAYER],
        )
        self._layers[USER_LAYER] = ManagedLayer(info=info)
        return LayerDeploymentResult(
            success=True, message=f"User layer deployed with {len(user.flatpaks)} application(s)",
            layer=info,
        )

    def _get(self, name: str) -> ManagedLayer:
        layer = self._layers.get(name)
        if layer is None:
            raise LayerError(f"Layer {name} is not deployed")
        if not layer.is_container_layer:
            raise LayerError(f"Layer {name} has no container and cannot be started or stopped")
        return layer

    async def start_layer(self, name: str) -> LayerInfo:
        """Start a system layer; ephemeral layers get a fresh container."""
        layer = self._get(name)
        container = layer.spec.container
        layer.info.status = LayerStatus.STARTING
        try:
            if layer.spec.strategy == LayerStrategy.EPHEMERAL:
                if container.name in self.container_manager:
                    await self.container_manager.remove(container.name, force=True)
                await self.container_manager.create(container, layer.mounts)
            await self.container_manager.start(container.name)
        except ContainerError:
            layer.info.status = LayerStatus.FAILED
            raise
        layer.info.status = LayerStatus.RUNNING
        logger.info(f"Layer {name} started")
        return layer.info.model_copy()

    async def stop_layer(self, name: str) -> LayerInfo:
        """Stop a system layer; ephemeral layers are torn down."""
        layer = self._get(name)
        container = layer.spec.container
        if layer.spec.strategy == LayerStrategy.EPHEMERAL:
            if container.name in self.container_manager:
                await self.container_manager.stop(container.name)
                await self.container_manager.remove(container.name, force=True)
        else:
            await self.container_manager.stop(container.name)
        layer.info.status = LayerStatus.STOPPED
        logger.info(f"Layer {name} stopped")
        return layer.info.model_copy()

    async def layer_status(self, name: str) -> LayerStatus:
        layer = self._layers.get(name)
        if layer is None:
            return LayerStatus.UNKNOWN
        container_name = layer.info.container_name
        if layer.is_container_layer and container_name in self.container_manager:
            status = await self.container_manager.status(container_name)
            if status in CONTAINER_LAYER_STATUS:
                layer.info.status = CONTAINER_LAYER_STATUS[status]
        return layer.info.status

    async def layer_health(self, name: str) -> HealthStatus:
        """Health of a layer; an intentionally idle layer counts as healthy."""
        layer = self._layers.get(name)
        if layer is None:
            return HealthStatus.UNKNOWN
        if not layer.is_container_layer:
            return layer.info.health

        status = await self.layer_status(name)
        if status == LayerStatus.FAILED:
            health = HealthStatus.UNHEALTHY
        elif status == LayerStatus.RUNNING:
            health = await self.container_manager.health_check(layer.info.container_name)
        elif layer.spec.strategy != LayerStrategy.ALWAYS_ON and status in (
                LayerStatus.DEPLOYED, LayerStatus.STOPPED):
            health = HealthStatus.HEALTHY
        else:
            health = await self.container_manager.health_check(layer.info.container_name)

        layer.info.health = health
        return health

    async def list_layers(self) -> List[LayerInfo]:
        """Deployed layers with refreshed status and health."""
        infos = []
        for name in list(self._layers):
            await self.layer_health(name)
            infos.append(self._layers[name].info.model_copy())
        return infos

    def get_layer(self, name: str) -> Optional[LayerInfo]:
        layer = self._layers.get(name)
        return layer.info.model_copy() if layer else None

    def adopt(self, info: LayerInfo, spec: Optional[LayerSpec] = None,
              mounts: Sequence[Mount] = ()) -> bool:
        """Register a layer deployed by an earlier run. Returns False if already known."""
        if info.name in self._layers:
            return False
        if spec is not None:
            spec = effective_layer_spec(spec)
        self._layers[info.name] = ManagedLayer(
            info=info.model_copy(), spec=spec, mounts=tuple(mounts)
        )
        return True

    def dependents_of(self, name: str) -> List[str]:
        return [
            other for other, layer in self._layers.items()
            if name in layer.info.dependencies and other != name
        ]

    async def remove_layer(self, name: str):
        """Remove a layer; refused while other layers depend on it."""
        if name == BASE_LAYER:
            raise LayerError("The base layer cannot be removed")
        layer = self._layers.get(name)
        if layer is None:
            raise LayerError(f"Layer {name} is not deployed")

        dependents = self.dependents_of(name)
        if dependents:
            raise LayerError(f"Cannot remove layer {name}: required by {', '.join(dependents)}")

        container_name = layer.info.container_name
        if container_name and container_name in self.container_manager:
            await self.container_manager.remove(container_name, force=True)
        self._layers.pop(name, None)
        logger.info(f"Layer {name} removed")
