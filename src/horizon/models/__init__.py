"""Pydantic models for snapshots, changes, containers, layers and state."""

from horizon.models.change import Change, ChangeType, ImpactLevel, UpdateStrategy
from horizon.models.config import (
    HorizonConfig, AgentConfig, RuntimeConfig, UpdateConfig, UpdateOptions,
    NotificationsConfig,
)
from horizon.models.container import (
    ContainerSpec, ContainerRuntime, ContainerStatus, ContainerInfo, HealthCheck,
    HealthStatus, Mount, RuntimeStats,
)
from horizon.models.layer import (
    LayerSpec, LayerType, LayerPurpose, LayerStrategy, LayerStatus, LayerInfo,
    LayersConfig, BaseLayerSpec, UserLayerSpec, LayerDeploymentResult,
)
from horizon.models.snapshot import (
    ConfigSnapshot, SnapshotBuilder, SystemSettings, Package, PackageAction,
    Service, ServiceConfig, User, Repository, DesktopConfig, Workflow,
    AutomationConfig, ContainersConfig, ReproducibleConfig,
)
from horizon.models.state import SystemHealth, SystemState, DeploymentResult

__all__ = [
    "Change",
    "ChangeType",
    "ImpactLevel",
    "UpdateStrategy",
    "HorizonConfig",
    "AgentConfig",
    "RuntimeConfig",
    "UpdateConfig",
    "UpdateOptions",
    "NotificationsConfig",
    "ContainerSpec",
    "ContainerRuntime",
    "ContainerStatus",
    "ContainerInfo",
    "HealthCheck",
    "HealthStatus",
    "Mount",
    "RuntimeStats",
    "LayerSpec",
    "LayerType",
    "LayerPurpose",
    "LayerStrategy",
    "LayerStatus",
    "LayerInfo",
    "LayersConfig",
    "BaseLayerSpec",
    "UserLayerSpec",
    "LayerDeploymentResult",
    "ConfigSnapshot",
    "SnapshotBuilder",
    "SystemSettings",
    "Package",
    "PackageAction",
    "Service",
    "ServiceConfig",
    "User",
    "Repository",
    "DesktopConfig",
    "Workflow",
    "AutomationConfig",
    "ContainersConfig",
    "ReproducibleConfig",
    "SystemHealth",
    "SystemState",
    "DeploymentResult",
]
