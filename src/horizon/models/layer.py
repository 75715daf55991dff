"""Layer specification models."""

from datetime import datetime
from enum import Enum
from typing import Optional, List, Tuple

from pydantic import BaseModel, ConfigDict, Field

from horizon.models.container import ContainerSpec, HealthCheck, HealthStatus, Mount


class LayerType(str, Enum):
    """Layer type."""
    BASE = "base"
    SYSTEM = "system"
    USER = "user"


class LayerPurpose(str, Enum):
    """What a system layer provides."""
    DEVELOPMENT = "development"
    GAMING = "gaming"
    MULTIMEDIA = "multimedia"
    OFFICE = "office"
    SECURITY = "security"
    NETWORKING = "networking"
    CUSTOM = "custom"


class LayerStrategy(str, Enum):
    """Activation policy of a layer."""
    ALWAYS_ON = "always_on"
    ON_DEMAND = "on_demand"
    EPHEMERAL = "ephemeral"


class LayerStatus(str, Enum):
    """Layer lifecycle status."""
    DEPLOYED = "deployed"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    UNKNOWN = "unknown"


class LayerSpec(BaseModel):
    """A system layer wrapping exactly one container."""
    model_config = ConfigDict(frozen=True)

    name: str
    purpose: LayerPurpose = LayerPurpose.CUSTOM
    container: ContainerSpec
    dependencies: Tuple[str, ...] = ()
    strategy: LayerStrategy = LayerStrategy.ON_DEMAND
    priority: int = 50
    enabled: bool = True
    health_check: Optional[HealthCheck] = None


class BaseLayerSpec(BaseModel):
    """The immutable host image. Described, never started."""
    model_config = ConfigDict(frozen=True)

    image: str = "quay.io/horizonos/base"
    tag: str = "latest"
    digest: Optional[str] = None
    packages: Tuple[str, ...] = ()
    services: Tuple[str, ...] = ()
    ostree_ref: str = "horizonos/stable/x86_64"
    ostree_commit: Optional[str] = None
    version: str = "1.0"


class UserLayerSpec(BaseModel):
    """User-scope application layer installed through flatpak."""
    model_config = ConfigDict(frozen=True)

    flatpaks: Tuple[str, ...] = ()
    user_scope: bool = True


class LayersConfig(BaseModel):
    """All layers of the system."""
    model_config = ConfigDict(frozen=True)

    base: BaseLayerSpec = Field(default_factory=BaseLayerSpec)
    system: Tuple[LayerSpec, ...] = ()
    user: UserLayerSpec = Field(default_factory=UserLayerSpec)
    global_mounts: Tuple[Mount, ...] = ()


class LayerInfo(BaseModel):
    """Runtime view of a deployed layer."""
    name: str
    layer_type: LayerType
    purpose: Optional[LayerPurpose] = None
    status: LayerStatus = LayerStatus.UNKNOWN
    deploy_time: datetime = Field(default_factory=datetime.now)
    dependencies: List[str] = Field(default_factory=list)
    container_name: Optional[str] = None
    health: HealthStatus = HealthStatus.UNKNOWN


class LayerDeploymentResult(BaseModel):
    """Outcome of deploying one layer."""
    success: bool
    message: str
    layer: Optional[LayerInfo] = None
