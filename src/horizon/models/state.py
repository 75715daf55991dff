"""Persisted system state and deployment results."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from horizon.models.container import ContainerInfo, HealthStatus
from horizon.models.layer import LayerInfo
from horizon.models.snapshot import ReproducibleConfig


STATE_SCHEMA_VERSION = "1.0"


class SystemHealth(BaseModel):
    """Aggregated health of containers, layers and host services."""
    overall: HealthStatus = HealthStatus.UNKNOWN
    containers: Dict[str, HealthStatus] = Field(default_factory=dict)
    layers: Dict[str, HealthStatus] = Field(default_factory=dict)
    services: Dict[str, HealthStatus] = Field(default_factory=dict)
    last_check: datetime = Field(default_factory=datetime.now)


class SystemState(BaseModel):
    """Record written to the system state file after every deploy or update."""
    version: str = STATE_SCHEMA_VERSION
    timestamp: datetime = Field(default_factory=datetime.now)
    containers: List[ContainerInfo] = Field(default_factory=list)
    layers: List[LayerInfo] = Field(default_factory=list)
    reproducible: Optional[ReproducibleConfig] = None
    health: Optional[SystemHealth] = None


class DeploymentResult(BaseModel):
    """Outcome of a full-system deployment."""
    success: bool
    message: str
    timestamp: datetime = Field(default_factory=datetime.now)
    containers_deployed: int = 0
    layers_deployed: int = 0
    errors: List[str] = Field(default_factory=list)
