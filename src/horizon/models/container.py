"""Container specification and runtime models."""

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Optional, Dict, List, Tuple

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator


class FrozenDict(dict):
    """A dict that refuses mutation once built."""

    def _read_only(self, *args, **kwargs):
        raise TypeError(f"{type(self).__name__} is read-only")

    __setitem__ = __delitem__ = __ior__ = _read_only
    clear = pop = popitem = setdefault = update = _read_only

    def __hash__(self):
        return hash(frozenset(self.items()))

    def __reduce__(self):
        return (type(self), (dict(self),))

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


_DURATION_RE = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*(ms|s|m|h|)\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "": 1, "m": 60, "h": 3600}


def parse_duration(value: str) -> float:
    """Parse a duration such as ``30s``, ``500ms`` or ``1m`` into seconds."""
    match = _DURATION_RE.match(value or "")
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    number, unit = match.groups()
    return float(number) * _DURATION_UNITS[unit]


# Mapping field for frozen models: validates as a dict, stored read-only.
FrozenStrDict = Annotated[Dict[str, str], AfterValidator(FrozenDict)]


class ContainerRuntime(str, Enum):
    """OCI front-ends sharing the create/start/stop/rm/exec/inspect shape."""
    PODMAN = "podman"
    DOCKER = "docker"
    DISTROBOX = "distrobox"
    TOOLBOX = "toolbox"


class ContainerStatus(str, Enum):
    """Container lifecycle status."""
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"
    EXITED = "exited"
    ERROR = "error"
    UNKNOWN = "unknown"


class HealthStatus(str, Enum):
    """Health of a container, layer or service."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STARTING = "starting"
    UNKNOWN = "unknown"


class Mount(BaseModel):
    """Bind mount between host and container."""
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    read_only: bool = False

    def volume_arg(self) -> str:
        """Render as a ``--volume`` argument."""
        suffix = ":ro" if self.read_only else ""
        return f"{self.source}:{self.target}{suffix}"


class HealthCheck(BaseModel):
    """Health probe executed inside a container."""
    model_config = ConfigDict(frozen=True)

    command: Tuple[str, ...] = Field(..., min_length=1)
    interval: str = Field(default="30s")
    timeout: str = Field(default="10s")
    retries: int = Field(default=3, ge=1)

    @field_validator("interval", "timeout")
    @classmethod
    def validate_duration(cls, v: str) -> str:
        parse_duration(v)
        return v

    @property
    def interval_seconds(self) -> float:
        return parse_duration(self.interval)

    @property
    def timeout_seconds(self) -> float:
        return parse_duration(self.timeout)


class ContainerSpec(BaseModel):
    """Container specification."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(..., description="Container name")
    image: str = Field(..., description="Image name to use")
    tag: str = Field(default="latest")
    digest: Optional[str] = Field(None, description="Pinned content digest")
    runtime: ContainerRuntime = Field(default=ContainerRuntime.PODMAN)
    hostname: Optional[str] = None
    user: Optional[str] = None
    working_dir: Optional[str] = None
    environment: FrozenStrDict = Field(default_factory=FrozenDict)
    ports: Tuple[str, ...] = ()
    persistent: Tuple[Mount, ...] = ()
    labels: FrozenStrDict = Field(default_factory=FrozenDict)
    network_mode: str = Field(default="bridge")
    privileged: bool = False
    packages: Tuple[str, ...] = ()
    package_manager: Optional[str] = None
    binaries: Tuple[str, ...] = ()
    post_commands: Tuple[str, ...] = ()
    auto_start: bool = False
    health_check: Optional[HealthCheck] = None

    @property
    def image_reference(self) -> str:
        """Fully-qualified image reference; a pinned digest wins over the tag."""
        if self.digest:
            return f"{self.image}@{self.digest}"
        return f"{self.image}:{self.tag}"


class ContainerInfo(BaseModel):
    """Runtime metadata for a registered container."""
    id: str = ""
    name: str
    image: str
    status: ContainerStatus = ContainerStatus.UNKNOWN
    created: datetime = Field(default_factory=datetime.now)
    runtime: ContainerRuntime = ContainerRuntime.PODMAN
    ports: List[str] = Field(default_factory=list)
    mounts: List[str] = Field(default_factory=list)
    health: HealthStatus = HealthStatus.UNKNOWN
    error: Optional[str] = None


class RuntimeStats(BaseModel):
    """Resource usage reported by the runtime."""
    cpu_percent: float = 0.0
    memory_usage: int = 0
    memory_limit: int = 0
    network_in: int = 0
    network_out: int = 0
    block_io: int = 0
