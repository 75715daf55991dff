"""Configuration snapshot models.

A snapshot is the fully-resolved desired (or previously applied) state of a
machine. Every model here is frozen and collections are tuples, so a
snapshot cannot change after construction.
"""

from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from horizon.models.container import (
    ContainerRuntime, ContainerSpec, FrozenDict, FrozenStrDict, Mount,
)
from horizon.models.layer import LayersConfig


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class PackageAction(str, Enum):
    """What should happen to a package."""
    INSTALL = "install"
    REMOVE = "remove"


class SystemSettings(_Frozen):
    """Scalar host settings."""
    hostname: str = "horizonos"
    timezone: str = "UTC"
    locale: str = "en_US.UTF-8"


class Package(_Frozen):
    """Host package entry."""
    name: str
    action: PackageAction = PackageAction.INSTALL
    group: Optional[str] = None


class ServiceConfig(_Frozen):
    """Service unit overrides."""
    auto_restart: bool = True
    restart_on_failure: bool = True
    environment: FrozenStrDict = Field(default_factory=FrozenDict)


class Service(_Frozen):
    """Host service entry."""
    name: str
    enabled: bool = True
    config: Optional[ServiceConfig] = None


class User(_Frozen):
    """Local user account."""
    name: str
    uid: Optional[int] = None
    shell: str = "/bin/bash"
    groups: Tuple[str, ...] = ()
    home_dir: str = ""

    @model_validator(mode="before")
    @classmethod
    def default_home_dir(cls, data: Any) -> Any:
        """Default the home directory to /home/<name>."""
        if isinstance(data, dict) and not data.get("home_dir") and data.get("name"):
            data = dict(data)
            data["home_dir"] = f"/home/{data['name']}"
        return data


class Repository(_Frozen):
    """Package repository."""
    name: str
    url: str
    enabled: bool = True
    gpg_check: bool = True
    priority: int = 50


class DesktopConfig(_Frozen):
    """Desktop environment selection."""
    environment: str
    display_manager: str = "sddm"
    settings: FrozenStrDict = Field(default_factory=FrozenDict)


class Workflow(_Frozen):
    """Automation workflow."""
    name: str
    description: str = ""
    enabled: bool = True
    priority: int = 50
    trigger: Optional[str] = None
    actions: Tuple[str, ...] = ()


class AutomationConfig(_Frozen):
    """Automation sub-configuration."""
    workflows: Tuple[Workflow, ...] = ()


class ContainersConfig(_Frozen):
    """Standalone containers."""
    default_runtime: ContainerRuntime = ContainerRuntime.PODMAN
    containers: Tuple[ContainerSpec, ...] = ()
    global_mounts: Tuple[Mount, ...] = ()


class ReproducibleConfig(_Frozen):
    """Reproducible-build pinning."""
    enabled: bool = True
    strict_mode: bool = False
    verify_digests: bool = True
    pinned_base: Optional[str] = None
    lockfile: str = "/etc/horizonos/horizonos.lock"


class ConfigSnapshot(_Frozen):
    """Immutable desired system state."""
    system: SystemSettings = Field(default_factory=SystemSettings)
    packages: Tuple[Package, ...] = ()
    services: Tuple[Service, ...] = ()
    users: Tuple[User, ...] = ()
    repositories: Tuple[Repository, ...] = ()
    desktop: Optional[DesktopConfig] = None
    automation: Optional[AutomationConfig] = None
    containers: Optional[ContainersConfig] = None
    layers: Optional[LayersConfig] = None
    reproducible: Optional[ReproducibleConfig] = None

    @classmethod
    def builder(cls, hostname: str = "horizonos") -> "SnapshotBuilder":
        """Start a fluent builder."""
        return SnapshotBuilder(hostname)


class SnapshotBuilder:
    """Fluent builder producing a frozen ConfigSnapshot.

    Example::

        snapshot = (
            ConfigSnapshot.builder("workstation")
            .timezone("Europe/Berlin")
            .package("git")
            .service("sshd")
            .user("alice", groups=["wheel"])
            .build()
        )
    """

    def __init__(self, hostname: str = "horizonos"):
        self._system: Dict[str, Any] = {"hostname": hostname}
        self._packages = []
        self._services = []
        self._users = []
        self._repositories = []
        self._workflows = []
        self._containers = []
        self._container_mounts = []
        self._default_runtime = ContainerRuntime.PODMAN
        self._desktop: Optional[DesktopConfig] = None
        self._layers: Optional[LayersConfig] = None
        self._reproducible: Optional[ReproducibleConfig] = None

    def hostname(self, value: str) -> "SnapshotBuilder":
        self._system["hostname"] = value
        return self

    def timezone(self, value: str) -> "SnapshotBuilder":
        self._system["timezone"] = value
        return self

    def locale(self, value: str) -> "SnapshotBuilder":
        self._system["locale"] = value
        return self

    def package(self, name: str, action: str = "install",
                group: Optional[str] = None) -> "SnapshotBuilder":
        self._packages.append(Package(name=name, action=action, group=group))
        return self

    def packages(self, *names: str, group: Optional[str] = None) -> "SnapshotBuilder":
        for name in names:
            self.package(name, group=group)
        return self

    def remove_package(self, name: str) -> "SnapshotBuilder":
        return self.package(name, action="remove")

    def service(self, name: str, enabled: bool = True,
                config: Optional[ServiceConfig] = None) -> "SnapshotBuilder":
        self._services.append(Service(name=name, enabled=enabled, config=config))
        return self

    def user(self, name: str, **fields: Any) -> "SnapshotBuilder":
        self._users.append(User(name=name, **fields))
        return self

    def repository(self, name: str, url: str, **fields: Any) -> "SnapshotBuilder":
        self._repositories.append(Repository(name=name, url=url, **fields))
        return self

    def desktop(self, environment: str, **fields: Any) -> "SnapshotBuilder":
        self._desktop = DesktopConfig(environment=environment, **fields)
        return self

    def workflow(self, name: str, **fields: Any) -> "SnapshotBuilder":
        self._workflows.append(Workflow(name=name, **fields))
        return self

    def container(self, spec: ContainerSpec) -> "SnapshotBuilder":
        self._containers.append(spec)
        return self

    def container_runtime(self, runtime: ContainerRuntime) -> "SnapshotBuilder":
        self._default_runtime = ContainerRuntime(runtime)
        return self

    def global_mount(self, source: str, target: str,
                     read_only: bool = False) -> "SnapshotBuilder":
        self._container_mounts.append(Mount(source=source, target=target, read_only=read_only))
        return self

    def layers(self, layers: LayersConfig) -> "SnapshotBuilder":
        self._layers = layers
        return self

    def reproducible(self, **fields: Any) -> "SnapshotBuilder":
        self._reproducible = ReproducibleConfig(**fields)
        return self

    def build(self) -> ConfigSnapshot:
        """Return the frozen snapshot."""
        containers = None
        if self._containers or self._container_mounts:
            containers = ContainersConfig(
                default_runtime=self._default_runtime,
                containers=tuple(self._containers),
                global_mounts=tuple(self._container_mounts),
            )
        automation = AutomationConfig(workflows=tuple(self._workflows)) if self._workflows else None

        return ConfigSnapshot(
            system=SystemSettings(**self._system),
            packages=tuple(self._packages),
            services=tuple(self._services),
            users=tuple(self._users),
            repositories=tuple(self._repositories),
            desktop=self._desktop,
            automation=automation,
            containers=containers,
            layers=self._layers,
            reproducible=self._reproducible,
        )
