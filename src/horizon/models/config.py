"""Agent configuration models."""

from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from horizon.models.container import ContainerRuntime


DEFAULT_RELOADABLE_SERVICES = [
    "nginx",
    "apache2",
    "httpd",
    "postfix",
    "dovecot",
    "bind9",
    "named",
    "sshd",
    "NetworkManager",
    "systemd-resolved",
    "systemd-timesyncd",
]

DEFAULT_EXPECTED_SERVICES = [
    "systemd-networkd",
    "systemd-resolved",
    "podman.socket",
    "flatpak-system-helper",
]


class AgentConfig(BaseModel):
    """Agent configuration."""
    socket_path: str = Field(default="/run/horizonos/agent.sock")
    api_host: Optional[str] = Field(default=None, description="Also listen on TCP when set")
    api_port: int = Field(default=8777, ge=1, le=65535)
    health_interval: int = Field(default=60, ge=5)
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = None
    config_dir: str = Field(default="/etc/horizonos")
    state_dir: str = Field(default="/var/lib/horizonos")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class RuntimeConfig(BaseModel):
    """Container runtime and host command settings."""
    default_runtime: ContainerRuntime = ContainerRuntime.PODMAN
    command_timeout: int = Field(default=60, ge=1)
    bin_dir: str = Field(default="/usr/local/bin")
    expected_services: List[str] = Field(
        default_factory=lambda: list(DEFAULT_EXPECTED_SERVICES)
    )


class UpdateOptions(BaseModel):
    """Caller policy for one live update run."""
    model_config = ConfigDict(frozen=True)

    dry_run: bool = False
    allow_partial_update: bool = False
    continue_on_error: bool = False
    rollback_on_failure: bool = True
    max_parallel_operations: int = Field(default=4, ge=1)


class UpdateConfig(UpdateOptions):
    """Update defaults plus agent-level update behaviour."""
    auto_apply: bool = Field(default=True, description="Apply on system.yaml change")
    keep_snapshots: int = Field(default=10, ge=1)
    reloadable_services: List[str] = Field(
        default_factory=lambda: list(DEFAULT_RELOADABLE_SERVICES)
    )

    def options(self, **overrides) -> UpdateOptions:
        """Build per-run options from the configured defaults."""
        data = self.model_dump(include=set(UpdateOptions.model_fields))
        data.update({k: v for k, v in overrides.items() if v is not None})
        return UpdateOptions(**data)


class NotificationsConfig(BaseModel):
    """Update notification sinks."""
    journal: bool = True
    file: bool = True
    log_file: str = Field(default="/var/log/horizonos/updates.log")
    history_size: int = Field(default=1000, ge=1)


class HorizonConfig(BaseModel):
    """Main configuration model."""
    model_config = ConfigDict(extra="ignore")

    agent: AgentConfig = Field(default_factory=AgentConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    update: UpdateConfig = Field(default_factory=UpdateConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
