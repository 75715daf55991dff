"""Change model produced by the change detector."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class ChangeType(str, Enum):
    """Closed set of change kinds."""
    SYSTEM_CONFIG = "system_config"
    PACKAGE_INSTALL = "package_install"
    PACKAGE_REMOVE = "package_remove"
    SERVICE_ADD = "service_add"
    SERVICE_REMOVE = "service_remove"
    SERVICE_STATE = "service_state"
    SERVICE_CONFIG = "service_config"
    USER_ADD = "user_add"
    USER_MODIFY = "user_modify"
    USER_REMOVE = "user_remove"
    REPOSITORY = "repository"
    DESKTOP_CONFIG = "desktop_config"
    AUTOMATION_WORKFLOW = "automation_workflow"


class UpdateStrategy(str, Enum):
    """Mechanism needed to apply a change."""
    LIVE = "live"
    SERVICE_RELOAD = "service_reload"
    REBOOT_REQUIRED = "reboot_required"


class ImpactLevel(str, Enum):
    """Risk of a change, ordered LOW < MEDIUM < HIGH < CRITICAL."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _IMPACT_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, ImpactLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, ImpactLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, ImpactLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, ImpactLevel):
            return NotImplemented
        return self.rank >= other.rank


_IMPACT_RANK = {
    ImpactLevel.LOW: 0,
    ImpactLevel.MEDIUM: 1,
    ImpactLevel.HIGH: 2,
    ImpactLevel.CRITICAL: 3,
}


class Change(BaseModel):
    """One detected difference between two snapshots.

    ``old_value`` and ``new_value`` carry the per-type payload: the affected
    model(s) for collections, the scalar for system settings.
    """
    model_config = ConfigDict(frozen=True)

    change_type: ChangeType
    field: Optional[str] = None
    old_value: Any = None
    new_value: Any = None
    affected_service: Optional[str] = None
    description: str
    update_strategy: UpdateStrategy
    impact: ImpactLevel

    @property
    def resource_key(self) -> str:
        """Key of the host resource this change mutates.

        Changes sharing a key must not run concurrently.
        """
        ct = self.change_type
        if ct == ChangeType.SYSTEM_CONFIG:
            return f"system:{self.field}"
        if ct in (ChangeType.PACKAGE_INSTALL, ChangeType.PACKAGE_REMOVE, ChangeType.REPOSITORY):
            # pacman holds a single database lock
            return "package-manager"
        if ct in (ChangeType.SERVICE_ADD, ChangeType.SERVICE_REMOVE,
                  ChangeType.SERVICE_STATE, ChangeType.SERVICE_CONFIG):
            return f"service:{self.affected_service}"
        if ct in (ChangeType.USER_ADD, ChangeType.USER_MODIFY, ChangeType.USER_REMOVE):
            # useradd/usermod lock /etc/passwd and /etc/group
            return "users"
        if ct == ChangeType.DESKTOP_CONFIG:
            return "desktop"
        return f"workflow:{self.field}"

    def with_policy(self, strategy: UpdateStrategy, impact: ImpactLevel) -> "Change":
        """Return a copy carrying a different strategy and impact."""
        return self.model_copy(update={"update_strategy": strategy, "impact": impact})
