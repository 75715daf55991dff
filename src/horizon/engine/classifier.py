"""Update classification: strategy policy and bucket partitioning."""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from horizon.models.change import Change, ChangeType, ImpactLevel, UpdateStrategy
from horizon.models.config import DEFAULT_RELOADABLE_SERVICES


logger = logging.getLogger(__name__)

PolicyKey = Tuple[ChangeType, Optional[str]]
PolicyEntry = Tuple[UpdateStrategy, ImpactLevel]

RELOADABLE = "reloadable"
NOT_RELOADABLE = "not_reloadable"

DEFAULT_POLICY_TABLE: Dict[PolicyKey, PolicyEntry] = {
    (ChangeType.SYSTEM_CONFIG, "hostname"): (UpdateStrategy.LIVE, ImpactLevel.LOW),
    (ChangeType.SYSTEM_CONFIG, "timezone"): (UpdateStrategy.LIVE, ImpactLevel.LOW),
    (ChangeType.SYSTEM_CONFIG, "locale"): (UpdateStrategy.LIVE, ImpactLevel.MEDIUM),
    (ChangeType.SYSTEM_CONFIG, None): (UpdateStrategy.LIVE, ImpactLevel.MEDIUM),
    (ChangeType.PACKAGE_INSTALL, None): (UpdateStrategy.LIVE, ImpactLevel.MEDIUM),
    (ChangeType.PACKAGE_REMOVE, None): (UpdateStrategy.LIVE, ImpactLevel.MEDIUM),
    (ChangeType.SERVICE_ADD, None): (UpdateStrategy.SERVICE_RELOAD, ImpactLevel.MEDIUM),
    (ChangeType.SERVICE_STATE, None): (UpdateStrategy.SERVICE_RELOAD, ImpactLevel.MEDIUM),
    (ChangeType.SERVICE_CONFIG, RELOADABLE): (UpdateStrategy.SERVICE_RELOAD, ImpactLevel.HIGH),
    (ChangeType.SERVICE_CONFIG, NOT_RELOADABLE): (UpdateStrategy.REBOOT_REQUIRED, ImpactLevel.HIGH),
    (ChangeType.SERVICE_REMOVE, None): (UpdateStrategy.SERVICE_RELOAD, ImpactLevel.MEDIUM),
    (ChangeType.USER_ADD, None): (UpdateStrategy.LIVE, ImpactLevel.HIGH),
    (ChangeType.USER_MODIFY, None): (UpdateStrategy.LIVE, ImpactLevel.HIGH),
    (ChangeType.USER_REMOVE, None): (UpdateStrategy.REBOOT_REQUIRED, ImpactLevel.CRITICAL),
    (ChangeType.REPOSITORY, None): (UpdateStrategy.LIVE, ImpactLevel.MEDIUM),
    (ChangeType.DESKTOP_CONFIG, "enable"): (UpdateStrategy.REBOOT_REQUIRED, ImpactLevel.CRITICAL),
    (ChangeType.DESKTOP_CONFIG, "disable"): (UpdateStrategy.REBOOT_REQUIRED, ImpactLevel.CRITICAL),
    (ChangeType.DESKTOP_CONFIG, "update"): (UpdateStrategy.SERVICE_RELOAD, ImpactLevel.HIGH),
    (ChangeType.DESKTOP_CONFIG, "switch"): (UpdateStrategy.REBOOT_REQUIRED, ImpactLevel.HIGH),
    (ChangeType.AUTOMATION_WORKFLOW, None): (UpdateStrategy.LIVE, ImpactLevel.LOW),
}

# Never relaxed by overrides
_FORCED: Dict[ChangeType, PolicyEntry] = {
    ChangeType.USER_REMOVE: (UpdateStrategy.REBOOT_REQUIRED, ImpactLevel.CRITICAL),
}


class UpdatePolicy:
    """Strategy and impact table plus the reloadable-service allow-list."""

    def __init__(
        self,
        reloadable_services: Optional[Iterable[str]] = None,
        overrides: Optional[Dict[PolicyKey, PolicyEntry]] = None,
    ):
        if reloadable_services is None:
            reloadable_services = DEFAULT_RELOADABLE_SERVICES
        self.reloadable_services = frozenset(reloadable_services)
        self.table = dict(DEFAULT_POLICY_TABLE)
        if overrides:
            self.table.update(overrides)

    def is_reloadable(self, service: str) -> bool:
        """Check whether a service reloads its configuration without a reboot."""
        return service in self.reloadable_services

    def lookup(self, change_type: ChangeType, qualifier: Optional[str] = None) -> PolicyEntry:
        """Resolve the strategy and impact for a change type."""
        if change_type in _FORCED:
            return _FORCED[change_type]
        entry = self.table.get((change_type, qualifier))
        if entry is None:
            entry = self.table.get((change_type, None))
        if entry is None:
            # Unknown combinations are treated as unsafe
            return UpdateStrategy.REBOOT_REQUIRED, ImpactLevel.HIGH
        return entry

    def for_service_config(self, service: str) -> PolicyEntry:
        """Policy for a configuration change of ``service``."""
        qualifier = RELOADABLE if self.is_reloadable(service) else NOT_RELOADABLE
        return self.lookup(ChangeType.SERVICE_CONFIG, qualifier)

    def entry_for(self, change: Change) -> PolicyEntry:
        """Strategy and impact of an already-built change under this policy."""
        change_type = change.change_type
        if change_type == ChangeType.SERVICE_CONFIG and change.affected_service:
            return self.for_service_config(change.affected_service)
        qualifier = None
        if change_type in (ChangeType.SYSTEM_CONFIG, ChangeType.DESKTOP_CONFIG):
            qualifier = change.field
        return self.lookup(change_type, qualifier)

    def strategy_for(self, change: Change) -> UpdateStrategy:
        """Effective strategy of an already-built change."""
        return self.entry_for(change)[0]


@dataclass
class ClassifiedChanges:
    """Changes partitioned by update strategy, each in detection order."""
    live: List[Change] = field(default_factory=list)
    service_reload: List[Change] = field(default_factory=list)
    reboot_required: List[Change] = field(default_factory=list)

    @property
    def all(self) -> List[Change]:
        return self.live + self.service_reload + self.reboot_required

    @property
    def applicable(self) -> List[Change]:
        """Changes that can be applied without a reboot."""
        return self.live + self.service_reload

    @property
    def requires_reboot(self) -> bool:
        return bool(self.reboot_required)

    def is_empty(self) -> bool:
        return not (self.live or self.service_reload or self.reboot_required)

    def summary(self) -> Dict[str, int]:
        return {
            "live": len(self.live),
            "service_reload": len(self.service_reload),
            "reboot_required": len(self.reboot_required),
        }


def classify_changes(changes: Iterable[Change],
                     policy: Optional[UpdatePolicy] = None) -> ClassifiedChanges:
    """Partition changes into live, service-reload and reboot-required buckets."""
    policy = policy or UpdatePolicy()
    classified = ClassifiedChanges()
    for change in changes:
        strategy, impact = policy.entry_for(change)
        if (strategy, impact) != (change.update_strategy, change.impact):
            change = change.model_copy(update={"update_strategy": strategy, "impact": impact})
        if strategy == UpdateStrategy.LIVE:
            classified.live.append(change)
        elif strategy == UpdateStrategy.SERVICE_RELOAD:
            classified.service_reload.append(change)
        else:
            classified.reboot_required.append(change)

    logger.debug(f"Classified changes: {classified.summary()}")
    return classified


def group_by_resource(changes: Iterable[Change]) -> List[List[Change]]:
    """Group changes by resource key, keeping first-seen and detection order."""
    groups: Dict[str, List[Change]] = {}
    for change in changes:
        groups.setdefault(change.resource_key, []).append(change)
    return list(groups.values())


def _payload_size(value) -> int:
    if isinstance(value, (list, tuple)):
        return len(value)
    return 1


def estimate_duration(classified: ClassifiedChanges) -> int:
    """Rough number of seconds needed to apply the live and reload buckets."""
    seconds = 0
    for change in classified.live:
        if change.change_type == ChangeType.PACKAGE_INSTALL:
            seconds += 30 * _payload_size(change.new_value)
        elif change.change_type == ChangeType.PACKAGE_REMOVE:
            seconds += 10 * _payload_size(change.old_value)
        elif change.change_type == ChangeType.USER_ADD:
            seconds += 5
        elif change.change_type == ChangeType.USER_MODIFY:
            seconds += 3
        else:
            seconds += 2
    seconds += 5 * len(classified.service_reload)
    return seconds
