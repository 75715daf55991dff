"""Change detection between two configuration snapshots."""

import logging
from typing import Any, Dict, Iterable, List, Optional, TypeVar

from horizon.engine.classifier import UpdatePolicy
from horizon.models.change import Change, ChangeType
from horizon.models.snapshot import (
    ConfigSnapshot, PackageAction, User, AutomationConfig, DesktopConfig,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

SYSTEM_FIELDS = ("hostname", "timezone", "locale")

# attribute -> wording used in USER_MODIFY descriptions
USER_ATTRIBUTES = (
    ("uid", "UID"),
    ("shell", "shell"),
    ("groups", "groups"),
    ("home_dir", "home directory"),
)


def _by_name(items: Iterable[T]) -> Dict[str, T]:
    """Index a collection by name; a later duplicate replaces an earlier one."""
    return {item.name: item for item in items}


def _names(items: Iterable[Any]) -> str:
    return ", ".join(item.name for item in items)


class ChangeDetector:
    """Computes the changes that converge ``current`` to ``desired``.

    Pure and deterministic: no I/O, and no exceptions for valid snapshots.
    Sub-domains are compared in a fixed order (system, packages, services,
    users, repositories, desktop, automation).
    """

    def __init__(self, policy: Optional[UpdatePolicy] = None):
        self.policy = policy or UpdatePolicy()

    def detect_changes(self, current: ConfigSnapshot, desired: ConfigSnapshot) -> List[Change]:
        """Return every difference between two snapshots."""
        changes: List[Change] = []
        changes.extend(self._system_changes(current, desired))
        changes.extend(self._package_changes(current, desired))
        changes.extend(self._service_changes(current, desired))
        changes.extend(self._user_changes(current, desired))
        changes.extend(self._repository_changes(current, desired))
        changes.extend(self._desktop_changes(current.desktop, desired.desktop))
        changes.extend(self._automation_changes(current.automation, desired.automation))

        logger.debug(f"Detected {len(changes)} change(s)")
        return changes

    def _change(self, change_type: ChangeType, description: str,
                qualifier: Optional[str] = None, **fields: Any) -> Change:
        strategy, impact = self.policy.lookup(change_type, qualifier)
        return Change(
            change_type=change_type,
            description=description,
            update_strategy=strategy,
            impact=impact,
            **fields,
        )

    def _system_changes(self, current: ConfigSnapshot, desired: ConfigSnapshot) -> List[Change]:
        changes = []
        for name in SYSTEM_FIELDS:
            old = getattr(current.system, name)
            new = getattr(desired.system, name)
            if old != new:
                changes.append(self._change(
                    ChangeType.SYSTEM_CONFIG,
                    f"Change {name} from '{old}' to '{new}'",
                    qualifier=name,
                    field=name,
                    old_value=old,
                    new_value=new,
                ))
        return changes

    def _package_changes(self, current: ConfigSnapshot, desired: ConfigSnapshot) -> List[Change]:
        current_pkgs = _by_name(current.packages)
        desired_pkgs = _by_name(desired.packages)

        to_install = [
            pkg for name, pkg in desired_pkgs.items()
            if pkg.action == PackageAction.INSTALL
            and (name not in current_pkgs or current_pkgs[name].action == PackageAction.REMOVE)
        ]
        to_remove = [
            pkg for name, pkg in current_pkgs.items()
            if pkg.action == PackageAction.INSTALL
            and (name not in desired_pkgs or desired_pkgs[name].action == PackageAction.REMOVE)
        ]

        changes = []
        if to_install:
            changes.append(self._change(
                ChangeType.PACKAGE_INSTALL,
                f"Install packages: {_names(to_install)}",
                new_value=tuple(to_install),
            ))
        if to_remove:
            changes.append(self._change(
                ChangeType.PACKAGE_REMOVE,
                f"Remove packages: {_names(to_remove)}",
                old_value=tuple(to_remove),
            ))
        return changes

    def _service_changes(self, current: ConfigSnapshot, desired: ConfigSnapshot) -> List[Change]:
        current_svcs = _by_name(current.services)
        desired_svcs = _by_name(desired.services)
        changes = []

        for name, service in desired_svcs.items():
            old = current_svcs.get(name)
            if old is None:
                changes.append(self._change(
                    ChangeType.SERVICE_ADD,
                    f"Add service {name}",
                    new_value=service,
                    affected_service=name,
                ))
                continue

            if old.enabled != service.enabled:
                verb = "Enable" if service.enabled else "Disable"
                changes.append(self._change(
                    ChangeType.SERVICE_STATE,
                    f"{verb} service {name}",
                    old_value=old.enabled,
                    new_value=service.enabled,
                    affected_service=name,
                ))

            if old.config != service.config:
                strategy, impact = self.policy.for_service_config(name)
                changes.append(Change(
                    change_type=ChangeType.SERVICE_CONFIG,
                    description=f"Update configuration of service {name}",
                    old_value=old.config,
                    new_value=service.config,
                    affected_service=name,
                    update_strategy=strategy,
                    impact=impact,
                ))

        for name, service in current_svcs.items():
            if name not in desired_svcs:
                changes.append(self._change(
                    ChangeType.SERVICE_REMOVE,
                    f"Remove service {name}",
                    old_value=service,
                    affected_service=name,
                ))
        return changes

    def _user_changes(self, current: ConfigSnapshot, desired: ConfigSnapshot) -> List[Change]:
        current_users = _by_name(current.users)
        desired_users = _by_name(desired.users)
        changes = []

        added = [user for name, user in desired_users.items() if name not in current_users]
        if added:
            changes.append(self._change(
                ChangeType.USER_ADD,
                f"Add users: {_names(added)}",
                new_value=tuple(added),
            ))

        for name, user in desired_users.items():
            old = current_users.get(name)
            if old is None:
                continue
            modified = _modified_user_attributes(old, user)
            if modified:
                changes.append(self._change(
                    ChangeType.USER_MODIFY,
                    f"Modify user {name}: {', '.join(modified)}",
                    field=name,
                    old_value=old,
                    new_value=user,
                ))

        removed = [user for name, user in current_users.items() if name not in desired_users]
        if removed:
            changes.append(self._change(
                ChangeType.USER_REMOVE,
                f"Remove users: {_names(removed)}",
                old_value=tuple(removed),
            ))
        return changes

    def _repository_changes(self, current: ConfigSnapshot, desired: ConfigSnapshot) -> List[Change]:
        current_repos = _by_name(current.repositories)
        desired_repos = _by_name(desired.repositories)
        changes = []

        for name, repo in desired_repos.items():
            old = current_repos.get(name)
            if old is None:
                description = f"Add repository {name}"
            elif old != repo:
                description = f"Update repository {name}"
            else:
                continue
            changes.append(self._change(
                ChangeType.REPOSITORY, description,
                field=name, old_value=old, new_value=repo,
            ))

        for name, repo in current_repos.items():
            if name not in desired_repos:
                changes.append(self._change(
                    ChangeType.REPOSITORY, f"Remove repository {name}",
                    field=name, old_value=repo,
                ))
        return changes

    def _desktop_changes(self, current: Optional[DesktopConfig],
                         desired: Optional[DesktopConfig]) -> List[Change]:
        if current == desired:
            return []

        if current is None:
            qualifier = "enable"
            description = f"Enable desktop environment {desired.environment}"
        elif desired is None:
            qualifier = "disable"
            description = f"Disable desktop environment {current.environment}"
        elif current.environment == desired.environment:
            qualifier = "update"
            description = f"Update desktop environment {desired.environment} settings"
        else:
            qualifier = "switch"
            description = (
                f"Switch desktop environment from {current.environment} "
                f"to {desired.environment}"
            )

        display_manager = (desired or current).display_manager
        return [self._change(
            ChangeType.DESKTOP_CONFIG, description,
            qualifier=qualifier,
            field=qualifier,
            old_value=current,
            new_value=desired,
            affected_service=display_manager,
        )]

    def _automation_changes(self, current: Optional[AutomationConfig],
                            desired: Optional[AutomationConfig]) -> List[Change]:
        current_flows = _by_name(current.workflows) if current else {}
        desired_flows = _by_name(desired.workflows) if desired else {}
        changes = []

        for name, workflow in desired_flows.items():
            old = current_flows.get(name)
            if old is None:
                description = f"Add automation workflow {name}"
            elif old != workflow:
                description = f"Update automation workflow {name}"
            else:
                continue
            changes.append(self._change(
                ChangeType.AUTOMATION_WORKFLOW, description,
                field=name, old_value=old, new_value=workflow,
            ))

        for name, workflow in current_flows.items():
            if name not in desired_flows:
                changes.append(self._change(
                    ChangeType.AUTOMATION_WORKFLOW, f"Remove automation workflow {name}",
                    field=name, old_value=workflow,
                ))
        return changes


def _modified_user_attributes(old: User, new: User) -> List[str]:
    modified = []
    for attr, label in USER_ATTRIBUTES:
        before = getattr(old, attr)
        after = getattr(new, attr)
        if attr == "groups":
            before, after = set(before), set(after)
        if before != after:
            modified.append(label)
    return modified


def detect_changes(current: ConfigSnapshot, desired: ConfigSnapshot,
                   policy: Optional[UpdatePolicy] = None) -> List[Change]:
    """Detect changes with the default (or given) policy."""
    return ChangeDetector(policy).detect_changes(current, desired)
