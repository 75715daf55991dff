"""Host-side application of individual changes."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional, List

from horizon.engine.reloader import ServiceReloader
from horizon.errors import UnsupportedChangeError
from horizon.models.change import Change, ChangeType, UpdateStrategy
from horizon.models.snapshot import Service, User
from horizon.utils.atomic import atomic_write_text
from horizon.utils.process import CommandRunner
from horizon.utils.systemd import SystemdDBus
from horizon.utils.templates import (
    render_template, SERVICE_OVERRIDE_TEMPLATE, REPOSITORY_TEMPLATE,
)


logger = logging.getLogger(__name__)

PACKAGE_TIMEOUT = 600
OVERRIDE_FILE = "horizon.conf"

SYSTEM_SETTERS = {
    "hostname": lambda value: ["hostnamectl", "set-hostname", value],
    "timezone": lambda value: ["timedatectl", "set-timezone", value],
    "locale": lambda value: ["localectl", "set-locale", f"LANG={value}"],
}


class HostApplier:
    """Applies one change to the host through external commands.

    Reboot-required changes are rejected outright; they are only ever
    applied by booting into the new configuration.
    """

    def __init__(
        self,
        runner: CommandRunner,
        systemd: Optional[SystemdDBus] = None,
        reloader: Optional[ServiceReloader] = None,
        systemd_dir: Path = Path("/etc/systemd/system"),
        repository_dir: Path = Path("/etc/pacman.d/horizonos"),
        workflow_dir: Path = Path("/etc/horizonos/workflows"),
    ):
        self.runner = runner
        self.systemd = systemd or SystemdDBus(runner)
        self.reloader = reloader or ServiceReloader(self.systemd, runner)
        self.systemd_dir = Path(systemd_dir)
        self.repository_dir = Path(repository_dir)
        self.workflow_dir = Path(workflow_dir)
        self._handlers = {
            ChangeType.SYSTEM_CONFIG: self._apply_system_config,
            ChangeType.PACKAGE_INSTALL: self._apply_package_install,
            ChangeType.PACKAGE_REMOVE: self._apply_package_remove,
            ChangeType.SERVICE_ADD: self._apply_service_add,
            ChangeType.SERVICE_STATE: self._apply_service_state,
            ChangeType.SERVICE_CONFIG: self._apply_service_config,
            ChangeType.SERVICE_REMOVE: self._apply_service_remove,
            ChangeType.USER_ADD: self._apply_user_add,
            ChangeType.USER_MODIFY: self._apply_user_modify,
            ChangeType.REPOSITORY: self._apply_repository,
            ChangeType.DESKTOP_CONFIG: self._apply_desktop,
            ChangeType.AUTOMATION_WORKFLOW: self._apply_workflow,
        }

    async def apply(self, change: Change, dry_run: bool = False):
        """Apply a single change."""
        if change.update_strategy == UpdateStrategy.REBOOT_REQUIRED:
            raise UnsupportedChangeError(f"Cannot apply live: {change.description}")

        handler = self._handlers.get(change.change_type)
        if handler is None:
            raise UnsupportedChangeError(f"No live handler for {change.change_type.value}")

        if dry_run:
            logger.info(f"[dry-run] Would apply: {change.description}")
            return

        logger.info(f"Applying: {change.description}")
        await handler(change)

    async def _apply_system_config(self, change: Change):
        setter = SYSTEM_SETTERS.get(change.field)
        if setter is None:
            raise UnsupportedChangeError(f"Unknown system setting {change.field}")
        await self.runner.check(setter(str(change.new_value)))

    async def _apply_package_install(self, change: Change):
        names = [pkg.name for pkg in change.new_value]
        await self.runner.check(
            ["pacman", "-S", "--noconfirm", "--needed", *names],
            timeout=PACKAGE_TIMEOUT
        )

    async def _apply_package_remove(self, change: Change):
        names = [pkg.name for pkg in change.old_value]
        await self.runner.check(
            ["pacman", "-R", "--noconfirm", *names],
            timeout=PACKAGE_TIMEOUT
        )

    def _override_path(self, service: str) -> Path:
        return self.systemd_dir / f"{service}.service.d" / OVERRIDE_FILE

    async def _write_override(self, service: Service):
        path = self._override_path(service.name)
        if service.config is None:
            await asyncio.to_thread(path.unlink, True)
            return
        content = render_template(
            SERVICE_OVERRIDE_TEMPLATE,
            service_name=service.name,
            config=service.config,
        )
        await asyncio.to_thread(atomic_write_text, path, content)

    async def _apply_service_add(self, change: Change):
        service: Service = change.new_value
        if service.config is not None:
            await self._write_override(service)
            await self.systemd.reload_daemon()
        if service.enabled:
            await self.systemd.enable_unit(service.name)
            await self.systemd.start_unit(service.name)

    async def _apply_service_state(self, change: Change):
        name = change.affected_service
        if change.new_value:
            await self.systemd.enable_unit(name)
            await self.systemd.start_unit(name)
        else:
            await self.systemd.stop_unit(name)
            await self.systemd.disable_unit(name)

    async def _apply_service_config(self, change: Change):
        name = change.affected_service
        await self._write_override(Service(name=name, config=change.new_value))
        await self.systemd.reload_daemon()
        await self.reloader.reload(name)

    async def _apply_service_remove(self, change: Change):
        name = change.affected_service
        await self.systemd.stop_unit(name)
        await self.systemd.disable_unit(name)
        override = self._override_path(name)
        if override.exists():
            await asyncio.to_thread(override.unlink, True)
            await self.systemd.reload_daemon()

    async def _apply_user_add(self, change: Change):
        for user in change.new_value:
            await self.runner.check(_useradd_args(user))

    async def _apply_user_modify(self, change: Change):
        old: User = change.old_value
        new: User = change.new_value
        args = ["usermod"]
        if new.uid is not None and new.uid != old.uid:
            args += ["-u", str(new.uid)]
        if new.shell != old.shell:
            args += ["-s", new.shell]
        if set(new.groups) != set(old.groups):
            args += ["-G", ",".join(new.groups)]
        if new.home_dir != old.home_dir:
            args += ["-d", new.home_dir, "-m"]
        if len(args) == 1:
            return
        await self.runner.check(args + [new.name])

    async def _apply_repository(self, change: Change):
        repo = change.new_value
        path = self.repository_dir / f"{change.field}.conf"
        if repo is not None and repo.enabled:
            content = render_template(REPOSITORY_TEMPLATE, repo=repo)
            await asyncio.to_thread(atomic_write_text, path, content)
        else:
            await asyncio.to_thread(path.unlink, True)
        await self.runner.check(["pacman", "-Sy", "--noconfirm"], timeout=PACKAGE_TIMEOUT)

    async def _apply_desktop(self, change: Change):
        # Only in-place settings updates are live; the rest is reboot-required
        if change.field != "update":
            raise UnsupportedChangeError(f"Cannot apply live: {change.description}")
        await self.reloader.reload(change.affected_service)

    async def _apply_workflow(self, change: Change):
        path = self.workflow_dir / f"{change.field}.json"
        workflow = change.new_value
        if workflow is None:
            await asyncio.to_thread(path.unlink, True)
            return
        content = json.dumps(workflow.model_dump(mode="json"), indent=2)
        await asyncio.to_thread(atomic_write_text, path, content + "\n")


def _useradd_args(user: User) -> List[str]:
    args = ["useradd", "-m", "-d", user.home_dir, "-s", user.shell]
    if user.uid is not None:
        args += ["-u", str(user.uid)]
    if user.groups:
        args += ["-G", ",".join(user.groups)]
    return args + [user.name]
