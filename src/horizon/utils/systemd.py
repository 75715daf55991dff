"""Systemd utilities and DBus integration."""

import asyncio
import logging
from typing import Optional, List, Any

from dbus_next.aio import MessageBus
from dbus_next import BusType

from horizon.utils.process import CommandRunner


logger = logging.getLogger(__name__)


class SystemdDBus:
    """DBus interface to systemd with a ``systemctl`` fallback.

    When the system bus is unavailable (containers, CI) every call goes
    through the command runner instead. Bus calls share the runner's
    timeout; a call that times out falls back to ``systemctl``.
    """

    def __init__(self, runner: Optional[CommandRunner] = None):
        """Initialize DBus connection state."""
        self.runner = runner or CommandRunner()
        self.bus: Optional[MessageBus] = None
        self.systemd = None

    async def connect(self) -> bool:
        """Connect to system DBus. Returns False when falling back to systemctl."""
        try:
            self.bus = await self._bus_call(MessageBus(bus_type=BusType.SYSTEM).connect())

            introspection = await self._bus_call(self.bus.introspect(
                "org.freedesktop.systemd1",
                "/org/freedesktop/systemd1"
            ))
            self.systemd = self.bus.get_proxy_object(
                "org.freedesktop.systemd1",
                "/org/freedesktop/systemd1",
                introspection
            ).get_interface("org.freedesktop.systemd1.Manager")

            logger.debug("Connected to systemd DBus")
            return True

        except Exception as e:
            logger.warning(f"Failed to connect to DBus, using systemctl: {e}")
            self.bus = None
            self.systemd = None
            return False

    async def _bus_call(self, awaitable):
        """Await a DBus call, bounded by the runner timeout."""
        return await asyncio.wait_for(awaitable, timeout=self.runner.default_timeout)

    async def disconnect(self):
        """Disconnect from DBus."""
        if self.bus:
            self.bus.disconnect()
            self.bus = None
            self.systemd = None

    async def _execute_fallback(
        self,
        dbus_method_name: str,
        dbus_args: List[Any],
        cli_cmd: List[str],
        success_msg: str,
        error_action: str
    ):
        """Execute a DBus method with CLI fallback."""
        if self.systemd:
            try:
                method = getattr(self.systemd, dbus_method_name)
                await self._bus_call(method(*dbus_args))
                logger.debug(success_msg)
                return
            except asyncio.TimeoutError:
                logger.error(f"Timed out trying to {error_action} via DBus, using systemctl")
            except Exception as e:
                logger.error(f"Failed to {error_action} via DBus: {e}")

        await self.runner.check(cli_cmd)
        logger.debug(success_msg)

    async def reload_daemon(self):
        """Reload systemd daemon configuration."""
        await self._execute_fallback(
            "call_reload",
            [],
            ["systemctl", "daemon-reload"],
            "Reloaded systemd daemon",
            "reload systemd"
        )

    async def start_unit(self, unit_name: str):
        """Start a systemd unit."""
        await self._execute_fallback(
            "call_start_unit",
            [unit_name, "replace"],
            ["systemctl", "start", unit_name],
            f"Started unit {unit_name}",
            "start unit"
        )

    async def stop_unit(self, unit_name: str):
        """Stop a systemd unit."""
        await self._execute_fallback(
            "call_stop_unit",
            [unit_name, "replace"],
            ["systemctl", "stop", unit_name],
            f"Stopped unit {unit_name}",
            "stop unit"
        )

    async def reload_unit(self, unit_name: str):
        """Reload a systemd unit's configuration."""
        await self._execute_fallback(
            "call_reload_unit",
            [unit_name, "replace"],
            ["systemctl", "reload", unit_name],
            f"Reloaded unit {unit_name}",
            "reload unit"
        )

    async def restart_unit(self, unit_name: str):
        """Restart a systemd unit."""
        await self._execute_fallback(
            "call_restart_unit",
            [unit_name, "replace"],
            ["systemctl", "restart", unit_name],
            f"Restarted unit {unit_name}",
            "restart unit"
        )

    async def kill_unit(self, unit_name: str, signal: str):
        """Send a signal to the main process of a unit."""
        await self.runner.check(
            ["systemctl", "kill", f"--signal={signal}", "--kill-whom=main", unit_name]
        )

    async def enable_unit(self, unit_name: str):
        """Enable a systemd unit."""
        await self._execute_fallback(
            "call_enable_unit_files",
            [[unit_name], False, True],
            ["systemctl", "enable", unit_name],
            f"Enabled unit {unit_name}",
            "enable unit"
        )

    async def disable_unit(self, unit_name: str):
        """Disable a systemd unit."""
        await self._execute_fallback(
            "call_disable_unit_files",
            [[unit_name], False],
            ["systemctl", "disable", unit_name],
            f"Disabled unit {unit_name}",
            "disable unit"
        )

    async def get_unit_state(self, unit_name: str) -> str:
        """Get the active state of a unit."""
        if self.systemd:
            try:
                unit_path = await self._bus_call(self.systemd.call_get_unit(unit_name))

                introspection = await self._bus_call(self.bus.introspect(
                    "org.freedesktop.systemd1",
                    unit_path
                ))
                unit_proxy = self.bus.get_proxy_object(
                    "org.freedesktop.systemd1",
                    unit_path,
                    introspection
                ).get_interface("org.freedesktop.DBus.Properties")

                state = await self._bus_call(unit_proxy.call_get(
                    "org.freedesktop.systemd1.Unit",
                    "ActiveState"
                ))
                return state.value

            except Exception as e:
                logger.debug(f"Failed to get unit state via DBus: {e}")

        result = await self.runner.run(["systemctl", "is-active", unit_name])
        return result.stdout.strip()

    async def is_active(self, unit_name: str) -> bool:
        """Check whether a unit is active."""
        return await self.get_unit_state(unit_name) == "active"

    async def is_enabled(self, unit_name: str) -> bool:
        """Check whether a unit is enabled."""
        result = await self.runner.run(["systemctl", "is-enabled", unit_name])
        return result.stdout.strip() == "enabled"

    async def get_unit_property(self, unit_name: str, prop: str) -> str:
        """Read a single unit property through ``systemctl show``."""
        result = await self.runner.run(["systemctl", "show", "-p", prop, "--value", unit_name])
        return result.stdout.strip()
