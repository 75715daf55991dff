"""Per-service reload strategies."""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from horizon.utils.process import CommandRunner
from horizon.utils.systemd import SystemdDBus


logger = logging.getLogger(__name__)


class ReloadMethod(str, Enum):
    """How a service picks up new configuration."""
    SIGNAL = "signal"
    COMMAND = "command"
    SYSTEMD = "systemd"
    RESTART = "restart"


class ReloadOutcome(str, Enum):
    """Result of a reload request."""
    RELOADED = "reloaded"
    RESTARTED = "restarted"
    NOT_RUNNING = "not_running"


@dataclass(frozen=True)
class ReloadStrategy:
    """Reload strategy for one service."""
    method: ReloadMethod
    signal: str = "HUP"
    command: Tuple[str, ...] = ()
    grace_period: float = 0.0


DEFAULT_RELOAD_STRATEGIES: Dict[str, ReloadStrategy] = {
    "nginx": ReloadStrategy(ReloadMethod.SIGNAL, signal="HUP"),
    "sshd": ReloadStrategy(ReloadMethod.SIGNAL, signal="HUP"),
    "rsyslog": ReloadStrategy(ReloadMethod.SIGNAL, signal="HUP"),
    "apache2": ReloadStrategy(ReloadMethod.COMMAND, command=("apachectl", "graceful")),
    "httpd": ReloadStrategy(ReloadMethod.COMMAND, command=("apachectl", "graceful")),
    "postfix": ReloadStrategy(ReloadMethod.COMMAND, command=("postfix", "reload")),
    "dovecot": ReloadStrategy(ReloadMethod.COMMAND, command=("doveadm", "reload")),
    "named": ReloadStrategy(ReloadMethod.COMMAND, command=("rndc", "reload")),
    "bind9": ReloadStrategy(ReloadMethod.COMMAND, command=("rndc", "reload")),
    "NetworkManager": ReloadStrategy(ReloadMethod.SYSTEMD),
    "systemd-resolved": ReloadStrategy(ReloadMethod.SYSTEMD),
    "systemd-timesyncd": ReloadStrategy(ReloadMethod.SYSTEMD),
    # Display managers end every graphical session on restart
    "gdm": ReloadStrategy(ReloadMethod.RESTART, grace_period=10.0),
    "sddm": ReloadStrategy(ReloadMethod.RESTART, grace_period=10.0),
    "lightdm": ReloadStrategy(ReloadMethod.RESTART, grace_period=10.0),
}


class ServiceReloader:
    """Reloads services with the least disruptive mechanism available."""

    def __init__(self, systemd: SystemdDBus, runner: Optional[CommandRunner] = None,
                 strategies: Optional[Dict[str, ReloadStrategy]] = None):
        self.systemd = systemd
        self.runner = runner or systemd.runner
        self.strategies = dict(DEFAULT_RELOAD_STRATEGIES if strategies is None else strategies)

    async def strategy_for(self, service: str) -> ReloadStrategy:
        """Configured strategy, or one derived from the unit's CanReload property."""
        strategy = self.strategies.get(service)
        if strategy is not None:
            return strategy
        can_reload = await self.systemd.get_unit_property(service, "CanReload")
        if can_reload == "yes":
            return ReloadStrategy(ReloadMethod.SYSTEMD)
        return ReloadStrategy(ReloadMethod.RESTART)

    async def reload(self, service: str) -> ReloadOutcome:
        """Make a running service pick up its configuration."""
        if not await self.systemd.is_active(service):
            logger.info(f"Service {service} is not running, nothing to reload")
            return ReloadOutcome.NOT_RUNNING

        strategy = await self.strategy_for(service)
        logger.info(f"Reloading {service} via {strategy.method.value}")

        if strategy.method == ReloadMethod.SIGNAL:
            await self.systemd.kill_unit(service, strategy.signal)
        elif strategy.method == ReloadMethod.COMMAND:
            await self.runner.check(list(strategy.command))
        elif strategy.method == ReloadMethod.SYSTEMD:
            await self.systemd.reload_unit(service)
        else:
            if strategy.grace_period:
                logger.warning(
                    f"Restarting {service} in {strategy.grace_period:.0f}s, "
                    f"active sessions will be terminated"
                )
                await asyncio.sleep(strategy.grace_period)
            await self.systemd.restart_unit(service)
            return ReloadOutcome.RESTARTED

        return ReloadOutcome.RELOADED
