"""Main agent implementation."""

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import List, Optional

from watchfiles import awatch

from horizon.agent.config import ConfigManager
from horizon.agent.server import AgentServer, EventStreamHandler
from horizon.engine.applier import HostApplier
from horizon.engine.classifier import UpdatePolicy
from horizon.engine.live_update import LiveUpdateManager
from horizon.engine.notifier import FileLogHandler, JournalHandler, LogHandler, UpdateNotifier
from horizon.engine.reloader import ServiceReloader
from horizon.engine.state_sync import StateSyncManager
from horizon.errors import HorizonError
from horizon.runtime.containers import ContainerManager
from horizon.runtime.layers import LayerManager
from horizon.runtime.system import SystemManager
from horizon.utils.logging import setup_logging
from horizon.utils.process import CommandRunner
from horizon.utils.systemd import SystemdDBus


logger = logging.getLogger(__name__)


class HorizonAgent:
    """Main agent wiring the reconciliation engine to its control surface."""

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize the agent."""
        self.config_dir = config_dir or Path("/etc/horizonos")
        self.config_manager: Optional[ConfigManager] = None
        self.systemd: Optional[SystemdDBus] = None
        self.notifier: Optional[UpdateNotifier] = None
        self.system_manager: Optional[SystemManager] = None
        self.server: Optional[AgentServer] = None
        self.shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def initialize(self):
        """Initialize agent components."""
        self.config_manager = ConfigManager(self.config_dir)
        await self.config_manager.load()

        config = self.config_manager.config
        setup_logging(config.agent.log_level, config.agent.log_file)

        state_dir = Path(config.agent.state_dir)
        state_dir.mkdir(parents=True, exist_ok=True)

        runner = CommandRunner(default_timeout=config.runtime.command_timeout)
        self.systemd = SystemdDBus(runner)
        await self.systemd.connect()

        event_stream = EventStreamHandler()
        handlers = [LogHandler(), event_stream]
        if config.notifications.file:
            handlers.append(FileLogHandler(Path(config.notifications.log_file)))
        if config.notifications.journal:
            handlers.append(JournalHandler(runner))
        self.notifier = UpdateNotifier(handlers, history_size=config.notifications.history_size)

        container_manager = ContainerManager(
            runner,
            bin_dir=Path(config.runtime.bin_dir),
            command_timeout=config.runtime.command_timeout,
        )
        reloader = ServiceReloader(self.systemd, runner)
        live_update = LiveUpdateManager(
            applier=HostApplier(runner, self.systemd, reloader),
            state_sync=StateSyncManager(state_dir, runner),
            notifier=self.notifier,
            policy=UpdatePolicy(config.update.reloadable_services),
        )
        self.system_manager = SystemManager(
            container_manager=container_manager,
            layer_manager=LayerManager(container_manager, runner),
            live_update=live_update,
            state_sync=live_update.state_sync,
            systemd=self.systemd,
            state_dir=state_dir,
            expected_services=config.runtime.expected_services,
            update_config=config.update,
        )
        await self.system_manager.load_system_state()

        self.server = AgentServer(
            socket_path=Path(config.agent.socket_path),
            host=config.agent.api_host,
            port=config.agent.api_port,
            system_manager=self.system_manager,
            config_manager=self.config_manager,
            notifier=self.notifier,
            event_stream=event_stream,
        )

        logger.info("Agent initialized successfully")

    async def run(self):
        """Run the agent main loop."""
        await self.initialize()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.shutdown)

        try:
            await self.server.start()

            self._tasks.append(asyncio.create_task(self._health_loop()))
            self._tasks.append(asyncio.create_task(self._config_watch_loop()))

            logger.info("Agent started, waiting for shutdown signal")
            await self.shutdown_event.wait()

        finally:
            await self._cleanup()

    async def _health_loop(self):
        """Run periodic health checks."""
        interval = self.config_manager.config.agent.health_interval

        while not self.shutdown_event.is_set():
            try:
                health = await self.system_manager.check_system_health()
                logger.debug(f"System health: {health.overall.value}")
            except Exception as e:
                logger.error(f"Health check error: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self.shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def _apply_desired(self):
        """Converge the system to the freshly loaded desired configuration."""
        desired = self.config_manager.desired
        if desired is None:
            return
        if self.system_manager.live_update.running:
            logger.warning("An update is already running, skipping automatic apply")
            return
        try:
            result = await self.system_manager.update_system(desired)
            logger.info(f"Automatic update finished: {result.status}")
        except HorizonError as e:
            logger.error(f"Automatic update failed: {e}")

    async def _config_watch_loop(self):
        """Watch for configuration changes."""
        logger.info(f"Starting config watcher on {self.config_manager.config_dir}")
        try:
            async for _ in awatch(self.config_manager.config_dir, stop_event=self.shutdown_event):
                if not await self.config_manager.watch_for_changes():
                    continue
                logger.info("Configuration changed, reloading")
                try:
                    await self.config_manager.load()
                except Exception as e:
                    logger.error(f"Failed to reload configuration: {e}")
                    continue
                if self.config_manager.config.update.auto_apply:
                    await self._apply_desired()
        except Exception as e:
            if not self.shutdown_event.is_set():
                logger.error(f"Config watch error: {e}", exc_info=True)

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        if self.system_manager and self.system_manager.live_update.running:
            self.system_manager.live_update.request_stop()
        self.shutdown_event.set()

    async def _cleanup(self):
        """Clean up resources."""
        logger.info("Cleaning up agent resources")

        for task in self._tasks:
            if not task.done():
                task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.server:
            await self.server.stop()
        if self.systemd:
            await self.systemd.disconnect()

        logger.info("Agent cleanup completed")


async def run_agent():
    """Run the agent."""
    config_dir = os.environ.get("HORIZON_CONFIG_DIR")
    agent = HorizonAgent(config_dir=Path(config_dir) if config_dir else None)
    await agent.run()
