"""HTTP/REST/WebSocket server for agent communication."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Set

from aiohttp import WSMsgType, web

from horizon.agent.config import ConfigManager
from horizon.engine.notifier import Notification, NotificationHandler, UpdateEventType, UpdateNotifier
from horizon.models.snapshot import ConfigSnapshot
from horizon.runtime.system import SystemManager


logger = logging.getLogger(__name__)


class EventStreamHandler(NotificationHandler):
    """Pushes notifications to connected WebSocket clients."""

    name = "stream"

    def __init__(self):
        self.clients: Set[web.WebSocketResponse] = set()

    async def notify(self, notification: Notification):
        if not self.clients:
            return
        payload = notification.model_dump(mode="json")
        for ws in list(self.clients):
            if ws.closed:
                self.clients.discard(ws)
                continue
            try:
                await ws.send_json(payload)
            except ConnectionResetError:
                self.clients.discard(ws)


class AgentServer:
    """Agent HTTP/WebSocket server."""

    def __init__(self, socket_path: Path, host: Optional[str], port: int,
                 system_manager: SystemManager, config_manager: ConfigManager,
                 notifier: UpdateNotifier, event_stream: Optional[EventStreamHandler] = None):
        """Initialize server."""
        self.socket_path = Path(socket_path)
        self.host = host
        self.port = port
        self.system_manager = system_manager
        self.config_manager = config_manager
        self.notifier = notifier
        self.event_stream = event_stream or EventStreamHandler()
        if self.event_stream not in notifier.handlers:
            notifier.add_handler(self.event_stream)
        self.app = web.Application()
        self.runner: Optional[web.AppRunner] = None
        self._setup_routes()

    def _setup_routes(self):
        """Setup API routes."""
        self.app.router.add_post('/api/v1/command', self._handle_command)
        self.app.router.add_get('/api/v1/stream/events', self._handle_stream_events)

    async def start(self):
        """Start the server."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        # Bind to Unix socket
        if self.socket_path.exists():
            self.socket_path.unlink()
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        site_unix = web.UnixSite(self.runner, str(self.socket_path))
        await site_unix.start()
        os.chmod(self.socket_path, 0o660)
        logger.info(f"Agent listening on unix:{self.socket_path}")

        if self.host:
            site_tcp = web.TCPSite(self.runner, self.host, self.port)
            await site_tcp.start()
            logger.info(f"Agent listening on tcp://{self.host}:{self.port}")

    async def stop(self):
        """Stop the server."""
        for ws in list(self.event_stream.clients):
            await ws.close()
        if self.runner:
            await self.runner.cleanup()
        if self.socket_path.exists():
            self.socket_path.unlink()
        logger.info("Agent server stopped")

    async def _handle_command(self, request: web.Request) -> web.Response:
        """Handle standard REST command."""
        try:
            data = await request.json()
            command = data.get("command")
            args = data.get("args") or {}

            response_data = await self._process_command(command, args)
            return web.json_response({"success": True, "data": response_data})

        except Exception as e:
            logger.error(f"Command error: {e}", exc_info=True)
            return web.json_response({"success": False, "error": str(e)}, status=500)

    async def _process_command(self, command: str, args: Dict[str, Any]) -> Any:
        """Dispatch a command to its handler."""
        handlers = {
            "status": self._handle_status,
            "health": self._handle_health,
            "plan": self._handle_plan,
            "update": self._handle_update,
            "rollback": self._handle_rollback,
            "deploy": self._handle_deploy,
            "containers": self._handle_containers,
            "container_logs": self._handle_container_logs,
            "layers": self._handle_layers,
            "layer_start": self._handle_layer_start,
            "layer_stop": self._handle_layer_stop,
            "history": self._handle_history,
            "reload": self._handle_reload,
        }

        handler = handlers.get(command)
        if not handler:
            raise ValueError(f"Unknown command: {command}")

        return await handler(args)

    async def _handle_stream_events(self, request: web.Request) -> web.StreamResponse:
        """Stream update notifications until the client disconnects."""
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)
        self.event_stream.clients.add(ws)
        logger.debug("Event stream client connected")
        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    break
        finally:
            self.event_stream.clients.discard(ws)
            logger.debug("Event stream client disconnected")
        return ws

    async def _desired(self) -> ConfigSnapshot:
        desired = await self.config_manager.load_desired()
        if desired is None:
            raise ValueError("No desired system configuration found")
        return desired

    # -- Command handlers --

    async def _handle_status(self, args: Dict[str, Any]) -> Dict[str, Any]:
        state = await self.system_manager.get_system_state()
        live_update = self.system_manager.live_update
        last = live_update.last_result
        return {
            "agent": {
                "running": True,
                "phase": live_update.phase.value,
                "update_running": live_update.running,
                "last_update": last.to_dict() if last else None,
            },
            "system": state.model_dump(mode="json"),
        }

    async def _handle_health(self, args: Dict[str, Any]) -> Dict[str, Any]:
        health = await self.system_manager.check_system_health()
        return health.model_dump(mode="json")

    async def _handle_plan(self, args: Dict[str, Any]) -> Dict[str, Any]:
        capability = await self.system_manager.plan_update(await self._desired())
        return capability.to_dict()

    async def _handle_update(self, args: Dict[str, Any]) -> Dict[str, Any]:
        defaults = self.system_manager.update_config
        options = defaults.options(
            dry_run=args.get("dry_run"),
            allow_partial_update=args.get("allow_partial"),
            continue_on_error=args.get("continue_on_error"),
        )
        result = await self.system_manager.update_system(await self._desired(), options)
        return result.to_dict()

    async def _handle_rollback(self, args: Dict[str, Any]) -> Dict[str, Any]:
        snapshot = await self.system_manager.rollback_system()
        return {"rolled_back": True, "snapshot": snapshot.summary()}

    async def _handle_deploy(self, args: Dict[str, Any]) -> Dict[str, Any]:
        result = await self.system_manager.deploy_system(await self._desired())
        return result.model_dump(mode="json")

    async def _handle_containers(self, args: Dict[str, Any]) -> Dict[str, Any]:
        containers = await self.system_manager.container_manager.list()
        return {"containers": [c.model_dump(mode="json") for c in containers]}

    async def _handle_container_logs(self, args: Dict[str, Any]) -> Dict[str, Any]:
        name = args.get("name")
        if not name:
            raise ValueError("Container name required")
        lines = int(args.get("lines") or 100)
        logs = await self.system_manager.container_manager.logs(name, lines)
        return {"name": name, "logs": logs}

    async def _handle_layers(self, args: Dict[str, Any]) -> Dict[str, Any]:
        layers = await self.system_manager.layer_manager.list_layers()
        return {"layers": [layer.model_dump(mode="json") for layer in layers]}

    async def _handle_layer_start(self, args: Dict[str, Any]) -> Dict[str, Any]:
        name = args.get("name")
        if not name:
            raise ValueError("Layer name required")
        info = await self.system_manager.layer_manager.start_layer(name)
        return {"layer": info.model_dump(mode="json"), "started": True}

    async def _handle_layer_stop(self, args: Dict[str, Any]) -> Dict[str, Any]:
        name = args.get("name")
        if not name:
            raise ValueError("Layer name required")
        info = await self.system_manager.layer_manager.stop_layer(name)
        return {"layer": info.model_dump(mode="json"), "stopped": True}

    async def _handle_history(self, args: Dict[str, Any]) -> Dict[str, Any]:
        event_type = args.get("event_type")
        events = self.notifier.get_history(
            limit=args.get("limit"),
            event_type=UpdateEventType(event_type) if event_type else None,
        )
        return {"events": [e.model_dump(mode="json") for e in events]}

    async def _handle_reload(self, args: Dict[str, Any]) -> Dict[str, Any]:
        await self.config_manager.load()
        return {"reloaded": True}
