"""HTTP/WebSocket client for communicating with the agent."""

from pathlib import Path
from typing import Any, AsyncContextManager, Dict, Optional

import httpx
import websockets


DEFAULT_SOCKET = "/run/horizonos/agent.sock"

# Updates can wait on package installs and service reloads
COMMAND_TIMEOUTS = {
    "update": 900.0,
    "deploy": 1800.0,
    "rollback": 300.0,
}


class IPCError(Exception):
    """Communication error."""
    pass


class IPCClient:
    """Client for communicating with agent via Unix socket or TCP."""

    def __init__(self, socket_path: Optional[str] = None, host: Optional[str] = None):
        """Initialize IPC client."""
        self.socket_path = Path(socket_path) if socket_path else None
        self.host = host

        if not self.socket_path and not self.host:
            self.socket_path = Path(DEFAULT_SOCKET)

        if self.host:
            self.base_url = f"http://{self.host}"
            self.ws_base_url = f"ws://{self.host}"
            self.transport = None
        else:
            self.base_url = "http://localhost"
            self.ws_base_url = "ws://localhost"
            self.transport = httpx.HTTPTransport(uds=str(self.socket_path))

    def request(self, command: str, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send a command to the agent and return its data."""
        if self.socket_path and not self.socket_path.exists() and not self.host:
            raise IPCError(f"Agent socket not found at {self.socket_path}")

        payload = {
            "command": command,
            "args": args or {}
        }
        timeout = COMMAND_TIMEOUTS.get(command, 30.0)

        try:
            with httpx.Client(transport=self.transport, base_url=self.base_url, timeout=timeout) as client:
                response = client.post("/api/v1/command", json=payload)
                data = response.json()
        except httpx.RequestError as e:
            raise IPCError(f"Connection error: {e}") from e
        except ValueError as e:
            raise IPCError(f"Invalid response from agent: {e}") from e

        if not data.get("success"):
            raise IPCError(f"Agent error: {data.get('error')}")
        return data.get("data", {})

    def stream_connect(self, endpoint: str) -> AsyncContextManager:
        """Connect to a WebSocket endpoint and return the connection context manager."""
        url = f"{self.ws_base_url}{endpoint}"

        if self.socket_path:
            return websockets.unix_connect(str(self.socket_path), uri=url)
        return websockets.connect(url)
