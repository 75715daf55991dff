"""Tests for the agent HTTP/WebSocket server."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp.test_utils import TestClient, TestServer

from horizon.agent.server import AgentServer, EventStreamHandler
from horizon.engine.live_update import RebootRequired, Success, UpdatePhase
from horizon.engine.notifier import UpdateEventType, UpdateNotifier
from horizon.models.change import Change, ChangeType, ImpactLevel, UpdateStrategy
from horizon.models.config import UpdateConfig, UpdateOptions
from horizon.models.snapshot import ConfigSnapshot
from horizon.models.state import SystemState


def _change():
    return Change(
        change_type=ChangeType.PACKAGE_INSTALL,
        field="packages",
        new_value=["htop"],
        description="Install packages: htop",
        update_strategy=UpdateStrategy.LIVE,
        impact=ImpactLevel.LOW,
    )


@pytest.fixture
def mock_dependencies():
    """Create mock system and config managers."""
    system_manager = MagicMock()
    system_manager.update_config = UpdateConfig()
    system_manager.get_system_state = AsyncMock(return_value=SystemState())
    system_manager.update_system = AsyncMock(return_value=Success(
        message="Applied 1 change(s)", applied=[_change()]
    ))
    system_manager.live_update.phase = UpdatePhase.IDLE
    system_manager.live_update.running = False
    system_manager.live_update.last_result = None
    system_manager.layer_manager.start_layer = AsyncMock()

    config_manager = AsyncMock()
    config_manager.load_desired.return_value = ConfigSnapshot.builder("workstation").build()

    return system_manager, config_manager, UpdateNotifier()


async def _client(server_logic):
    client = TestClient(TestServer(server_logic.app))
    await client.start_server()
    return client


@pytest.mark.asyncio
async def test_server_rest_command(mock_dependencies, tmp_path):
    """Test standard REST command handling."""
    system_manager, config_manager, notifier = mock_dependencies
    server_logic = AgentServer(tmp_path / "sock", None, 0, system_manager, config_manager, notifier)
    client = await _client(server_logic)

    try:
        resp = await client.post("/api/v1/command", json={"command": "status", "args": {}})
        assert resp.status == 200
        data = await resp.json()
        assert data["success"] is True
        assert data["data"]["agent"]["phase"] == "idle"
        assert data["data"]["system"]["containers"] == []

        resp = await client.post("/api/v1/command", json={"command": "invalid_cmd", "args": {}})
        assert resp.status == 500
        data = await resp.json()
        assert data["success"] is False
        assert "Unknown command" in data["error"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_update_passes_options(mock_dependencies, tmp_path):
    """Test that update flags override the configured defaults."""
    system_manager, config_manager, notifier = mock_dependencies
    server_logic = AgentServer(tmp_path / "sock", None, 0, system_manager, config_manager, notifier)
    client = await _client(server_logic)

    try:
        resp = await client.post("/api/v1/command", json={
            "command": "update",
            "args": {"dry_run": True, "allow_partial": None},
        })
        data = await resp.json()

        assert data["data"]["status"] == "success"
        assert data["data"]["applied"] == ["Install packages: htop"]
        desired, options = system_manager.update_system.call_args.args
        assert desired.system.hostname == "workstation"
        assert options == UpdateOptions(dry_run=True)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_update_reboot_required(mock_dependencies, tmp_path):
    system_manager, config_manager, notifier = mock_dependencies
    system_manager.update_system.return_value = RebootRequired(
        message="1 change(s) require a reboot", changes=[_change()]
    )
    server_logic = AgentServer(tmp_path / "sock", None, 0, system_manager, config_manager, notifier)
    client = await _client(server_logic)

    try:
        resp = await client.post("/api/v1/command", json={"command": "update"})
        data = await resp.json()
        assert data["data"]["status"] == "reboot_required"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_missing_desired_config(mock_dependencies, tmp_path):
    system_manager, config_manager, notifier = mock_dependencies
    config_manager.load_desired.return_value = None
    server_logic = AgentServer(tmp_path / "sock", None, 0, system_manager, config_manager, notifier)
    client = await _client(server_logic)

    try:
        resp = await client.post("/api/v1/command", json={"command": "plan"})
        assert resp.status == 500
        assert "No desired system configuration" in (await resp.json())["error"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_layer_start_requires_name(mock_dependencies, tmp_path):
    system_manager, config_manager, notifier = mock_dependencies
    server_logic = AgentServer(tmp_path / "sock", None, 0, system_manager, config_manager, notifier)
    client = await _client(server_logic)

    try:
        resp = await client.post("/api/v1/command", json={"command": "layer_start", "args": {}})
        assert resp.status == 500
        assert "Layer name required" in (await resp.json())["error"]
        system_manager.layer_manager.start_layer.assert_not_called()
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_history(mock_dependencies, tmp_path):
    system_manager, config_manager, notifier = mock_dependencies
    await notifier.update_started(2)
    await notifier.no_changes()
    server_logic = AgentServer(tmp_path / "sock", None, 0, system_manager, config_manager, notifier)
    client = await _client(server_logic)

    try:
        resp = await client.post("/api/v1/command", json={
            "command": "history",
            "args": {"event_type": UpdateEventType.NO_CHANGES.value},
        })
        events = (await resp.json())["data"]["events"]
        assert [e["event_type"] for e in events] == ["no_changes"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_event_stream(mock_dependencies, tmp_path):
    """Test that notifications reach connected WebSocket clients."""
    system_manager, config_manager, notifier = mock_dependencies
    server_logic = AgentServer(tmp_path / "sock", None, 0, system_manager, config_manager, notifier)
    assert isinstance(notifier.handlers[-1], EventStreamHandler)
    client = await _client(server_logic)

    try:
        async with client.ws_connect("/api/v1/stream/events") as ws:
            for _ in range(100):
                if server_logic.event_stream.clients:
                    break
                await asyncio.sleep(0.01)

            await notifier.rollback_started()
            message = await asyncio.wait_for(ws.receive_json(), timeout=5)

            assert message["title"] == "Rollback started"
            assert message["urgent"] is True
            assert message["event_type"] == "rollback_started"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_container_logs(mock_dependencies, tmp_path):
    system_manager, config_manager, notifier = mock_dependencies
    system_manager.container_manager.logs = AsyncMock(return_value="ready\n")
    server_logic = AgentServer(tmp_path / "sock", None, 0, system_manager, config_manager, notifier)
    client = await _client(server_logic)

    try:
        resp = await client.post("/api/v1/command", json={
            "command": "container_logs", "args": {"name": "dev", "lines": 20},
        })
        assert (await resp.json())["data"] == {"name": "dev", "logs": "ready\n"}
        system_manager.container_manager.logs.assert_awaited_once_with("dev", 20)

        resp = await client.post("/api/v1/command", json={"command": "container_logs", "args": {}})
        assert resp.status == 500
        assert "Container name required" in (await resp.json())["error"]
    finally:
        await client.close()
