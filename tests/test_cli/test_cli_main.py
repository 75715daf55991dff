"""Tests for CLI main module."""

from unittest.mock import MagicMock, patch

import pytest
import typer
from typer.testing import CliRunner

from horizon.cli.client import IPCError
from horizon.cli.main import _run_cli_command, app


cli_runner = CliRunner()


@patch("horizon.cli.main.IPCClient")
@patch("horizon.cli.main.console")
def test_run_cli_command_success(mock_console, mock_ipc_client):
    """Test the CLI command runner on a successful execution."""
    mock_handler = MagicMock(return_value={"status": "success"})

    result = _run_cli_command(mock_handler, socket="/tmp/test.sock", dry_run=True)

    mock_ipc_client.assert_called_once_with(socket_path="/tmp/test.sock")
    mock_handler.assert_called_once_with(mock_ipc_client.return_value, dry_run=True)
    assert result == {"status": "success"}
    mock_console.print.assert_not_called()


@patch("horizon.cli.main.IPCClient")
@patch("horizon.cli.main.console")
def test_run_cli_command_ipc_error(mock_console, mock_ipc_client):
    """Test the CLI command runner when an IPCError is raised."""
    mock_handler = MagicMock(side_effect=IPCError("Agent not running"))

    with pytest.raises(typer.Exit) as exc_info:
        _run_cli_command(mock_handler, socket=None)

    mock_console.print.assert_called_once_with("[red]Error:[/red] Agent not running")
    assert exc_info.value.exit_code == 1


@pytest.mark.parametrize("status, exit_code", [
    ("success", 0),
    ("no_changes", 0),
    ("partial_success", 0),
    ("reboot_required", 2),
    ("failed", 1),
])
@patch("horizon.cli.main.run_update")
@patch("horizon.cli.main.IPCClient")
def test_update_exit_codes(mock_ipc_client, mock_run_update, status, exit_code):
    mock_run_update.return_value = {"status": status}

    result = cli_runner.invoke(app, ["update", "--dry-run", "--continue-on-error"])

    assert result.exit_code == exit_code
    mock_run_update.assert_called_once_with(
        mock_ipc_client.return_value,
        dry_run=True,
        allow_partial=False,
        continue_on_error=True,
    )


@patch("horizon.cli.main.run_rollback")
@patch("horizon.cli.main.IPCClient")
def test_rollback_requires_confirmation(mock_ipc_client, mock_run_rollback):
    result = cli_runner.invoke(app, ["rollback"], input="n\n")

    assert result.exit_code == 1
    mock_run_rollback.assert_not_called()

    result = cli_runner.invoke(app, ["rollback", "--force"])

    assert result.exit_code == 0
    mock_run_rollback.assert_called_once()


@patch("horizon.cli.main.run_deploy")
@patch("horizon.cli.main.IPCClient")
def test_deploy_failure_exit_code(mock_ipc_client, mock_run_deploy):
    mock_run_deploy.return_value = {"success": False}

    result = cli_runner.invoke(app, ["deploy"])

    assert result.exit_code == 1


@patch("horizon.cli.main.start_layer")
@patch("horizon.cli.main.IPCClient")
def test_layer_start(mock_ipc_client, mock_start_layer):
    result = cli_runner.invoke(app, ["layer", "start", "dev", "--socket", "/tmp/a.sock"])

    assert result.exit_code == 0
    mock_ipc_client.assert_called_once_with(socket_path="/tmp/a.sock")
    mock_start_layer.assert_called_once_with(mock_ipc_client.return_value, name="dev")


@patch("horizon.cli.main.show_history")
@patch("horizon.cli.main.IPCClient")
def test_history_options(mock_ipc_client, mock_show_history):
    result = cli_runner.invoke(app, ["history", "-n", "5", "--type", "update_failed"])

    assert result.exit_code == 0
    mock_show_history.assert_called_once_with(
        mock_ipc_client.return_value, limit=5, event_type="update_failed"
    )


@patch("horizon.cli.main.show_container_logs")
@patch("horizon.cli.main.IPCClient")
def test_container_logs(mock_ipc_client, mock_show_logs):
    result = cli_runner.invoke(app, ["container", "logs", "dev", "-n", "20"])

    assert result.exit_code == 0
    mock_show_logs.assert_called_once_with(mock_ipc_client.return_value, name="dev", lines=20)
