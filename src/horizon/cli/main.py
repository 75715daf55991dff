"""Main CLI implementation using Typer."""

from typing import Any, Callable, Optional

import typer
from rich.console import Console

from horizon.cli.client import IPCClient, IPCError
from horizon.cli.commands import (
    agent_reload,
    follow_events,
    list_containers,
    list_layers,
    run_deploy,
    run_rollback,
    run_update,
    show_container_logs,
    show_health,
    show_history,
    show_plan,
    show_status,
    start_layer,
    stop_layer,
)


app = typer.Typer(
    name="horizonctl",
    help="Horizon - declarative system reconciliation with live updates",
    add_completion=False,
)

console = Console()

SOCKET_OPTION = typer.Option(None, "--socket", "-s", help="Agent socket path")


def _run_cli_command(handler: Callable[..., Any], socket: Optional[str], **kwargs: Any) -> Any:
    """Helper to run a CLI command with an IPC client and error handling."""
    try:
        client = IPCClient(socket_path=socket)
        return handler(client, **kwargs)
    except IPCError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


@app.command("status")
def status_command(socket: Optional[str] = SOCKET_OPTION):
    """Show agent and system status."""
    _run_cli_command(show_status, socket=socket)


@app.command("health")
def health_command(socket: Optional[str] = SOCKET_OPTION):
    """Show container, layer and service health."""
    _run_cli_command(show_health, socket=socket)


@app.command("plan")
def plan_command(socket: Optional[str] = SOCKET_OPTION):
    """Show the changes an update would apply."""
    _run_cli_command(show_plan, socket=socket)


@app.command("update")
def update_command(
    dry_run: bool = typer.Option(False, "--dry-run", help="Report changes without applying them"),
    allow_partial: bool = typer.Option(
        False, "--allow-partial", help="Keep successful changes when others fail"
    ),
    continue_on_error: bool = typer.Option(
        False, "--continue-on-error", help="Keep applying after a failed change"
    ),
    socket: Optional[str] = SOCKET_OPTION,
):
    """Apply the desired configuration without rebooting."""
    result = _run_cli_command(
        run_update,
        socket=socket,
        dry_run=dry_run,
        allow_partial=allow_partial,
        continue_on_error=continue_on_error,
    )
    if result.get("status") == "failed":
        raise typer.Exit(1)
    if result.get("status") == "reboot_required":
        raise typer.Exit(2)


@app.command("rollback")
def rollback_command(
    force: bool = typer.Option(False, "--force", "-f", help="Roll back without confirmation"),
    socket: Optional[str] = SOCKET_OPTION,
):
    """Restore the state captured before the last update."""
    if not force:
        confirm = typer.confirm("Roll back to the latest snapshot?")
        if not confirm:
            raise typer.Abort()
    _run_cli_command(run_rollback, socket=socket)


@app.command("deploy")
def deploy_command(socket: Optional[str] = SOCKET_OPTION):
    """Deploy containers and layers from the desired configuration."""
    result = _run_cli_command(run_deploy, socket=socket)
    if not result.get("success"):
        raise typer.Exit(1)


@app.command("history")
def history_command(
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Show the last N events"),
    event_type: Optional[str] = typer.Option(None, "--type", "-t", help="Filter by event type"),
    socket: Optional[str] = SOCKET_OPTION,
):
    """Show recorded update events."""
    _run_cli_command(show_history, socket=socket, limit=limit, event_type=event_type)


@app.command("events")
def events_command(socket: Optional[str] = SOCKET_OPTION):
    """Follow update notifications live."""
    try:
        _run_cli_command(follow_events, socket=socket)
    except KeyboardInterrupt:
        raise typer.Exit(0)
    except OSError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


# Layer subcommands
layer_app = typer.Typer(help="Layer management commands")
app.add_typer(layer_app, name="layer")


@layer_app.command("list")
def layer_list_command(socket: Optional[str] = SOCKET_OPTION):
    """List deployed layers."""
    _run_cli_command(list_layers, socket=socket)


@layer_app.command("start")
def layer_start_command(
    name: str = typer.Argument(..., help="Layer name"),
    socket: Optional[str] = SOCKET_OPTION,
):
    """Start a system layer."""
    _run_cli_command(start_layer, socket=socket, name=name)


@layer_app.command("stop")
def layer_stop_command(
    name: str = typer.Argument(..., help="Layer name"),
    socket: Optional[str] = SOCKET_OPTION,
):
    """Stop a system layer."""
    _run_cli_command(stop_layer, socket=socket, name=name)


# Container subcommands
container_app = typer.Typer(help="Container commands")
app.add_typer(container_app, name="container")


@container_app.command("list")
def container_list_command(socket: Optional[str] = SOCKET_OPTION):
    """List managed containers."""
    _run_cli_command(list_containers, socket=socket)


@container_app.command("logs")
def container_logs_command(
    name: str = typer.Argument(..., help="Container name"),
    lines: int = typer.Option(100, "--lines", "-n", help="Number of lines to show"),
    socket: Optional[str] = SOCKET_OPTION,
):
    """Show recent output of a container."""
    _run_cli_command(show_container_logs, socket=socket, name=name, lines=lines)


# Agent subcommands
agent_app = typer.Typer(help="Agent management commands")
app.add_typer(agent_app, name="agent")


@agent_app.command("reload")
def agent_reload_command(socket: Optional[str] = SOCKET_OPTION):
    """Reload agent configuration."""
    _run_cli_command(agent_reload, socket=socket)


def main():
    """Main entry point for CLI."""
    app()
