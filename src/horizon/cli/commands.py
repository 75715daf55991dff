"""Command implementations for CLI."""

import asyncio
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from horizon.cli.client import IPCClient


console = Console()
stderr_console = Console(stderr=True)

HEALTH_COLORS = {
    "healthy": "green",
    "unhealthy": "red",
    "starting": "yellow",
    "unknown": "dim",
}

RESULT_COLORS = {
    "success": "green",
    "no_changes": "green",
    "partial_success": "yellow",
    "reboot_required": "yellow",
    "failed": "red",
}

LEVEL_COLORS = {
    "debug": "dim",
    "info": "blue",
    "success": "green",
    "warning": "yellow",
    "error": "red",
    "critical": "bold red",
}


def _run_action(
    client: IPCClient,
    description: str,
    command: str,
    args: Dict[str, Any],
    success_msg: Optional[str] = None,
    quiet: bool = False
) -> Dict[str, Any]:
    """Helper to run an IPC action with a progress spinner."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        disable=quiet,
    ) as progress:
        task = progress.add_task(description, total=None)

        response = client.request(command, args)

        progress.update(task, completed=True)

    if success_msg and not quiet:
        console.print(success_msg)

    return response


def _health(value: str) -> str:
    color = HEALTH_COLORS.get(value, "white")
    return f"[{color}]{value}[/{color}]"


def _print_health_table(title: str, entries: Dict[str, str]):
    if not entries:
        return
    table = Table(title=title)
    table.add_column("Name", style="cyan")
    table.add_column("Health")
    for name, health in entries.items():
        table.add_row(name, _health(health))
    console.print(table)


def show_status(client: IPCClient):
    """Show agent and system status."""
    response = client.request("status")
    agent_info = response.get("agent", {})
    system = response.get("system", {})

    console.print("[bold]Agent Status[/bold]")
    console.print(f"  Running: {'Yes' if agent_info.get('running') else 'No'}")
    console.print(f"  Update phase: {agent_info.get('phase', 'idle')}")

    last = agent_info.get("last_update")
    if last:
        color = RESULT_COLORS.get(last["status"], "white")
        console.print(f"  Last update: [{color}]{last['status']}[/{color}]")
    else:
        console.print("  Last update: Never")

    timestamp = system.get("timestamp")
    if timestamp:
        dt = datetime.fromisoformat(timestamp)
        console.print(f"  State recorded: {dt.strftime('%Y-%m-%d %H:%M:%S')}")

    health = system.get("health") or {}
    console.print(f"  Overall health: {_health(health.get('overall', 'unknown'))}")
    console.print()

    containers = system.get("containers", [])
    running = sum(1 for c in containers if c.get("status") == "running")
    console.print(f"[bold]Containers[/bold]: {running}/{len(containers)} running")
    layers = system.get("layers", [])
    console.print(f"[bold]Layers[/bold]: {len(layers)} deployed")


def show_health(client: IPCClient):
    """Show aggregated system health."""
    response = client.request("health")
    console.print(f"[bold]Overall[/bold]: {_health(response.get('overall', 'unknown'))}")
    console.print()
    _print_health_table("Containers", response.get("containers", {}))
    _print_health_table("Layers", response.get("layers", {}))
    _print_health_table("Services", response.get("services", {}))


def _print_changes(title: str, changes: List[Dict[str, Any]], style: str):
    if not changes:
        return
    table = Table(title=title)
    table.add_column("Type", style=style)
    table.add_column("Description")
    table.add_column("Impact")
    for change in changes:
        table.add_row(change["change_type"], change["description"], change["impact"])
    console.print(table)


def show_plan(client: IPCClient):
    """Show what an update would do."""
    response = client.request("plan")

    _print_changes("Live changes", response.get("live_changes", []), "green")
    _print_changes("Service reloads", response.get("service_reloads", []), "yellow")
    _print_changes("Reboot required", response.get("reboot_required", []), "red")

    if response.get("can_apply_live"):
        console.print(f"[green]✓[/green] {response.get('reason')}")
        console.print(f"  Estimated duration: {response.get('estimated_duration', 0)}s")
    else:
        console.print(f"[yellow]![/yellow] {response.get('reason')}")


def print_update_result(result: Dict[str, Any]):
    """Render an update outcome."""
    status = result.get("status", "unknown")
    color = RESULT_COLORS.get(status, "white")
    console.print(f"[bold]Update result[/bold]: [{color}]{status}[/{color}]")
    if result.get("message"):
        console.print(f"  {result['message']}")

    for description in result.get("applied", []):
        console.print(f"  [green]✓[/green] {description}")
    for failure in result.get("failed", []):
        console.print(f"  [red]✗[/red] {failure['change']}: {failure['error']}")
    for description in result.get("skipped", []):
        console.print(f"  [dim]-[/dim] {description} (skipped)")
    for description in result.get("pending_reboot", []) + result.get("changes", []):
        console.print(f"  [yellow]↻[/yellow] {description} (requires reboot)")

    if result.get("error"):
        console.print(f"  Error: {result['error']}")
    if status == "failed":
        rolled_back = "Yes" if result.get("rolled_back") else "No"
        console.print(f"  Rolled back: {rolled_back}")


def run_update(client: IPCClient, dry_run: bool = False, allow_partial: bool = False,
               continue_on_error: bool = False) -> Dict[str, Any]:
    """Apply the desired configuration live."""
    description = "Planning update (dry run)..." if dry_run else "Applying update..."
    result = _run_action(
        client,
        description=description,
        command="update",
        args={
            "dry_run": dry_run,
            "allow_partial": allow_partial,
            "continue_on_error": continue_on_error,
        },
    )
    print_update_result(result)
    return result


def run_rollback(client: IPCClient):
    """Restore the latest snapshot."""
    response = _run_action(
        client,
        description="Rolling back to the latest snapshot...",
        command="rollback",
        args={},
    )
    snapshot = response.get("snapshot", {})
    console.print(f"[green]✓[/green] Rolled back to snapshot {snapshot.get('id')}")


def run_deploy(client: IPCClient):
    """Deploy the full system."""
    response = _run_action(
        client,
        description="Deploying system...",
        command="deploy",
        args={},
    )
    if response.get("success"):
        console.print(f"[green]✓[/green] {response.get('message')}")
    else:
        console.print(f"[red]✗[/red] {response.get('message')}")
    console.print(f"  Containers: {response.get('containers_deployed', 0)}")
    console.print(f"  Layers: {response.get('layers_deployed', 0)}")
    for error in response.get("errors", []):
        console.print(f"  [red]✗[/red] {error}")
    return response


def list_containers(client: IPCClient):
    """List managed containers."""
    response = client.request("containers")

    table = Table(title="Containers")
    table.add_column("Name", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Health")
    table.add_column("Runtime")
    table.add_column("Image", style="magenta")

    for info in response.get("containers", []):
        table.add_row(
            info["name"],
            info["status"],
            _health(info["health"]),
            info["runtime"],
            info["image"],
        )

    console.print(table)


def show_container_logs(client: IPCClient, name: str, lines: int = 100):
    """Print the tail of a container's output."""
    response = client.request("container_logs", {"name": name, "lines": lines})
    console.print(response.get("logs", ""), end="", markup=False, highlight=False)


def list_layers(client: IPCClient):
    """List deployed layers."""
    response = client.request("layers")

    table = Table(title="Layers")
    table.add_column("Name", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Status", style="green")
    table.add_column("Health")
    table.add_column("Depends on", style="dim")

    for info in response.get("layers", []):
        table.add_row(
            info["name"],
            info["layer_type"],
            info["status"],
            _health(info["health"]),
            ", ".join(info.get("dependencies", [])),
        )

    console.print(table)


def start_layer(client: IPCClient, name: str, quiet: bool = False):
    """Start a layer."""
    _run_action(
        client,
        description=f"Starting layer {name}...",
        command="layer_start",
        args={"name": name},
        success_msg=f"[green]✓[/green] Layer {name} started",
        quiet=quiet
    )


def stop_layer(client: IPCClient, name: str, quiet: bool = False):
    """Stop a layer."""
    _run_action(
        client,
        description=f"Stopping layer {name}...",
        command="layer_stop",
        args={"name": name},
        success_msg=f"[green]✓[/green] Layer {name} stopped",
        quiet=quiet
    )


def show_history(client: IPCClient, limit: Optional[int] = None,
                 event_type: Optional[str] = None):
    """Show recorded update events."""
    args: Dict[str, Any] = {}
    if limit is not None:
        args["limit"] = limit
    if event_type:
        args["event_type"] = event_type
    response = client.request("history", args)

    table = Table(title="Update history")
    table.add_column("Time", style="dim")
    table.add_column("Event", style="cyan")
    table.add_column("Message")
    table.add_column("Error", style="red")

    for event in response.get("events", []):
        dt = datetime.fromisoformat(event["timestamp"])
        table.add_row(
            dt.strftime("%Y-%m-%d %H:%M:%S"),
            event["event_type"],
            event["message"],
            event.get("error") or "",
        )

    console.print(table)


def format_event(event: Dict[str, Any]) -> str:
    """One console line for a streamed notification."""
    level = event.get("level", "info")
    color = LEVEL_COLORS.get(level, "white")
    urgent = " [bold]URGENT[/bold]" if event.get("urgent") else ""
    return f"[{color}]{level.upper()}[/{color}]{urgent} {event.get('title')}: {event.get('message')}"


def follow_events(client: IPCClient):
    """Print update notifications as they happen."""
    async def _run():
        async with client.stream_connect("/api/v1/stream/events") as ws:
            async for message in ws:
                try:
                    event = json.loads(message)
                except ValueError:
                    stderr_console.print(f"[red]Invalid event:[/red] {message}")
                    continue
                console.print(format_event(event))

    asyncio.run(_run())


def agent_reload(client: IPCClient):
    """Reload agent configuration."""
    _run_action(
        client,
        description="Reloading configuration...",
        command="reload",
        args={},
        success_msg="[green]✓[/green] Configuration reloaded",
    )
