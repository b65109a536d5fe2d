"""Terminal rendering for status and discovery output."""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

# =============================================================================
# Color Schemes
# =============================================================================

KIND_COLORS = {
    "customers": "cyan",
    "metalTypes": "blue",
    "vehicles": "magenta",
    "weighingSessions": "green",
    "weighings": "yellow",
    "biometricData": "bright_black",
}


def render_status(data: dict[str, Any]) -> None:
    """Print activation, cursor and per-kind record counts."""
    summary = Table(show_header=False, box=None, padding=(0, 2))
    summary.add_column("Field", style="bright_black")
    summary.add_column("Value", style="bold")
    summary.add_row("Activation", f"{data['tenantId']} ({data['deviceName']})")
    summary.add_row("Last sync", data["lastSyncTime"] or "[bright_black]never[/bright_black]")
    pending = data["pendingUpload"]
    summary.add_row("Pending upload", f"[yellow]{pending:,}[/yellow]" if pending else "0")

    counts = Table(show_header=True, header_style="bold", box=None, padding=(0, 1))
    counts.add_column("Kind")
    counts.add_column("Records", justify="right")
    for kind, count in data["records"].items():
        color = KIND_COLORS.get(kind, "white")
        counts.add_row(f"[{color}]{kind}[/{color}]", f"{count:,}")

    console.print(Panel(summary, title="weighsync", border_style="cyan"))
    console.print(counts)


def render_devices(devices: list[dict[str, Any]]) -> None:
    if not devices:
        console.print("[bright_black]No devices found.[/bright_black]")
        return

    table = Table(title=f"Found {len(devices)} device(s)", header_style="bold", box=None)
    table.add_column("Name", overflow="ellipsis", max_width=24)
    table.add_column("Address")
    table.add_column("Last sync", style="bright_black")
    for device in devices:
        table.add_row(device["name"], device["id"], device.get("lastSyncTime") or "never")
    console.print(table)
