"""
Rich-based terminal dashboard for speed test runs.

All formatting helpers live in ``speedctl.stats`` -- this module only does
presentation via the ``rich`` library.
"""
from __future__ import annotations

from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from speedctl.servers import ServerDefinition
from speedctl.snapshot import StatusSnapshot
from speedctl.state import TestPhase
from speedctl.stats import format_latency, format_speed

console = Console()


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------

def print_header() -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]speedctl[/bold cyan]\n"
            "[dim]Download, upload, ping and jitter against the nearest server[/dim]",
            border_style="cyan",
        )
    )
    console.print()


def print_selected_server(server: ServerDefinition, how: str = "lowest ping") -> None:
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column(style="dim")
    table.add_column(style="bold")
    table.add_row("Name:", server.name)
    table.add_row("Address:", server.server)
    table.add_row("Chosen by:", how)
    console.print(Panel(table, title="[bold]Server[/bold]", border_style="blue"))


def print_final_results(snapshot: StatusSnapshot, server_name: str = "") -> None:
    lines = []
    if server_name:
        lines.append(f"[bold cyan]Server:[/bold cyan] {server_name}")
    if snapshot.client_ip:
        lines.append(f"[bold cyan]Client:[/bold cyan] {snapshot.client_ip}")
    if lines:
        lines.append("")
    lines.append(
        f"[bold white]   Ping:[/bold white]  "
        f"[bold yellow]{format_latency(snapshot.ping_status)}[/bold yellow]  "
        f"[dim](jitter: {snapshot.jitter_status:.2f} ms)[/dim]"
    )
    lines.append(
        f"[bold white]   Download:[/bold white]  "
        f"[bold green]{format_speed(snapshot.dl_status)}[/bold green]"
    )
    lines.append(
        f"[bold white]   Upload:[/bold white]  "
        f"[bold blue]{format_speed(snapshot.ul_status)}[/bold blue]"
    )

    console.print()
    console.print(
        Panel.fit("\n".join(lines), title="[bold]Results[/bold]", border_style="cyan")
    )
    console.print()


def format_snapshot_line(snapshot: StatusSnapshot) -> str:
    """One plain-text line describing *snapshot* (``--simple`` mode)."""
    phase = snapshot.phase
    if phase == TestPhase.DOWNLOAD:
        return f"Download: {format_speed(snapshot.dl_status)} ({snapshot.dl_progress:.0%})"
    if phase == TestPhase.UPLOAD:
        return f"Upload: {format_speed(snapshot.ul_status)} ({snapshot.ul_progress:.0%})"
    if phase == TestPhase.PING_JITTER:
        return (
            f"Ping: {format_latency(snapshot.ping_status)} "
            f"jitter {snapshot.jitter_status:.2f} ms ({snapshot.ping_progress:.0%})"
        )
    return phase.name.replace("_", " ").capitalize()


# ---------------------------------------------------------------------------
# Progress display
# ---------------------------------------------------------------------------

class PhaseProgress:
    """Three ``rich`` progress bars (download, ping, upload) fed by snapshots."""

    def __init__(self, target: Optional[Console] = None) -> None:
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.description:<9}"),
            BarColumn(bar_width=40),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("[bold cyan]{task.fields[value]}[/bold cyan]"),
            TimeElapsedColumn(),
            console=target or console,
        )
        self._tasks = {}

    def start(self) -> None:
        self.progress.start()
        for name in ("Download", "Ping", "Upload"):
            self._tasks[name] = self.progress.add_task(name, total=100, value="")

    def update(self, snapshot: StatusSnapshot) -> None:
        if not self._tasks:
            return
        self._set("Download", snapshot.dl_progress, _speed_or_dots(snapshot.dl_status))
        self._set("Upload", snapshot.ul_progress, _speed_or_dots(snapshot.ul_status))
        ping = format_latency(snapshot.ping_status) if snapshot.ping_status > 0 else "..."
        self._set("Ping", snapshot.ping_progress, ping)

    def _set(self, name: str, fraction: float, value: str) -> None:
        self.progress.update(self._tasks[name], completed=fraction * 100, value=value)

    def stop(self) -> None:
        self.progress.stop()


def _speed_or_dots(speed_mbps: float) -> str:
    return format_speed(speed_mbps) if speed_mbps > 0 else "..."
