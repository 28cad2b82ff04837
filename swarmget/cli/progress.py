"""Progress reporter for the swarmget CLI.

Renders swarm events either as line-delimited JSON (``--json``) or as rich
console output. Errors go to stderr in both modes.
"""

from __future__ import annotations

import json
import time
from typing import TYPE_CHECKING, Any

from rich.console import Console

from swarmget.session.events import EventStatus, SwarmEvent
from swarmget.utils.formatting import format_bytes, format_time

if TYPE_CHECKING:  # pragma: no cover
    from swarmget.session.controller import SwarmHandle


class ProgressReporter:
    """Turns swarm events into user-facing output."""

    def __init__(
        self,
        console: Console | None = None,
        json_output: bool = False,
        error_console: Console | None = None,
    ):
        """Initialize progress reporter.

        Args:
            console: Console for regular output (stdout)
            json_output: Emit one JSON object per event instead of text
            error_console: Console for errors (stderr)

        """
        self.console = console or Console()
        self.error_console = error_console or Console(stderr=True)
        self.json_output = json_output

    def _print_json(self, payload: dict[str, Any], error: bool = False) -> None:
        target = self.error_console if error else self.console
        target.print(json.dumps(payload, default=str), markup=False, highlight=False, soft_wrap=True)

    def error(self, message: str, **data: Any) -> None:
        """Report an error that happened outside the swarm."""
        if self.json_output:
            self._print_json({**data, "error": message, "timestamp": int(time.time() * 1000)}, error=True)
        else:
            self.error_console.print(f"[red]✗ {message}[/red]")
            for key, value in data.items():
                self.error_console.print(f"  {key}: {value}", markup=False)

    def handle(self, event: SwarmEvent) -> None:
        """Render one event."""
        if self.json_output:
            payload = event.to_dict()
            if event.status == EventStatus.ERROR:
                payload["error"] = event.message
            self._print_json(payload, error=event.status == EventStatus.ERROR)
            return

        data = event.data
        if event.status == EventStatus.INIT:
            self.console.print("[bold]=== swarmget downloader ===[/bold]")
            self.console.print(f"Output: {data.get('outputDir')}", markup=False)
            self.console.print(f"Timeout: {data.get('timeoutSecs', 0):g}s")
            self.console.print()
        elif event.status == EventStatus.FOUND:
            self.console.print(f"[green]✓ Torrent found:[/green] {data.get('name')}")
            self.console.print(f"  Size: {format_bytes(data.get('size', 0))}")
            self.console.print(f"  Files: {data.get('files')}")
            self.console.print(f"  Peers: {data.get('peers')}")
            self.console.print()
            self.console.print("Downloading...")
        elif event.status == EventStatus.DOWNLOADING:
            self.console.print(
                f"  {data.get('progress')}% | {format_bytes(data.get('speed') or 0)}/s"
                f" | ETA: {format_time(data.get('eta'))}"
                f" | Elapsed: {format_time(data.get('elapsed'))}"
                f" | Peers: {data.get('peers')}"
            )
        elif event.status == EventStatus.WARNING:
            self.console.print(f"[yellow]⚠ Warning: {event.message}[/yellow]")
        elif event.status == EventStatus.COMPLETE:
            self._render_complete(data)
        elif event.status == EventStatus.CANCELLED:
            self.console.print(
                f"[yellow]Download cancelled[/yellow] "
                f"({format_bytes(data.get('bytesRetained', 0))} verified data kept)"
            )
        elif event.status == EventStatus.ERROR:
            self.error_console.print(
                f"[red]✗ {event.message}[/red] [dim]({data.get('reason')})[/dim]"
            )
            retained = data.get("bytesRetained", 0)
            if retained:
                self.error_console.print(f"  {format_bytes(retained)} of verified data kept on disk")

    def _render_complete(self, data: dict[str, Any]) -> None:
        self.console.print()
        self.console.print(
            f"[green]✓ Download complete in {format_time(data.get('elapsed'))}[/green]"
        )
        self.console.print()
        self.console.print("Files:")
        for idx, entry in enumerate(data.get("files", []), start=1):
            self.console.print(
                f"  {idx}. {entry['path']} ({format_bytes(entry['size'])})", markup=False
            )
        self.console.print()
        self.console.print(f"Total size: {format_bytes(data.get('totalSize', 0))}")
        self.console.print(f"Location: {data.get('location')}", markup=False)

    async def follow(self, handle: SwarmHandle) -> None:
        """Render every event of a swarm until its terminal event."""
        async for event in handle.events():
            self.handle(event)
