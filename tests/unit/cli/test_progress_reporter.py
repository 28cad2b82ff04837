"""Unit tests for the CLI progress reporter."""

from __future__ import annotations

import io
import json
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from swarmget.cli.progress import ProgressReporter
from swarmget.session.events import EventStatus, EventStream, SwarmEvent

pytestmark = [pytest.mark.unit, pytest.mark.cli]


def _consoles():
    out, err = io.StringIO(), io.StringIO()
    return out, err, Console(file=out, width=200), Console(file=err, width=200)


def _event(status, message="msg", **data):
    return SwarmEvent(status, 1.0, message, data)


class TestJsonMode:
    """Line-delimited JSON output."""

    def test_progress_line(self):
        out, err, console, error_console = _consoles()
        reporter = ProgressReporter(console, json_output=True, error_console=error_console)
        reporter.handle(_event(EventStatus.DOWNLOADING, "Download progress", progress=50, peers=2))
        payload = json.loads(out.getvalue())
        assert payload == {
            "progress": 50,
            "peers": 2,
            "status": "downloading",
            "message": "Download progress",
            "timestamp": 1.0,
        }
        assert err.getvalue() == ""

    def test_error_goes_to_stderr(self):
        out, err, console, error_console = _consoles()
        reporter = ProgressReporter(console, json_output=True, error_console=error_console)
        reporter.handle(_event(EventStatus.ERROR, "No peers", reason="discovery_timeout"))
        payload = json.loads(err.getvalue())
        assert payload["error"] == "No peers"
        assert payload["reason"] == "discovery_timeout"
        assert out.getvalue() == ""

    def test_out_of_swarm_error(self):
        _, err, console, error_console = _consoles()
        ProgressReporter(console, json_output=True, error_console=error_console).error(
            "Invalid source", received="x"
        )
        payload = json.loads(err.getvalue())
        assert payload["error"] == "Invalid source"
        assert payload["received"] == "x"
        assert isinstance(payload["timestamp"], int)


class TestHumanMode:
    def test_found_and_complete(self):
        out, _, console, error_console = _consoles()
        reporter = ProgressReporter(console, error_console=error_console)
        reporter.handle(_event(EventStatus.FOUND, name="ubuntu.iso", size=1536, files=1, peers=4))
        reporter.handle(
            _event(
                EventStatus.COMPLETE,
                elapsed=65,
                files=[{"index": 0, "name": "ubuntu.iso", "path": "ubuntu.iso", "size": 1536}],
                totalSize=1536,
                location="/tmp/media",
            )
        )
        text = out.getvalue()
        assert "Torrent found: ubuntu.iso" in text
        assert "1.5 KB" in text
        assert "Download complete in 1m 5s" in text
        assert "Location: /tmp/media" in text

    def test_warning_and_error(self):
        out, err, console, error_console = _consoles()
        reporter = ProgressReporter(console, error_console=error_console)
        reporter.handle(_event(EventStatus.WARNING, "No progress for 60s"))
        reporter.handle(_event(EventStatus.ERROR, "Timed out", reason="hard_timeout", bytesRetained=0))
        assert "Warning: No progress for 60s" in out.getvalue()
        assert "Timed out" in err.getvalue()


class TestFollow:
    @pytest.mark.asyncio
    async def test_follow_until_terminal(self):
        stream = EventStream()
        for status in (EventStatus.INIT, EventStatus.FOUND, EventStatus.CANCELLED):
            stream.emit(_event(status, outputDir="/x", timeoutSecs=10.0, name="n", size=1, files=1, peers=0))
        handle = MagicMock()
        handle.events = lambda: stream.subscribe()
        out, _, console, error_console = _consoles()
        await ProgressReporter(console, json_output=True, error_console=error_console).follow(handle)
        statuses = [json.loads(line)["status"] for line in out.getvalue().splitlines()]
        assert statuses == ["init", "found", "cancelled"]
