"""Command-line interface for swarmget."""

from __future__ import annotations

from swarmget.cli.main import cli, main

__all__ = ["cli", "main"]
