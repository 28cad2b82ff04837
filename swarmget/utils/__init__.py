"""Shared utilities and infrastructure."""

from __future__ import annotations

from swarmget.utils.logging_config import get_logger, setup_logging

__all__ = [
    "get_logger",
    "setup_logging",
]
