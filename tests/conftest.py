"""Pytest configuration and shared fixtures for swarmget tests."""

from __future__ import annotations

import logging
import os

import pytest

from swarmget.config import reset_config
from swarmget.models import (
    Config,
    DiscoveryConfig,
    NetworkConfig,
    StorageConfig,
    TimeoutConfig,
)

from helpers.clock import FakeClock


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("slow", "marks tests as slow (deselect with '-m \"not slow\"')"),
        ("integration", "marks tests as integration tests"),
        ("unit", "marks tests as unit tests"),
        ("property", "marks tests as property-based tests"),
        ("core", "marks tests as core functionality tests"),
        ("peer", "marks tests as peer protocol tests"),
        ("piece", "marks tests as piece management tests"),
        ("tracker", "marks tests as tracker tests"),
        ("metadata", "marks tests as metadata exchange tests"),
        ("storage", "marks tests as storage tests"),
        ("session", "marks tests as session management tests"),
        ("cli", "marks tests as CLI tests"),
        ("config", "marks tests as configuration tests"),
        ("observability", "marks tests as logging tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)


@pytest.fixture(autouse=True)
def isolate_config(monkeypatch, tmp_path):
    """Keep config discovery away from the user's files and environment."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    for name in list(os.environ):
        if name.startswith("SWARMGET_"):
            monkeypatch.delenv(name, raising=False)
    yield
    reset_config()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fast_config():
    """Config with short timeouts suited to loopback swarms."""
    return Config(
        network=NetworkConfig(
            connection_timeout=2.0,
            handshake_timeout=2.0,
            cooldown_base=0.2,
            cooldown_max=1.0,
            violation_cooldown=5.0,
        ),
        timeouts=TimeoutConfig(
            discovery_timeout=5.0,
            idle_timeout=30.0,
            hard_timeout=60.0,
            monitor_interval=0.05,
            request_timeout=5.0,
        ),
        storage=StorageConfig(fsync=False, retry_delay=0.01),
        discovery=DiscoveryConfig(poll_interval=0.2, retry_base_delay=0.05, retry_max_delay=0.2),
    )
