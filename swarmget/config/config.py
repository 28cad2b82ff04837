"""Configuration management for swarmget.

Provides centralized configuration with TOML support, validation and
hierarchical loading from defaults → config file → environment.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import toml

from swarmget.exceptions import ConfigurationError
from swarmget.models import Config
from swarmget.utils.logging_config import setup_logging

CONFIG_FILENAME = "swarmget.toml"
ENV_PREFIX = "SWARMGET_"

# Global configuration instance
_config_manager: ConfigManager | None = None


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(
        self,
        config_file: str | Path | None = None,
        configure_logging: bool = True,
    ):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for swarmget.toml
            configure_logging: Apply the observability section to the logging system

        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        if configure_logging:
            self._setup_logging()

    def _find_config_file(
        self,
        config_file: str | Path | None,
    ) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            path = Path(config_file)
            if not path.exists():
                msg = f"Config file not found: {path}"
                raise ConfigurationError(msg)
            return path

        search_paths = [
            Path.cwd() / CONFIG_FILENAME,
            Path.home() / ".config" / "swarmget" / CONFIG_FILENAME,
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = {}

        if self.config_file and self.config_file.exists():
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data.update(toml.load(f))
            except (OSError, toml.TomlDecodeError) as e:
                msg = f"Failed to load config file {self.config_file}: {e}"
                raise ConfigurationError(msg) from e

        env_config = self._get_env_config()
        config_data = self._merge_config(config_data, env_config)

        try:
            return Config(**config_data)
        except Exception as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}

        # Mapping of environment variables to config paths
        env_mappings: dict[str, str] = {
            # Network
            "SWARMGET_MAX_PEERS": "network.max_peers",
            "SWARMGET_MIN_PEERS": "network.min_peers",
            "SWARMGET_MAX_CONCURRENT_CONNECTS": "network.max_concurrent_connects",
            "SWARMGET_CONNECTION_TIMEOUT": "network.connection_timeout",
            "SWARMGET_HANDSHAKE_TIMEOUT": "network.handshake_timeout",
            "SWARMGET_KEEPALIVE_INTERVAL": "network.keepalive_interval",
            "SWARMGET_PEER_TIMEOUT": "network.peer_timeout",
            "SWARMGET_MAX_REQUESTS_PER_PEER": "network.max_requests_per_peer",
            "SWARMGET_BLOCK_SIZE": "network.block_size",
            "SWARMGET_COOLDOWN_BASE": "network.cooldown_base",
            "SWARMGET_COOLDOWN_MAX": "network.cooldown_max",
            "SWARMGET_VIOLATION_COOLDOWN": "network.violation_cooldown",
            # Timeouts
            "SWARMGET_DISCOVERY_TIMEOUT": "timeouts.discovery_timeout",
            "SWARMGET_IDLE_TIMEOUT": "timeouts.idle_timeout",
            "SWARMGET_HARD_TIMEOUT": "timeouts.hard_timeout",
            "SWARMGET_MONITOR_INTERVAL": "timeouts.monitor_interval",
            "SWARMGET_REQUEST_TIMEOUT": "timeouts.request_timeout",
            "SWARMGET_HARD_TIMEOUT_REWARN_INTERVAL": "timeouts.hard_timeout_rewarn_interval",
            "SWARMGET_HARD_KILL_SWITCH": "timeouts.hard_kill_switch",
            # Storage
            "SWARMGET_WRITE_RETRIES": "storage.write_retries",
            "SWARMGET_FSYNC": "storage.fsync",
            "SWARMGET_VERIFY_EXISTING": "storage.verify_existing",
            "SWARMGET_HASH_WORKERS": "storage.hash_workers",
            "SWARMGET_MAX_PIECE_FAILURES": "storage.max_piece_failures",
            # Discovery
            "SWARMGET_POLL_INTERVAL": "discovery.poll_interval",
            "SWARMGET_REFRESH_INTERVAL": "discovery.refresh_interval",
            "SWARMGET_LISTEN_PORT": "discovery.listen_port",
            "SWARMGET_DEFAULT_TRACKERS": "discovery.default_trackers",
            # Metadata
            "SWARMGET_METADATA_TIMEOUT": "metadata.fetch_timeout",
            "SWARMGET_METADATA_MAX_CORRUPT": "metadata.max_corrupt_attempts",
            # Observability
            "SWARMGET_LOG_LEVEL": "observability.log_level",
            "SWARMGET_LOG_FILE": "observability.log_file",
            "SWARMGET_STRUCTURED_LOGGING": "observability.structured_logging",
            "SWARMGET_PROGRESS_STEP": "observability.progress_step",
        }

        def _parse_env_value(raw: str, path: str) -> bool | int | float | str | list[str]:
            if path == "discovery.default_trackers":
                return [item.strip() for item in raw.split(",") if item.strip()]

            low = raw.lower()
            if low in {"true", "yes", "on"}:
                return True
            if low in {"false", "no", "off"}:
                return False
            try:
                if "." in raw:
                    return float(raw)
                return int(raw)
            except ValueError:
                return raw

        def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
            parts = path.split(".")
            cur = d
            for p in parts[:-1]:
                cur = cur.setdefault(p, {})
            cur[parts[-1]] = value

        for env_name, cfg_path in env_mappings.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            _set_nested(env_config, cfg_path, _parse_env_value(raw, cfg_path))

        return env_config

    def _merge_config(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()

        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def export(self) -> str:
        """Export current configuration as TOML."""
        data = self.config.model_dump(mode="json", exclude_none=True)
        return toml.dumps(data)

    def _setup_logging(self) -> None:
        """Set up logging configuration."""
        setup_logging(self.config.observability)


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager.config


def init_config(
    config_file: str | Path | None = None,
    configure_logging: bool = True,
) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file, configure_logging=configure_logging)
    return _config_manager


def reload_config() -> Config:
    """Reload configuration from file."""
    if _config_manager is None:
        msg = "Configuration not initialized"
        raise ConfigurationError(msg)

    _config_manager.config = _config_manager._load_config()  # noqa: SLF001
    _config_manager._setup_logging()  # noqa: SLF001
    return _config_manager.config


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime.

    Reconfigures logging based on the new config. Swarms already running
    keep the config object they were started with.
    """
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(None, configure_logging=False)
    _config_manager.config = new_config
    _config_manager._setup_logging()  # noqa: SLF001


def reset_config() -> None:
    """Drop the global configuration manager."""
    global _config_manager
    _config_manager = None
