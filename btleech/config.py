"""Configuration management for btleech.

Configuration is loaded hierarchically: defaults, then a TOML file, then
``BTLEECH_*`` environment variables. CLI flags are applied on top by the
command that reads them.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import toml
from pydantic import ValidationError as PydanticValidationError

from btleech.exceptions import ConfigurationError
from btleech.logging_config import setup_logging
from btleech.models import Config

CONFIG_FILE_NAME = "btleech.toml"

ENV_MAPPINGS: dict[str, str] = {
    # Network
    "BTLEECH_MAX_PEERS_PER_TORRENT": "network.max_peers_per_torrent",
    "BTLEECH_PIPELINE_DEPTH": "network.pipeline_depth",
    "BTLEECH_BLOCK_SIZE_KIB": "network.block_size_kib",
    "BTLEECH_CONNECTION_TIMEOUT": "network.connection_timeout",
    "BTLEECH_HANDSHAKE_TIMEOUT": "network.handshake_timeout",
    "BTLEECH_PIECE_TIMEOUT": "network.piece_timeout",
    "BTLEECH_MAX_MESSAGE_LENGTH": "network.max_message_length",
    "BTLEECH_WORK_QUEUE_SIZE": "network.work_queue_size",
    "BTLEECH_LISTEN_PORT": "network.listen_port",
    "BTLEECH_PEER_ID_PREFIX": "network.peer_id_prefix",
    "BTLEECH_TRACKER_TIMEOUT": "network.tracker_timeout",
    # Observability
    "BTLEECH_LOG_LEVEL": "observability.log_level",
    "BTLEECH_LOG_FILE": "observability.log_file",
    "BTLEECH_STRUCTURED_LOGGING": "observability.structured_logging",
    "BTLEECH_LOG_CORRELATION_ID": "observability.log_correlation_id",
}

# Global configuration instance
_config_manager: ConfigManager | None = None


def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = d
    for p in parts[:-1]:
        cur = cur.setdefault(p, {})
    cur[parts[-1]] = value


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(
        self,
        config_file: str | Path | None = None,
        *,
        configure_logging: bool = True,
    ):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for btleech.toml
            configure_logging: Apply the observability section to ``logging``

        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        if configure_logging:
            self._setup_logging()

    def _find_config_file(self, config_file: str | Path | None) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            path = Path(config_file)
            if not path.exists():
                msg = f"Configuration file not found: {path}"
                raise ConfigurationError(msg)
            return path

        search_paths = [
            Path.cwd() / CONFIG_FILE_NAME,
            Path.home() / ".config" / "btleech" / CONFIG_FILE_NAME,
            Path.home() / f".{CONFIG_FILE_NAME}",
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

        config_data = self._merge_config(config_data, self._get_env_config())

        try:
            return Config(**config_data)
        except PydanticValidationError as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}
        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            # pydantic coerces the raw string to each field's type
            _set_nested(env_config, cfg_path, raw)
        return env_config

    def _merge_config(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def export(self, fmt: str = "toml") -> str:
        """Export current configuration as a string.

        Args:
            fmt: one of "toml" or "json"

        """
        # toml has no null, so unset optionals are left out
        data = self.config.model_dump(mode="json", exclude_none=True)
        fmt = (fmt or "toml").lower()
        if fmt == "toml":
            return toml.dumps(data)
        if fmt == "json":
            return json.dumps(data, indent=2)
        msg = f"Unsupported export format: {fmt}"
        raise ConfigurationError(msg)

    def _setup_logging(self) -> None:
        """Set up logging configuration."""
        setup_logging(self.config.observability)


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(configure_logging=False)
    return _config_manager.config


def init_config(config_file: str | Path | None = None) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file)
    return _config_manager


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime.

    Reconfigures logging based on the new config.
    """
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(configure_logging=False)
    _config_manager.config = new_config
    _config_manager._setup_logging()


def reset_config() -> None:
    """Forget the global configuration so the next access reloads it."""
    global _config_manager
    _config_manager = None
