"""Configuration management for bitswarm.

Provides centralized configuration with TOML support, validation, and
hierarchical loading from defaults -> config file -> environment.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import toml
from pydantic import ValidationError as PydanticValidationError

from bitswarm.models import Config
from bitswarm.utils.exceptions import ConfigurationError

CONFIG_FILENAME = "bitswarm.toml"

# Global configuration instance
_config_manager: ConfigManager | None = None

ENV_MAPPINGS: dict[str, str] = {
    # Network
    "BITSWARM_MAX_PEERS": "network.max_peers",
    "BITSWARM_PIPELINE_DEPTH": "network.pipeline_depth",
    "BITSWARM_BLOCK_SIZE_KIB": "network.block_size_kib",
    "BITSWARM_LISTEN_PORT": "network.listen_port",
    "BITSWARM_CONNECTION_TIMEOUT": "network.connection_timeout",
    "BITSWARM_HANDSHAKE_TIMEOUT": "network.handshake_timeout",
    "BITSWARM_PEER_TIMEOUT": "network.peer_timeout",
    "BITSWARM_REQUEST_TIMEOUT": "network.request_timeout",
    "BITSWARM_KEEP_ALIVE_INTERVAL": "network.keep_alive_interval",
    "BITSWARM_STALL_TIMEOUT": "network.stall_timeout",
    # Strategy
    "BITSWARM_ENDGAME_THRESHOLD_PIECES": "strategy.endgame_threshold_pieces",
    "BITSWARM_ENDGAME_DUPLICATES": "strategy.endgame_duplicates",
    "BITSWARM_MAX_HASH_FAILURES": "strategy.max_hash_failures",
    "BITSWARM_PEER_BAN_THRESHOLD": "strategy.peer_ban_threshold",
    # Observability
    "BITSWARM_LOG_LEVEL": "observability.log_level",
    "BITSWARM_LOG_FILE": "observability.log_file",
    "BITSWARM_STRUCTURED_LOGGING": "observability.structured_logging",
}


def _parse_env_value(raw: str) -> bool | int | float | str:
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


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_file: str | Path | None = None):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for bitswarm.toml
        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()

    def _find_config_file(self, config_file: str | Path | None) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            path = Path(config_file)
            if not path.exists():
                msg = f"Config file not found: {path}"
                raise ConfigurationError(msg)
            return path

        search_paths = [
            Path.cwd() / CONFIG_FILENAME,
            Path.home() / ".config" / "bitswarm" / CONFIG_FILENAME,
        ]
        for path in search_paths:
            if path.exists():
                return path
        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = {}

        if self.config_file is not None:
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
            _set_nested(env_config, cfg_path, _parse_env_value(raw))
        return env_config

    def _merge_config(
        self, base: dict[str, Any], override: dict[str, Any]
    ) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def export(self, fmt: str = "toml") -> str:
        """Export current configuration as a string in the given format.

        Args:
            fmt: one of "toml" or "json"
        """
        data = self.config.model_dump(mode="json", exclude_none=True)
        fmt = (fmt or "toml").lower()
        if fmt == "toml":
            return toml.dumps(data)
        if fmt == "json":
            return json.dumps(data, indent=2)
        msg = f"Unsupported export format: {fmt}"
        raise ConfigurationError(msg)


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager.config


def init_config(config_file: str | Path | None = None) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file)
    logging.getLogger(__name__).debug(
        "Loaded configuration from %s", _config_manager.config_file or "defaults"
    )
    return _config_manager


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(None)
    _config_manager.config = new_config


def reset_config() -> None:
    """Drop the global configuration; the next get_config() reloads it."""
    global _config_manager
    _config_manager = None
