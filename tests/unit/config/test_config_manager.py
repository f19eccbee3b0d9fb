"""Tests for layered configuration loading."""

from __future__ import annotations

import json

import pytest
import toml

pytestmark = [pytest.mark.unit, pytest.mark.config]

from bitswarm.config.config import (
    ConfigManager,
    get_config,
    init_config,
    reset_config,
    set_config,
)
from bitswarm.models import Config, LogLevel, NetworkConfig
from bitswarm.utils.exceptions import ConfigurationError


@pytest.fixture
def isolated_dirs(tmp_path, monkeypatch):
    """Run with an empty cwd and home so no stray bitswarm.toml is found."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    return tmp_path


class TestConfigManager:
    """Tests for ConfigManager."""

    def test_defaults(self, isolated_dirs):
        """No file and no environment yields the defaults."""
        manager = ConfigManager()
        assert manager.config_file is None
        assert manager.config == Config()
        assert manager.config.network.pipeline_depth == 16
        assert manager.config.network.block_size == 16384
        assert manager.config.strategy.endgame_threshold_pieces == 4

    def test_load_toml_file(self, isolated_dirs):
        """Values from a TOML file override defaults."""
        path = isolated_dirs / "custom.toml"
        path.write_text(
            toml.dumps(
                {
                    "network": {"pipeline_depth": 4, "max_peers": 7},
                    "strategy": {"endgame_duplicates": 2},
                }
            )
        )
        config = ConfigManager(path).config
        assert config.network.pipeline_depth == 4
        assert config.network.max_peers == 7
        assert config.strategy.endgame_duplicates == 2
        assert config.network.request_timeout == 30.0

    def test_discovers_file_in_cwd(self, isolated_dirs):
        """bitswarm.toml in the working directory is picked up."""
        (isolated_dirs / "bitswarm.toml").write_text("[network]\nmax_peers = 3\n")
        manager = ConfigManager()
        assert manager.config_file is not None
        assert manager.config.network.max_peers == 3

    def test_environment_overrides_file(self, isolated_dirs, monkeypatch):
        """Environment variables win over the config file."""
        path = isolated_dirs / "custom.toml"
        path.write_text("[network]\npipeline_depth = 4\n")
        monkeypatch.setenv("BITSWARM_PIPELINE_DEPTH", "9")
        monkeypatch.setenv("BITSWARM_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("BITSWARM_STRUCTURED_LOGGING", "true")
        monkeypatch.setenv("BITSWARM_REQUEST_TIMEOUT", "12.5")
        config = ConfigManager(path).config
        assert config.network.pipeline_depth == 9
        assert config.network.request_timeout == 12.5
        assert config.observability.log_level == LogLevel.DEBUG
        assert config.observability.structured_logging is True

    def test_missing_file(self, isolated_dirs):
        """An explicit path that does not exist is an error."""
        with pytest.raises(ConfigurationError, match="not found"):
            ConfigManager(isolated_dirs / "nope.toml")

    def test_malformed_toml(self, isolated_dirs):
        """Unparseable TOML is reported as a configuration error."""
        path = isolated_dirs / "bad.toml"
        path.write_text("[network\nmax_peers = ")
        with pytest.raises(ConfigurationError, match="Failed to load"):
            ConfigManager(path)

    def test_invalid_values(self, isolated_dirs, monkeypatch):
        """Out-of-range values fail validation."""
        monkeypatch.setenv("BITSWARM_PIPELINE_DEPTH", "0")
        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            ConfigManager()

    def test_request_timeout_must_be_below_peer_timeout(self, isolated_dirs, monkeypatch):
        """Requests must expire before the peer is considered idle."""
        monkeypatch.setenv("BITSWARM_REQUEST_TIMEOUT", "200")
        monkeypatch.setenv("BITSWARM_PEER_TIMEOUT", "100")
        with pytest.raises(ConfigurationError):
            ConfigManager()

    def test_export_toml_and_json(self, isolated_dirs):
        """Export produces parseable TOML and JSON."""
        manager = ConfigManager()
        assert toml.loads(manager.export("toml"))["network"]["pipeline_depth"] == 16
        assert json.loads(manager.export("json"))["strategy"]["max_hash_failures"] == 5

    def test_export_unknown_format(self, isolated_dirs):
        """Unknown export formats are rejected."""
        with pytest.raises(ConfigurationError):
            ConfigManager().export("yaml")


class TestGlobalConfig:
    """Tests for the module-level configuration accessors."""

    def test_get_config_lazily_loads(self, isolated_dirs):
        """get_config builds a default manager on first use."""
        assert get_config() == Config()

    def test_init_and_set_config(self, isolated_dirs):
        """set_config replaces the active configuration."""
        init_config()
        replacement = Config(network=NetworkConfig(max_peers=2))
        set_config(replacement)
        assert get_config().network.max_peers == 2
        reset_config()
        assert get_config().network.max_peers == 30


class TestModels:
    """Validation rules on configuration models."""

    def test_block_size_property(self):
        """Block size is expressed in KiB."""
        assert NetworkConfig(block_size_kib=32).block_size == 32 * 1024

    def test_backoff_bounds(self):
        """Backoff base may not exceed the cap."""
        with pytest.raises(ValueError):
            Config(
                network=NetworkConfig(connect_backoff_base=10.0, connect_backoff_max=5.0)
            )
