"""
Unit tests for coordinator configuration loading and validation.

Run: pytest tests/ -v
"""

import json

import pytest

from spectrum_coordinator.config import CoordinatorConfig
from spectrum_coordinator.errors import ConfigError


class TestCoordinatorConfig:
    def test_defaults_are_valid(self):
        config = CoordinatorConfig()
        config.validate()
        assert config.suspect_timeout_s < config.offline_timeout_s
        assert config.snapshot_path is None

    def test_from_dict_overrides(self):
        config = CoordinatorConfig.from_dict({'reassign_budget': 5, 'sync_staleness_s': 60})
        assert config.reassign_budget == 5
        assert config.sync_staleness_s == 60
        assert config.dispatch_retry_budget == 3

    def test_round_trip(self):
        config = CoordinatorConfig(snapshot_path="/var/lib/coordinator/state.json")
        assert CoordinatorConfig.from_dict(config.to_dict()) == config

    @pytest.mark.parametrize("data", [
        {'heartbeat_s': 5},
        {'suspect_timeout_s': 60, 'offline_timeout_s': 30},
        {'sweep_interval_s': 0},
        {'reassign_budget': 0},
        {'backoff_base_s': 10, 'backoff_max_s': 5},
        {'dispatch_ack_timeout_s': "fast"},
    ])
    def test_invalid_values(self, data):
        with pytest.raises(ConfigError):
            CoordinatorConfig.from_dict(data)

    def test_load_file(self, tmp_path):
        path = tmp_path / "coordinator.json"
        path.write_text(json.dumps({'offline_timeout_s': 90, 'snapshot_path': str(tmp_path / "s.json")}))
        config = CoordinatorConfig.load(str(path))
        assert config.offline_timeout_s == 90
        assert config.snapshot_path.endswith("s.json")

    def test_load_errors(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            CoordinatorConfig.load(str(tmp_path / "missing.json"))

        bad = tmp_path / "bad.json"
        bad.write_text("{not json")
        with pytest.raises(ConfigError, match="Invalid JSON"):
            CoordinatorConfig.load(str(bad))

        listing = tmp_path / "list.json"
        listing.write_text("[1, 2]")
        with pytest.raises(ConfigError, match="top level"):
            CoordinatorConfig.load(str(listing))
