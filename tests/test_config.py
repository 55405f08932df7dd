"""
Tests for configuration loading, environment overrides and validation.
"""

import json

import pytest

from hailfusion.config import ConfigManager, SystemConfig, load_config

ENV_VARS = (
    'DECODE_SERVICE_URL', 'DECODE_SERVICE_TOKEN', 'DECODE_SERVICE_TIMEOUT',
    'HAILFUSION_ARCHIVE_URL', 'HAILFUSION_GROUND_TRUTH_URL', 'HAILFUSION_GROUND_TRUTH_STATE',
    'HAILFUSION_MAX_RETRIES', 'HAILFUSION_FAILURE_THRESHOLD', 'HAILFUSION_ALERT_THRESHOLD_MM',
    'HAILFUSION_ENABLED_TIERS', 'HAILFUSION_STORE', 'HAILFUSION_DB_PATH',
    'DEBUG', 'ENVIRONMENT', 'LOG_LEVEL', 'HAILFUSION_LOG_FILE',
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.mark.unit
class TestConfigManager:

    def test_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.json")

        assert config.retry.max_retries == 3
        assert config.retry.failure_threshold == 5
        assert config.retry.cooldown_seconds == 900
        assert config.realtime.timeout == 15
        assert config.archive.timeout == 120
        assert config.ground_truth.timeout == 60
        assert config.reconciliation.match_buffer_deg == 0.1
        assert config.reconciliation.alert_threshold_mm == 25.0
        assert config.contours.band_thresholds_inches == [0.75, 1.0, 1.5, 2.0]
        assert config.scheduler.enabled_tiers == ['realtime', 'archive', 'ground_truth']

    def test_service_area(self):
        area = SystemConfig().realtime.service_area
        assert area.contains(35.4676, -97.5164)
        assert not area.contains(36.15, -95.99)  # Tulsa

    def test_file_overrides(self, tmp_path):
        path = tmp_path / "hailfusion.json"
        path.write_text(json.dumps({
            "reconciliation": {"dedupe_distance_m": 750},
            "contours": {"band_thresholds_inches": [1.0, 2.0]},
            "log_level": "DEBUG",
        }))

        config = load_config(path)

        assert config.reconciliation.dedupe_distance_m == 750
        assert config.contours.band_thresholds_inches == [1.0, 2.0]
        assert config.log_level == "DEBUG"

    def test_unknown_key_is_ignored(self, tmp_path):
        path = tmp_path / "hailfusion.json"
        path.write_text(json.dumps({"retry": {"not_a_setting": 1}}))

        config = load_config(path)

        assert not hasattr(config.retry, "not_a_setting")

    def test_environment_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv('DECODE_SERVICE_URL', 'http://decode.internal:9000')
        monkeypatch.setenv('HAILFUSION_ENABLED_TIERS', 'realtime, archive')
        monkeypatch.setenv('HAILFUSION_ALERT_THRESHOLD_MM', '30')
        monkeypatch.setenv('HAILFUSION_STORE', 'sqlite')

        config = load_config(tmp_path / "missing.json")

        assert config.decode.base_url == 'http://decode.internal:9000'
        assert config.scheduler.enabled_tiers == ['realtime', 'archive']
        assert config.reconciliation.alert_threshold_mm == 30.0
        assert config.store.backend == 'sqlite'

    def test_validation_collects_every_problem(self, tmp_path):
        path = tmp_path / "hailfusion.json"
        path.write_text(json.dumps({
            "contours": {"band_thresholds_inches": [2.0, 1.0]},
            "calibration": {"weight_floor": 0.0},
            "scheduler": {"enabled_tiers": ["radar"]},
        }))

        with pytest.raises(ValueError) as excinfo:
            load_config(path)

        message = str(excinfo.value)
        assert "band_thresholds_inches" in message
        assert "Calibration weights" in message
        assert "radar" in message

    def test_save_round_trip(self, tmp_path):
        path = tmp_path / "hailfusion.json"
        manager = ConfigManager(path)
        manager.config.archive.lookback_days = 5
        manager.save_config()

        assert load_config(path).archive.lookback_days == 5

    def test_is_production(self, tmp_path, monkeypatch):
        monkeypatch.setenv('ENVIRONMENT', 'production')
        assert ConfigManager(tmp_path / "missing.json").is_production()
