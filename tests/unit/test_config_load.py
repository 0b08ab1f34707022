"""
Configuration loading and validation.

Verifies the packaged config loads, validates, and respects environment
overrides. If config loading is broken, nothing else starts.
"""
import os
import pytest
from decimal import Decimal

from pydantic import ValidationError

from stopguard.config.config import DEFAULT_CONFIG_PATH, Config, PlacementConfig, load_config


def test_config_yaml_exists():
    """The packaged config YAML must ship with the package."""
    assert DEFAULT_CONFIG_PATH.exists(), f"Config file not found at {DEFAULT_CONFIG_PATH}"


def test_config_loads_successfully():
    config = load_config()
    assert config.instrument.symbol == "ES"
    assert config.instrument.tick_size == Decimal("0.25")


def test_protection_defaults_are_sane():
    """Timeouts and attempt limits the protection loop relies on."""
    config = load_config()

    assert config.placement.max_attempts == 3
    assert config.placement.retry_delay_ms == 200
    assert config.placement.validation_timeout_ms == 2000
    assert config.health.max_repair_attempts == 3
    assert config.health.emergency_flatten_threshold_ms == 10000
    assert config.liquidation.max_market_attempts == 3
    assert config.reversal.cancel_ordering == "on_flatten_fill"
    assert config.pricing.min_tp_ticks >= config.pricing.min_sl_ticks


def test_config_env_override(monkeypatch):
    """ENVIRONMENT must override the YAML value."""
    monkeypatch.setenv("ENVIRONMENT", "paper")
    config = load_config()
    assert config.environment == "paper"


def test_yaml_variables_are_expanded(tmp_path, monkeypatch):
    monkeypatch.setenv("STOPGUARD_TEST_SYMBOL", "NQ")
    path = tmp_path / "config.yaml"
    path.write_text("instrument:\n  symbol: ${STOPGUARD_TEST_SYMBOL}\n  tick_size: \"0.25\"\n")

    config = load_config(path)

    assert config.instrument.symbol == "NQ"


def test_nested_env_settings(monkeypatch):
    monkeypatch.setenv("HEALTH__MAX_REPAIR_ATTEMPTS", "5")
    assert Config().health.max_repair_attempts == 5


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.yaml")


def test_out_of_range_values_rejected():
    with pytest.raises(ValidationError):
        Config(placement={"max_attempts": 0})
    with pytest.raises(ValidationError):
        Config(reversal={"cancel_ordering": "whenever"})


def test_poll_interval_must_fit_timeout():
    with pytest.raises(ValidationError):
        PlacementConfig(validation_timeout_ms=100, validation_poll_ms=500)


def test_reversal_pending_window_must_outlast_deferral():
    with pytest.raises(ValidationError, match="max_pending_ms"):
        Config(reversal={"max_pending_ms": 5000})


def test_packaged_yaml_sets_stale_and_backoff_windows():
    config = load_config(DEFAULT_CONFIG_PATH)
    assert config.reversal.max_pending_ms == 30000
    assert config.enforcer.tp_retry_interval_ms == 30000
    assert config.monitoring.log_file_max_mb == 10


def test_cross_section_validation(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("health:\n  emergency_flatten_threshold_ms: 2000\n")

    with pytest.raises(ValueError, match="emergency_flatten_threshold_ms"):
        load_config(path)


def test_log_level_is_normalized():
    assert Config(monitoring={"log_level": "debug"}).monitoring.log_level == "DEBUG"


def test_loading_config_leaves_environment_untouched():
    """Only load_dotenv_files() touches the environment."""
    before = dict(os.environ)
    load_config()
    assert dict(os.environ) == before
