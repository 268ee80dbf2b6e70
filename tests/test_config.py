"""Tests for configuration loading and circuit breaker config resolution."""

import json

import pytest

from routeguard.config import (
    CircuitBreakerConfig,
    RetryConfig,
    RouteguardConfig,
    Stage1Config,
    WeightsConfig,
    clear_resource_configs,
    config_from_dict,
    get_circuit_breaker_config,
    get_registered_resource_configs,
    load_config,
    register_resource_config,
    unregister_resource_config,
)
from routeguard.exceptions import ConfigurationError


class TestDefaults:
    """Tests for default values and validation."""

    def test_defaults(self):
        """Defaults match the documented thresholds."""
        config = RouteguardConfig()
        assert config.stage1.threshold == 4
        assert config.weights.min_confidence == 0.70
        assert config.circuit_breaker.failure_threshold == 3
        assert config.circuit_breaker.half_open_after_seconds == 60.0
        assert config.retry.max_backoff_ms == 30000
        assert config.db_path is None

    @pytest.mark.parametrize(
        "factory",
        [
            lambda: Stage1Config(threshold=-1),
            lambda: WeightsConfig(min_confidence=1.5),
            lambda: WeightsConfig(complexity_simple=70, complexity_complex=60),
            lambda: CircuitBreakerConfig(failure_threshold=0),
            lambda: RetryConfig(max_retries=0),
            lambda: RetryConfig(initial_backoff_ms=5000, max_backoff_ms=1000),
        ],
    )
    def test_invalid_values(self, factory):
        """Invalid section values raise ValueError."""
        with pytest.raises(ValueError):
            factory()

    def test_with_overrides(self):
        """with_overrides only replaces the given values."""
        config = CircuitBreakerConfig().with_overrides(failure_threshold=7)
        assert config.failure_threshold == 7
        assert config.success_threshold == 2


class TestCircuitBreakerConfig:
    """Tests for per-resource circuit breaker configuration."""

    def test_registered_config(self):
        """Registered configs are returned for their resource only."""
        custom = CircuitBreakerConfig(failure_threshold=5)
        register_resource_config("agent:slow", custom)
        assert get_circuit_breaker_config("agent:slow") == custom
        assert get_circuit_breaker_config("agent:other") == CircuitBreakerConfig()
        assert "agent:slow" in get_registered_resource_configs()

    def test_unregister(self):
        """unregister reports whether a config existed."""
        register_resource_config("agent:x", CircuitBreakerConfig())
        assert unregister_resource_config("agent:x") is True
        assert unregister_resource_config("agent:x") is False

    def test_clear(self):
        """clear_resource_configs drops every registration."""
        register_resource_config("agent:x", CircuitBreakerConfig())
        clear_resource_configs()
        assert get_registered_resource_configs() == {}

    def test_env_overrides_base(self, monkeypatch):
        """Environment variables apply on top of the base config."""
        monkeypatch.setenv("ROUTEGUARD_CB_HALF_OPEN_AFTER_SECONDS", "5")
        base = CircuitBreakerConfig(failure_threshold=9)
        config = get_circuit_breaker_config(base=base)
        assert config.failure_threshold == 9
        assert config.half_open_after_seconds == 5.0

    def test_bad_env_value_ignored(self, monkeypatch):
        """Non-numeric environment values are ignored."""
        monkeypatch.setenv("ROUTEGUARD_CB_FAILURE_THRESHOLD", "lots")
        assert get_circuit_breaker_config().failure_threshold == 3


class TestLoadConfig:
    """Tests for load_config and config_from_dict."""

    def test_no_file(self):
        """Without a file or environment the defaults are used."""
        assert load_config() == RouteguardConfig()

    def test_settings_file(self, tmp_path):
        """Values are read from the automation settings layout."""
        path = tmp_path / "settings.json"
        path.write_text(
            json.dumps(
                {
                    "auto_routing": {"stage1_threshold": 5},
                    "adaptive_routing": {
                        "thresholds": {"min_confidence": 0.8},
                        "learning": {"min_samples": 10},
                    },
                    "auto_cleanup": {
                        "circuit_breaker": {"failure_threshold": 4},
                        "automatic_recovery": {"max_retries": 5, "enable_jitter": False},
                    },
                    "routeguard": {"db_path": "/tmp/state.db"},
                    "unrelated": {"ignored": True},
                }
            )
        )
        config = load_config(path)
        assert config.stage1.threshold == 5
        assert config.weights.min_confidence == 0.8
        assert config.weights.min_samples == 10
        assert config.circuit_breaker.failure_threshold == 4
        assert config.retry.max_retries == 5
        assert config.retry.enable_jitter is False
        assert config.db_path == "/tmp/state.db"

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        """ROUTEGUARD_CONFIG names the file when no path is passed."""
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"auto_routing": {"stage1_threshold": 6}}))
        monkeypatch.setenv("ROUTEGUARD_CONFIG", str(path))
        assert load_config().stage1.threshold == 6

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        """Environment variables win over file values."""
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"auto_routing": {"stage1_threshold": 6}}))
        monkeypatch.setenv("ROUTEGUARD_STAGE1_THRESHOLD", "2")
        monkeypatch.setenv("ROUTEGUARD_RETRY_ENABLE_JITTER", "false")
        monkeypatch.setenv("ROUTEGUARD_DB_PATH", "/var/lib/routeguard.db")
        config = load_config(path)
        assert config.stage1.threshold == 2
        assert config.retry.enable_jitter is False
        assert config.db_path == "/var/lib/routeguard.db"

    def test_env_ignored_when_disabled(self, monkeypatch):
        """use_env=False skips environment overrides."""
        monkeypatch.setenv("ROUTEGUARD_STAGE1_THRESHOLD", "2")
        assert load_config(use_env=False).stage1.threshold == 4

    def test_missing_file(self, tmp_path):
        """A missing file is a configuration error."""
        with pytest.raises(ConfigurationError, match="file not found"):
            load_config(tmp_path / "absent.json")

    def test_invalid_json(self, tmp_path):
        """Malformed JSON is a configuration error."""
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError, match="invalid JSON"):
            load_config(path)

    def test_non_object(self, tmp_path):
        """The file must hold a JSON object."""
        path = tmp_path / "list.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_invalid_value(self):
        """Out-of-range values surface as ConfigurationError."""
        with pytest.raises(ConfigurationError) as exc_info:
            config_from_dict({"adaptive_routing": {"thresholds": {"min_confidence": 2.0}}})
        assert exc_info.value.component == "weights"
