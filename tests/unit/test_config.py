"""
Tests for engine configuration.
"""

import json

import pytest

from dynaform.bootstrap.config import (
    DerivationConfig,
    EngineConfig,
    get_config,
    load_config,
    reset_config,
)
from dynaform.derivation.engine import DerivationEngine


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    for name in (
        "DYNAFORM_ENVIRONMENT", "DYNAFORM_DEBUG", "DYNAFORM_DEFAULT_DEBOUNCE_MS",
        "DYNAFORM_SELF_TRANSFORM_DEBOUNCE_MS", "DYNAFORM_ASYNC_DEBOUNCE_MS",
        "DYNAFORM_HTTP_TIMEOUT", "DYNAFORM_LOG_LEVEL", "DYNAFORM_FIRE_ASYNC_ON_START",
        "DYNAFORM_MAX_ERRORS", "DYNAFORM_OVERRIDE_HISTORY_SIZE",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


# =============================================================================
# TESTS
# =============================================================================

class TestDerivationConfig:
    """Test DerivationConfig defaults and environment."""

    def test_defaults(self):
        """Test built-in defaults."""
        config = DerivationConfig()
        assert config.default_debounce_ms == 0
        assert config.self_transform_debounce_ms == 300
        assert config.async_debounce_ms == 300
        assert config.http_timeout_seconds == 10.0
        assert config.fire_async_on_start is True
        assert config.max_override_transitions == 1000

    def test_from_env(self, monkeypatch):
        """Test environment overrides."""
        monkeypatch.setenv("DYNAFORM_SELF_TRANSFORM_DEBOUNCE_MS", "150")
        monkeypatch.setenv("DYNAFORM_HTTP_TIMEOUT", "2.5")
        monkeypatch.setenv("DYNAFORM_FIRE_ASYNC_ON_START", "false")

        config = DerivationConfig.from_env()

        assert config.self_transform_debounce_ms == 150
        assert config.http_timeout_seconds == 2.5
        assert config.fire_async_on_start is False


class TestEngineConfig:
    """Test EngineConfig loading."""

    def test_from_env(self, monkeypatch):
        """Test root settings from the environment."""
        monkeypatch.setenv("DYNAFORM_ENVIRONMENT", "production")
        monkeypatch.setenv("DYNAFORM_DEBUG", "true")
        monkeypatch.setenv("DYNAFORM_LOG_LEVEL", "DEBUG")

        config = EngineConfig.from_env()

        assert config.environment == "production"
        assert config.debug is True
        assert config.logging.level == "DEBUG"

    def test_from_file_overrides_env(self, monkeypatch, tmp_path):
        """Test that file values win over the environment."""
        monkeypatch.setenv("DYNAFORM_DEFAULT_DEBOUNCE_MS", "10")
        path = tmp_path / "dynaform.json"
        path.write_text(json.dumps({
            "environment": "staging",
            "derivation": {"default_debounce_ms": 25, "unknown_key": 1},
            "logging": {"json_logs": True},
            "settings": {"tenant": "acme"},
        }))

        config = EngineConfig.from_file(str(path))

        assert config.environment == "staging"
        assert config.derivation.default_debounce_ms == 25
        assert config.logging.json_logs is True
        assert config.settings == {"tenant": "acme"}

    def test_missing_file_falls_back(self, tmp_path, caplog):
        """Test that a missing file warns and uses the environment."""
        config = EngineConfig.from_file(str(tmp_path / "missing.json"))
        assert config.environment == "development"
        assert "Config file not found" in caplog.text

    def test_to_dict(self):
        """Test serialization."""
        data = EngineConfig().to_dict()
        assert data["version"] == "0.3.0"
        assert data["derivation"]["self_transform_debounce_ms"] == 300
        assert data["logging"]["level"] == "INFO"


class TestGlobalConfig:
    """Test the module-level config accessors."""

    def test_load_and_get(self, tmp_path):
        """Test that load_config sets the global instance."""
        path = tmp_path / "dynaform.json"
        path.write_text(json.dumps({"environment": "test"}))

        loaded = load_config(str(path))

        assert get_config() is loaded
        assert get_config().environment == "test"

    def test_reset(self, tmp_path):
        """Test that reset forgets the loaded instance."""
        path = tmp_path / "dynaform.json"
        path.write_text(json.dumps({"environment": "test"}))
        first = load_config(str(path))
        reset_config()
        load_config(str(path))
        assert get_config() is not first

    def test_engine_uses_global_config(self, monkeypatch):
        """Test that an engine without explicit config follows the environment."""
        monkeypatch.setenv("DYNAFORM_MAX_ERRORS", "2")
        monkeypatch.setenv("DYNAFORM_OVERRIDE_HISTORY_SIZE", "5")

        engine = DerivationEngine()

        assert engine.config is get_config().derivation
        assert engine.config.max_errors == 2
        assert engine.config.max_override_transitions == 5

    def test_explicit_engine_config_wins(self, monkeypatch):
        """Test that a config passed to the engine beats the global one."""
        monkeypatch.setenv("DYNAFORM_MAX_ERRORS", "2")

        engine = DerivationEngine(config=DerivationConfig(max_errors=7))

        assert engine.config.max_errors == 7
