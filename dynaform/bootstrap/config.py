"""
bootstrap/config.py - Engine configuration

Provides configuration loading from files, environment variables, and defaults.
Environment variables use the DYNAFORM_ prefix; a JSON file overrides them.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from pathlib import Path
import os
import json
import logging

logger = logging.getLogger("bootstrap.config")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class DerivationConfig:
    """Derivation engine defaults."""

    default_debounce_ms: int = 0              # Synchronous rules without debounceMs
    self_transform_debounce_ms: int = 300     # Self-transforms without debounceMs
    async_debounce_ms: int = 300              # HTTP / async rules without debounceMs
    http_timeout_seconds: float = 10.0
    max_trigger_log_entries: int = 1000
    max_errors: int = 500
    max_override_transitions: int = 1000
    fire_async_on_start: bool = True          # Arm HTTP/async rules when the engine starts

    @classmethod
    def from_env(cls) -> "DerivationConfig":
        return cls(
            default_debounce_ms=int(os.getenv("DYNAFORM_DEFAULT_DEBOUNCE_MS", "0")),
            self_transform_debounce_ms=int(os.getenv("DYNAFORM_SELF_TRANSFORM_DEBOUNCE_MS", "300")),
            async_debounce_ms=int(os.getenv("DYNAFORM_ASYNC_DEBOUNCE_MS", "300")),
            http_timeout_seconds=float(os.getenv("DYNAFORM_HTTP_TIMEOUT", "10.0")),
            max_trigger_log_entries=int(os.getenv("DYNAFORM_TRIGGER_LOG_SIZE", "1000")),
            max_errors=int(os.getenv("DYNAFORM_MAX_ERRORS", "500")),
            max_override_transitions=int(os.getenv("DYNAFORM_OVERRIDE_HISTORY_SIZE", "1000")),
            fire_async_on_start=_env_bool("DYNAFORM_FIRE_ASYNC_ON_START", "true"),
        )


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_file: Optional[str] = None
    json_logs: bool = False

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        return cls(
            level=os.getenv("DYNAFORM_LOG_LEVEL", "INFO"),
            format=os.getenv("DYNAFORM_LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file=os.getenv("DYNAFORM_LOG_FILE"),
            json_logs=_env_bool("DYNAFORM_JSON_LOGS", "false"),
        )


@dataclass
class EngineConfig:
    """Root configuration."""

    environment: str = "development"
    debug: bool = False
    version: str = "0.3.0"

    derivation: DerivationConfig = field(default_factory=DerivationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Additional settings
    settings: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create configuration from environment variables."""
        return cls(
            environment=os.getenv("DYNAFORM_ENVIRONMENT", "development"),
            debug=_env_bool("DYNAFORM_DEBUG", "false"),
            derivation=DerivationConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )

    @classmethod
    def from_file(cls, filepath: str) -> "EngineConfig":
        """Load configuration from JSON file."""
        path = Path(filepath)
        if not path.exists():
            logger.warning(f"Config file not found: {filepath}, using defaults")
            return cls.from_env()

        with open(path) as f:
            data = json.load(f)

        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Create config from dictionary; file values win over the environment."""
        config = cls.from_env()

        if "environment" in data:
            config.environment = data["environment"]
        if "debug" in data:
            config.debug = data["debug"]

        for section in ("derivation", "logging"):
            target = getattr(config, section)
            for key, value in data.get(section, {}).items():
                if hasattr(target, key):
                    setattr(target, key, value)
                else:
                    logger.warning(f"Unknown config key ignored: {section}.{key}")

        if "settings" in data:
            config.settings.update(data["settings"])

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Serialize config to dictionary."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "version": self.version,
            "derivation": {
                "default_debounce_ms": self.derivation.default_debounce_ms,
                "self_transform_debounce_ms": self.derivation.self_transform_debounce_ms,
                "async_debounce_ms": self.derivation.async_debounce_ms,
                "http_timeout_seconds": self.derivation.http_timeout_seconds,
                "max_trigger_log_entries": self.derivation.max_trigger_log_entries,
                "max_errors": self.derivation.max_errors,
                "max_override_transitions": self.derivation.max_override_transitions,
                "fire_async_on_start": self.derivation.fire_async_on_start,
            },
            "logging": {
                "level": self.logging.level,
                "log_file": self.logging.log_file,
                "json_logs": self.logging.json_logs,
            },
            "settings": dict(self.settings),
        }


# Global config instance
_config: Optional[EngineConfig] = None


def load_config(filepath: str = None) -> EngineConfig:
    """
    Load configuration from file or environment.

    Args:
        filepath: Optional path to JSON config file

    Returns:
        EngineConfig instance
    """
    global _config

    if filepath:
        _config = EngineConfig.from_file(filepath)
    else:
        # Try default locations
        default_paths = [
            "./dynaform.json",
            "./config/dynaform.json",
            os.path.expanduser("~/.dynaform/config.json"),
        ]

        for path in default_paths:
            if Path(path).exists():
                logger.info(f"Loading config from: {path}")
                _config = EngineConfig.from_file(path)
                return _config

        # Fall back to environment
        _config = EngineConfig.from_env()

    logger.info(f"Configuration loaded: environment={_config.environment}")
    return _config


def get_config() -> EngineConfig:
    """Get current configuration, loading if needed."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the loaded configuration (next get_config() reloads)."""
    global _config
    _config = None
