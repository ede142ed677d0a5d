"""
DYNAFORM Bootstrap

Configuration loading and logging setup.
"""

from .config import DerivationConfig, EngineConfig, LoggingConfig, get_config, load_config, reset_config
from .logging import JSONFormatter, setup_logging, setup_logging_from_config

__all__ = [
    "DerivationConfig",
    "EngineConfig",
    "LoggingConfig",
    "get_config",
    "load_config",
    "reset_config",
    "JSONFormatter",
    "setup_logging",
    "setup_logging_from_config",
]
