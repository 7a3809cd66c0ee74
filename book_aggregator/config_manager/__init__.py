"""Configuration management for book-aggregator."""
from __future__ import annotations

from .constants import CONF_DIR, CONFIG_FILE_ENV, DEFAULT_CONFIG_PATH, DOTENV_FILE_ENV
from .loader import describe_settings, get_settings, load_dotenv_files, load_settings, reset_settings
from .settings import (
    AggregatorSettings,
    EnvironmentOverrides,
    apply_settings_updates,
    load_environment_overrides,
)

__all__ = [
    "AggregatorSettings",
    "CONF_DIR",
    "CONFIG_FILE_ENV",
    "DEFAULT_CONFIG_PATH",
    "DOTENV_FILE_ENV",
    "EnvironmentOverrides",
    "apply_settings_updates",
    "describe_settings",
    "get_settings",
    "load_dotenv_files",
    "load_environment_overrides",
    "load_settings",
    "reset_settings",
]
