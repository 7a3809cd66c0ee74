"""Configuration loading utilities."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import find_dotenv, load_dotenv
from pydantic import ValidationError

from book_aggregator import logging_manager

from .constants import CONFIG_FILE_ENV, DEFAULT_CONFIG_PATH, DOTENV_FILE_ENV, SENSITIVE_CONFIG_KEYS
from .settings import AggregatorSettings, apply_settings_updates, load_environment_overrides

logger = logging_manager.get_logger().getChild("config")

_ACTIVE_SETTINGS: Optional[AggregatorSettings] = None
_DOTENV_LOADED = False


def _read_config_yaml(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError:
        logger.debug(
            "No configuration file found at %s.",
            path,
            extra={"event": "config.file.missing", "console_suppress": True},
        )
        return {}
    except yaml.YAMLError as exc:
        raise RuntimeError(f"Configuration file {path} is not valid YAML") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise RuntimeError(f"Configuration file {path} must contain a mapping")
    logger.info(
        "Loaded configuration from %s",
        path,
        extra={"event": "config.file.loaded", "console_suppress": True},
    )
    return dict(data)


def _dotenv_paths() -> List[Path]:
    explicit = os.environ.get(DOTENV_FILE_ENV)
    if explicit:
        return [Path(value).expanduser() for value in explicit.split(os.pathsep) if value.strip()]
    found = find_dotenv(usecwd=True)
    return [Path(found)] if found else []


def load_dotenv_files(*, force: bool = False) -> List[Path]:
    """Export dotenv values once per process; variables already set win."""

    global _DOTENV_LOADED
    if _DOTENV_LOADED and not force:
        return []
    _DOTENV_LOADED = True

    loaded: List[Path] = []
    for path in _dotenv_paths():
        if path.is_file() and load_dotenv(path, override=False):
            loaded.append(path)
            logger.debug(
                "Loaded environment file %s",
                path,
                extra={"event": "config.dotenv.loaded", "console_suppress": True},
            )
    return loaded


def _resolve_config_path(config_file: Optional[str]) -> Path:
    candidate = config_file or os.environ.get(CONFIG_FILE_ENV)
    if not candidate:
        return DEFAULT_CONFIG_PATH
    path = Path(candidate).expanduser()
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    return path


def load_settings(
    config_file: Optional[str] = None,
    *,
    overrides: Optional[Mapping[str, Any]] = None,
) -> AggregatorSettings:
    """Load YAML configuration, then environment overrides, then ``overrides``.

    Dotenv files are read on the first call and only fill variables that are
    not already set.
    """

    global _ACTIVE_SETTINGS

    load_dotenv_files()
    payload = _read_config_yaml(_resolve_config_path(config_file))
    try:
        settings = AggregatorSettings.model_validate(payload)
    except ValidationError as exc:
        raise RuntimeError("Invalid configuration detected") from exc

    try:
        settings = apply_settings_updates(settings, load_environment_overrides())
        settings = apply_settings_updates(settings, dict(overrides or {}))
    except ValidationError as exc:
        raise RuntimeError("Invalid configuration override detected") from exc

    _ACTIVE_SETTINGS = settings
    return settings


def get_settings() -> AggregatorSettings:
    """Return the currently loaded :class:`AggregatorSettings` instance."""

    if _ACTIVE_SETTINGS is None:
        return load_settings()
    return _ACTIVE_SETTINGS


def reset_settings() -> None:
    """Forget the cached settings so the next access reloads them."""

    global _ACTIVE_SETTINGS
    _ACTIVE_SETTINGS = None


def describe_settings(settings: AggregatorSettings) -> Dict[str, Any]:
    """Return a loggable view of ``settings`` without secret values."""

    return settings.model_dump(mode="json", exclude=SENSITIVE_CONFIG_KEYS)


__all__ = ["describe_settings", "get_settings", "load_dotenv_files", "load_settings", "reset_settings"]
