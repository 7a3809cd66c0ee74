from __future__ import annotations

import pytest
import yaml

from book_aggregator.config_manager import loader as cfg_loader

from book_aggregator.config_manager import (
    AggregatorSettings,
    CONFIG_FILE_ENV,
    DOTENV_FILE_ENV,
    apply_settings_updates,
    describe_settings,
    get_settings,
    load_settings,
)

pytestmark = pytest.mark.config

_ENV_NAMES = (
    "DATABASE_URL",
    "BOOK_AGGREGATOR_DATABASE_URL",
    "REDIS_URL",
    "BOOK_AGGREGATOR_REDIS_URL",
    "GOOGLE_BOOKS_API_KEY",
    "NYT_API_KEY",
    "BOOK_AGGREGATOR_BATCH_SIZE",
    "BOOK_AGGREGATOR_MAX_WORKERS",
    "BOOK_AGGREGATOR_ARCHIVE_PREFIX",
    "S3_JSON_PREFIX",
    "BOOK_AGGREGATOR_DEBUG",
    CONFIG_FILE_ENV,
    DOTENV_FILE_ENV,
)


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "book_aggregator.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "database_url": "sqlite:///catalog.db",
                "migration_batch_size": 25,
                "archive_prefix": "/exports/books",
                "google_books_api_key": "from-yaml",
            }
        ),
        encoding="utf-8",
    )
    return path


def test_defaults_match_documented_values():
    settings = AggregatorSettings()
    assert settings.migration_batch_size == 50
    assert settings.retry_max_attempts == 3
    assert settings.retry_initial_delay_seconds == 1.0
    assert settings.breaker_failure_threshold == 10
    assert settings.breaker_reset_timeout_seconds == 300.0
    assert settings.migration_file_timeout_seconds == 120.0
    assert settings.processed_folder == "processed/"


def test_yaml_values_are_loaded_and_normalized(config_file):
    settings = load_settings(str(config_file))

    assert settings.secret_value("database_url") == "sqlite:///catalog.db"
    assert settings.migration_batch_size == 25
    assert settings.archive_prefix == "exports/books/"
    assert get_settings() is settings


def test_environment_overrides_yaml(config_file, monkeypatch):
    monkeypatch.setenv("GOOGLE_BOOKS_API_KEY", "from-env")
    monkeypatch.setenv("BOOK_AGGREGATOR_BATCH_SIZE", "7")

    settings = load_settings(str(config_file))

    assert settings.secret_value("google_books_api_key") == "from-env"
    assert settings.migration_batch_size == 7


def test_explicit_overrides_win(config_file, monkeypatch):
    monkeypatch.setenv("BOOK_AGGREGATOR_BATCH_SIZE", "7")
    settings = load_settings(str(config_file), overrides={"migration_batch_size": 3, "debug": True})
    assert settings.migration_batch_size == 3
    assert settings.debug is True


def test_config_path_from_environment(config_file, monkeypatch):
    monkeypatch.setenv(CONFIG_FILE_ENV, str(config_file))
    assert load_settings().migration_batch_size == 25


def test_missing_file_falls_back_to_defaults(tmp_path):
    settings = load_settings(str(tmp_path / "absent.yaml"))
    assert settings.migration_batch_size == 50


def test_invalid_values_raise_runtime_error(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("migration_batch_size: 0\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_settings(str(path))


def test_negative_file_limits_are_rejected(tmp_path):
    path = tmp_path / "limits.yaml"
    path.write_text("migration_skip_files: -1\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_settings(str(path))


def test_non_mapping_yaml_is_rejected(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- one\n- two\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_settings(str(path))


def test_apply_updates_validates():
    settings = AggregatorSettings()
    assert apply_settings_updates(settings, {}) is settings
    with pytest.raises(ValueError):
        apply_settings_updates(settings, {"migration_max_workers": -1})


def test_describe_settings_hides_secrets():
    settings = AggregatorSettings(database_url="postgresql://user:pw@db/books", nyt_api_key="secret")
    described = describe_settings(settings)
    assert "database_url" not in described
    assert "nyt_api_key" not in described
    assert described["migration_batch_size"] == 50


def test_dotenv_file_fills_unset_variables_once(tmp_path, monkeypatch):
    env_file = tmp_path / "aggregator.env"
    env_file.write_text("BOOK_AGGREGATOR_BATCH_SIZE=9\nNYT_API_KEY=from-dotenv\n", encoding="utf-8")
    monkeypatch.setenv(DOTENV_FILE_ENV, str(env_file))
    monkeypatch.setenv("NYT_API_KEY", "from-shell")
    # Recorded so teardown also removes the value the dotenv file exports.
    monkeypatch.setenv("BOOK_AGGREGATOR_BATCH_SIZE", "")
    monkeypatch.delenv("BOOK_AGGREGATOR_BATCH_SIZE")
    monkeypatch.setattr(cfg_loader, "_DOTENV_LOADED", False)

    settings = load_settings(str(tmp_path / "absent.yaml"))

    assert settings.migration_batch_size == 9
    assert settings.secret_value("nyt_api_key") == "from-shell"
    assert cfg_loader.load_dotenv_files() == []
    assert cfg_loader.load_dotenv_files(force=True) == [env_file]
