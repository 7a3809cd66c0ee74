"""Command line parsing and end-to-end command runs."""

from __future__ import annotations

import argparse
import json

import pytest

from book_aggregator.cli import run_cli
from book_aggregator.cli.args import build_cli_parser, parse_cli_args
from book_aggregator.cli.context import settings_from_args
from book_aggregator.cli.main import EXIT_OK, EXIT_USAGE
from book_aggregator.database import dispose_engine
from tests.helpers.fakes import google_volume

pytestmark = pytest.mark.cli


@pytest.fixture(autouse=True)
def _fresh_engine():
    dispose_engine()
    yield
    dispose_engine()


class TestArgs:
    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            parse_cli_args([])

    def test_migrate_options(self):
        args = parse_cli_args(
            ["migrate", "--prefix", "books/v2/", "--batch-size", "5", "--max-workers", "2", "--init-db"]
        )
        assert args.command == "migrate"
        assert (args.prefix, args.batch_size, args.max_workers, args.init_db) == ("books/v2/", 5, 2, True)

    def test_search_filters_are_parsed(self):
        args = parse_cli_args(["search", "dune", "--filter", "lang=en", "--filter", "year=1965", "--sort", "newest"])
        assert args.filters == [("lang", "en"), ("year", "1965")]
        assert args.sort == "newest"

    def test_malformed_filter_is_rejected(self):
        with pytest.raises(SystemExit):
            parse_cli_args(["search", "dune", "--filter", "novalue"])

    def test_abbreviations_are_not_accepted(self):
        parser = build_cli_parser()
        assert isinstance(parser, argparse.ArgumentParser)
        with pytest.raises(SystemExit):
            parser.parse_args(["migrate", "--batch", "5"])

    def test_settings_from_args_applies_overrides(self, tmp_path):
        args = parse_cli_args(
            [
                "migrate",
                "--config",
                str(tmp_path / "absent.yaml"),
                "--database-url",
                "sqlite:///override.db",
                "--prefix",
                "exports",
                "--batch-size",
                "7",
            ]
        )
        settings = settings_from_args(args)
        assert settings.secret_value("database_url") == "sqlite:///override.db"
        assert settings.archive_prefix == "exports/"
        assert settings.migration_batch_size == 7

    def test_skip_and_max_limit_the_migration(self, tmp_path):
        args = parse_cli_args(
            ["migrate", "--config", str(tmp_path / "absent.yaml"), "--skip", "100", "--max", "25"]
        )
        assert (args.skip_files, args.max_files) == (100, 25)

        settings = settings_from_args(args)
        assert settings.migration_skip_files == 100
        assert settings.migration_max_files == 25

    def test_limits_default_to_the_configured_values(self, tmp_path):
        args = parse_cli_args(["migrate", "--config", str(tmp_path / "absent.yaml")])
        settings = settings_from_args(args)
        assert (settings.migration_skip_files, settings.migration_max_files) == (0, 0)


class TestCommands:
    def test_migrate_command_runs_the_pipeline(self, tmp_path, capsys):
        archive = tmp_path / "archive"
        payload_dir = archive / "books" / "v1"
        payload_dir.mkdir(parents=True)
        for index in range(3):
            volume = google_volume(volume_id=f"v{index}", isbn13=f"978{index:010d}")
            (payload_dir / f"book-{index}.json").write_text(json.dumps(volume), encoding="utf-8")

        exit_code = run_cli(
            [
                "migrate",
                "--config",
                str(tmp_path / "absent.yaml"),
                "--database-url",
                f"sqlite:///{tmp_path / 'catalog.db'}",
                "--archive-root",
                str(archive),
                "--prefix",
                "books/v1/",
                "--init-db",
            ]
        )

        assert exit_code == EXIT_OK
        summary = json.loads(capsys.readouterr().out)
        assert summary["status"] == "completed"
        assert summary["processed"] == 3
        assert sorted(path.name for path in (payload_dir / "processed").iterdir()) == [
            "book-0.json",
            "book-1.json",
            "book-2.json",
        ]

    def test_invalid_lookup_identifier_is_a_usage_error(self, tmp_path):
        exit_code = run_cli(
            [
                "lookup",
                "not a valid id",
                "--no-remote-cache",
                "--config",
                str(tmp_path / "absent.yaml"),
                "--database-url",
                f"sqlite:///{tmp_path / 'catalog.db'}",
            ]
        )
        assert exit_code == EXIT_USAGE

    def test_invalid_configuration_is_a_usage_error(self, tmp_path):
        config = tmp_path / "bad.yaml"
        config.write_text("migration_batch_size: -1\n", encoding="utf-8")
        assert run_cli(["init-db", "--config", str(config)]) == EXIT_USAGE
