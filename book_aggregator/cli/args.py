"""Argument parsing for the book-aggregator CLI."""

from __future__ import annotations

import argparse
from typing import Optional, Sequence


def _add_shared_arguments(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML configuration file (defaults to conf/book_aggregator.yaml).",
    )
    parser.add_argument("--database-url", help="Override the canonical store database URL.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging output.")
    return parser


def _parse_filter(value: str) -> tuple[str, str]:
    name, sep, filter_value = value.partition("=")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got {value!r}")
    return name.strip(), filter_value.strip()


def build_cli_parser() -> argparse.ArgumentParser:
    """Build the CLI parser with explicit sub-commands."""

    parser = argparse.ArgumentParser(
        prog="book-aggregator",
        description="Canonical book metadata aggregation",
        allow_abbrev=False,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    migrate_parser = subparsers.add_parser(
        "migrate", help="Migrate archived provider payloads into the canonical store", allow_abbrev=False
    )
    migrate_parser.add_argument("--archive-root", help="Directory holding the payload archive.")
    migrate_parser.add_argument("--prefix", help="Key prefix to migrate (e.g. books/v1/).")
    migrate_parser.add_argument("--batch-size", type=int, help="Number of files per batch.")
    migrate_parser.add_argument("--max-workers", type=int, help="Worker threads per batch.")
    migrate_parser.add_argument(
        "--skip", type=int, dest="skip_files", help="Skip the first N pending files (sorted key order)."
    )
    migrate_parser.add_argument(
        "--max", type=int, dest="max_files", help="Migrate at most N files; 0 means no limit."
    )
    migrate_parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create the canonical store tables before migrating.",
    )
    _add_shared_arguments(migrate_parser)

    lookup_parser = subparsers.add_parser(
        "lookup", help="Look up a book by canonical id, ISBN or provider id", allow_abbrev=False
    )
    lookup_parser.add_argument("identifier", help="Canonical id, ISBN-13, ISBN-10 or provider volume id.")
    lookup_parser.add_argument(
        "--no-remote-cache",
        action="store_true",
        help="Skip the Redis document cache.",
    )
    _add_shared_arguments(lookup_parser)

    search_parser = subparsers.add_parser(
        "search", help="Search the primary provider and return canonical records", allow_abbrev=False
    )
    search_parser.add_argument("query", help="Free-text query.")
    search_parser.add_argument("--start", type=int, default=0, help="Offset of the first result.")
    search_parser.add_argument("--size", type=int, default=10, help="Page size.")
    search_parser.add_argument(
        "--filter",
        dest="filters",
        action="append",
        type=_parse_filter,
        metavar="NAME=VALUE",
        help="Search filter (repeatable), e.g. lang=en or year=2020.",
    )
    search_parser.add_argument("--sort", choices=["relevance", "newest"], help="Result order.")
    search_parser.add_argument(
        "--no-remote-cache",
        action="store_true",
        help="Skip the Redis document cache.",
    )
    _add_shared_arguments(search_parser)

    bestsellers_parser = subparsers.add_parser(
        "bestsellers",
        help="Ingest the bestseller list overview for a publication date",
        allow_abbrev=False,
    )
    bestsellers_parser.add_argument(
        "--date", dest="published_date", help="Publication date (YYYY-MM-DD); latest when omitted."
    )
    _add_shared_arguments(bestsellers_parser)

    init_parser = subparsers.add_parser(
        "init-db", help="Create the canonical store tables", allow_abbrev=False
    )
    _add_shared_arguments(init_parser)

    return parser


def parse_cli_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    return build_cli_parser().parse_args(argv)


__all__ = ["build_cli_parser", "parse_cli_args"]
