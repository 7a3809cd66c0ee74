"""Console-script entry point for book-aggregator."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from typing import Any, Optional, Sequence

from .. import logging_manager as log_mgr
from ..catalog.errors import BookAggregatorError, InvalidLookupError
from ..catalog.types import ProviderSource, SearchPage
from ..config_manager import AggregatorSettings, describe_settings
from ..database import init_schema
from ..migration import FilesystemObjectStore, MigrationPipeline, RunStatus
from ..providers import NytBestsellerClient
from .args import parse_cli_args
from .context import AggregatorRuntime, settings_from_args

logger = log_mgr.get_logger().getChild("cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _run_init_db() -> int:
    init_schema()
    logger.info("Canonical store schema is ready", extra={"event": "cli.init_db"})
    return EXIT_OK


def _run_migrate(args: Any, settings: AggregatorSettings) -> int:
    if args.init_db:
        init_schema()
    runtime = AggregatorRuntime.build(settings, use_remote_cache=False)
    pipeline = MigrationPipeline(
        FilesystemObjectStore(settings.archive_root), runtime.ingest, settings=settings
    )

    def _request_shutdown(signum, frame) -> None:  # noqa: ARG001
        logger.warning(
            "Shutdown requested; finishing in-flight files",
            extra={"event": "cli.migrate.shutdown_requested"},
        )
        pipeline.cancel()

    previous = signal.signal(signal.SIGINT, _request_shutdown)
    try:
        result = pipeline.run()
    finally:
        signal.signal(signal.SIGINT, previous)
        runtime.providers.close()

    _emit(result.to_dict())
    if result.status is RunStatus.ABORTED:
        return EXIT_FAILURE
    if result.status is RunStatus.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_OK


async def _lookup(args: Any, settings: AggregatorSettings) -> int:
    runtime = AggregatorRuntime.build(settings, use_remote_cache=not args.no_remote_cache)
    coordinator = runtime.coordinator()
    try:
        result = await coordinator.get_by_id(args.identifier)
        await coordinator.drain()
    finally:
        await runtime.aclose()
    if result is None:
        logger.info("No record found for %s", args.identifier, extra={"event": "cli.lookup.miss"})
        return EXIT_FAILURE
    _emit({"tier": result.tier, "record": result.record.to_dict()})
    return EXIT_OK


async def _search(args: Any, settings: AggregatorSettings) -> int:
    runtime = AggregatorRuntime.build(settings, use_remote_cache=not args.no_remote_cache)
    coordinator = runtime.coordinator()
    try:
        records = await coordinator.search(
            args.query,
            page=SearchPage(start=max(0, args.start), size=max(1, args.size)),
            filters=dict(args.filters or []),
            sort=args.sort,
        )
        await coordinator.drain()
    finally:
        await runtime.aclose()
    _emit([record.to_dict() for record in records])
    return EXIT_OK


def _run_bestsellers(args: Any, settings: AggregatorSettings) -> int:
    runtime = AggregatorRuntime.build(settings, use_remote_cache=False)
    try:
        client = runtime.providers.get_client(ProviderSource.NYT)
        if not isinstance(client, NytBestsellerClient):
            logger.error(
                "Bestseller provider is not configured (missing NYT_API_KEY)",
                extra={"event": "cli.bestsellers.unavailable"},
            )
            return EXIT_USAGE
        overview = client.fetch_overview(args.published_date)
        if not overview:
            logger.warning("Bestseller overview is empty", extra={"event": "cli.bestsellers.empty"})
            return EXIT_FAILURE
        batch = runtime.ingest.ingest_entries(overview, source_key="nyt:overview")
    finally:
        runtime.providers.close()
    _emit(
        {
            "ingested": len(batch.results),
            "created": sum(1 for result in batch.results if result.created),
            "modified": sum(1 for result in batch.results if result.was_modified),
            "skipped": len(batch.skipped),
        }
    )
    return EXIT_OK


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    """Primary console script entry point."""

    args = parse_cli_args(argv)
    try:
        settings = settings_from_args(args)
    except RuntimeError as exc:
        logger.error("%s", exc, extra={"event": "cli.config_error"})
        return EXIT_USAGE

    logger.debug(
        "Loaded settings",
        extra={"event": "cli.settings", "settings": describe_settings(settings), "console_suppress": True},
    )

    try:
        if args.command == "init-db":
            return _run_init_db()
        if args.command == "migrate":
            return _run_migrate(args, settings)
        if args.command == "lookup":
            return asyncio.run(_lookup(args, settings))
        if args.command == "search":
            return asyncio.run(_search(args, settings))
        if args.command == "bestsellers":
            return _run_bestsellers(args, settings)
    except InvalidLookupError as exc:
        logger.error("%s", exc, extra={"event": "cli.invalid_identifier"})
        return EXIT_USAGE
    except BookAggregatorError as exc:
        logger.error(
            "%s failed: %s", args.command, exc, extra={"event": "cli.command_failed", "error_type": type(exc).__name__}
        )
        return EXIT_FAILURE
    return EXIT_USAGE


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the book-aggregator CLI."""

    return run_cli(argv)


if __name__ == "__main__":  # pragma: no cover - manual execution
    sys.exit(main())
