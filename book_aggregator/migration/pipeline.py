"""Batch migration of archived provider payloads into the canonical store."""

from __future__ import annotations

import concurrent.futures
import contextvars
import dataclasses
import gzip
import json
import re
import threading
import time
import uuid
import zlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from book_aggregator import logging_manager as log_mgr
from book_aggregator import observability
from book_aggregator.catalog.errors import (
    BookAggregatorError,
    FormatError,
    ListingError,
    PersistenceError,
)
from book_aggregator.catalog.ingest import IngestService
from book_aggregator.config_manager import AggregatorSettings, get_settings
from book_aggregator.resilience.circuit_breaker import CircuitBreaker
from book_aggregator.resilience.progress import MigrationErrorAggregator, MigrationProgress
from book_aggregator.resilience.retry import RetryPolicy

from .object_store import ObjectStore
from .state import MigrationRunState, PipelineState, RunStatus

logger = log_mgr.get_logger().getChild("migration.pipeline")

GZIP_MAGIC = b"\x1f\x8b"
PAYLOAD_SUFFIXES = (".json", ".json.gz")
MAX_LEADING_GARBAGE = 100
# C0 controls and DEL, keeping tab, newline and carriage return.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


class FileStatus(str, Enum):
    PROCESSED = "processed"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_STARTED = "not_started"


@dataclasses.dataclass(frozen=True, slots=True)
class FileOutcome:
    key: str
    status: FileStatus
    operation: Optional[str] = None
    error: Optional[BaseException] = None
    records: int = 0
    skipped_entries: int = 0


def clean_payload_text(text: str, *, key: str = "<inline>") -> str:
    """Strip control characters and any junk in front of the JSON document."""

    cleaned = _CONTROL_CHARS.sub("", text)
    if cleaned != text:
        logger.warning(
            "Stripped %d control character(s) from %s",
            len(text) - len(cleaned),
            key,
            extra={"event": "migration.payload.control_chars", "object_key": key},
        )
    cleaned = cleaned.strip()
    if not cleaned:
        raise FormatError(f"{key}: empty payload")

    starts = [index for index in (cleaned.find("{"), cleaned.find("[")) if index >= 0]
    start = min(starts) if starts else -1
    if start < 0 or start > MAX_LEADING_GARBAGE:
        raise FormatError(f"{key}: payload does not look like JSON")
    if start:
        logger.warning(
            "Dropped %d byte(s) before the JSON document in %s",
            start,
            key,
            extra={"event": "migration.payload.leading_garbage", "object_key": key},
        )
    return cleaned[start:]


def split_documents(text: str, *, key: str = "<inline>") -> List[Any]:
    """Parse one JSON document, or several written back to back (``}{``).

    The first document must parse; a later fragment that does not is logged
    and everything from it onwards is dropped.
    """

    decoder = json.JSONDecoder()
    try:
        first, end = decoder.raw_decode(text)
    except ValueError as exc:
        raise FormatError(f"{key}: invalid JSON: {exc}") from exc

    documents = [first]
    position = _skip_whitespace(text, end)
    while position < len(text):
        try:
            document, end = decoder.raw_decode(text, position)
        except ValueError as exc:
            logger.warning(
                "Ignoring unparseable trailing data in %s at offset %d: %s",
                key,
                position,
                exc,
                extra={"event": "migration.payload.bad_fragment", "object_key": key},
            )
            break
        documents.append(document)
        position = _skip_whitespace(text, end)
    if len(documents) > 1:
        logger.warning(
            "%s holds %d concatenated JSON documents",
            key,
            len(documents),
            extra={"event": "migration.payload.concatenated", "object_key": key},
        )
    return documents


def _skip_whitespace(text: str, position: int) -> int:
    while position < len(text) and text[position].isspace():
        position += 1
    return position


def decode_payload(raw: bytes, *, key: str = "<inline>") -> Any:
    """Decode raw object bytes into a JSON value.

    Gunzips when the gzip magic is present, cleans the text up and returns a
    list when the object holds several concatenated documents.
    """

    data = raw
    if data[:2] == GZIP_MAGIC:
        try:
            data = gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as exc:
            raise FormatError(f"{key}: invalid gzip stream: {exc}") from exc
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise FormatError(f"{key}: payload is not UTF-8: {exc}") from exc

    documents = split_documents(clean_payload_text(text, key=key), key=key)
    return documents[0] if len(documents) == 1 else documents


def partition(keys: List[str], batch_size: int) -> List[List[str]]:
    """Split ``keys`` into consecutive batches of at most ``batch_size`` items."""

    if batch_size <= 0:
        raise ValueError("batch_size must be greater than zero")
    return [keys[index : index + batch_size] for index in range(0, len(keys), batch_size)]


class MigrationPipeline:
    """Move every archived payload under the configured prefix into the canonical store.

    Batches run one after another; the files of a batch are processed on a
    bounded thread pool. Each file is fetched, decoded, ingested through the
    shared :class:`IngestService` and finally moved to the processed folder.
    A file that cannot be parsed or carries no identifier is skipped; any
    other failure marks it failed and the run carries on.
    """

    def __init__(
        self,
        store: ObjectStore,
        ingest: IngestService,
        *,
        settings: Optional[AggregatorSettings] = None,
        retry: Optional[RetryPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._ingest = ingest
        if retry is None:
            retry = RetryPolicy(
                max_attempts=self._settings.retry_max_attempts,
                initial_delay=self._settings.retry_initial_delay_seconds,
                max_delay=self._settings.retry_max_delay_seconds,
                breaker=CircuitBreaker(
                    self._settings.breaker_failure_threshold,
                    self._settings.breaker_reset_timeout_seconds,
                    name="migration",
                    clock=clock,
                ),
            )
        self._retry = retry
        # Resolve, load and save share the breaker, so database outages trip it too.
        self._persist_retry = dataclasses.replace(
            retry, retry_on=tuple(dict.fromkeys((*retry.retry_on, PersistenceError)))
        )
        self._cancel_event = cancel_event or threading.Event()
        self._clock = clock
        self._state = PipelineState.IDLE
        self._state_lock = threading.Lock()

    @property
    def state(self) -> PipelineState:
        with self._state_lock:
            return self._state

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    def cancel(self) -> None:
        """Request a cooperative stop; in-flight files finish, nothing new starts."""

        self._cancel_event.set()

    @property
    def prefix(self) -> str:
        return self._settings.archive_prefix

    @property
    def processed_prefix(self) -> str:
        return f"{self._settings.archive_prefix}{self._settings.processed_folder}"

    def processed_key(self, key: str) -> str:
        return f"{self.processed_prefix}{key[len(self.prefix):]}"

    def _set_state(self, state: PipelineState) -> None:
        with self._state_lock:
            self._state = state

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, *, run_id: Optional[str] = None) -> MigrationRunState:
        run_id = run_id or uuid.uuid4().hex
        progress = MigrationProgress(clock=self._clock)
        errors = MigrationErrorAggregator()
        started_at = datetime.now(timezone.utc)
        batches_completed = 0

        with log_mgr.log_context(run_id=run_id):
            logger.info(
                "Starting migration of %s",
                self.prefix,
                extra={"event": "migration.start", "status": "started"},
            )
            try:
                self._set_state(PipelineState.LISTING)
                with observability.pipeline_stage("listing", {"run_id": run_id}):
                    keys = self.list_keys()
            except BookAggregatorError as exc:
                self._set_state(PipelineState.ABORTED)
                errors.record("list", self.prefix, exc)
                return self._finish(
                    run_id, RunStatus.ABORTED, progress, errors, started_at, batches_completed
                )

            keys = self._apply_limits(keys)
            progress.set_total(len(keys))
            self._set_state(PipelineState.BATCHING)
            batches = partition(keys, self._settings.migration_batch_size)
            logger.info(
                "Found %d payload(s) in %d batch(es)",
                len(keys),
                len(batches),
                extra={"event": "migration.listed", "total": len(keys), "batches": len(batches)},
            )

            status = RunStatus.COMPLETED
            with concurrent.futures.ThreadPoolExecutor(
                max_workers=self._settings.migration_max_workers,
                thread_name_prefix="book-migration",
            ) as executor:
                for index, batch in enumerate(batches, start=1):
                    if self._cancel_event.is_set():
                        status = RunStatus.CANCELLED
                        break
                    with log_mgr.log_context(batch=index):
                        with observability.pipeline_stage(
                            "batch", {"run_id": run_id, "batch": index, "size": len(batch)}
                        ):
                            self._run_batch(executor, batch, progress, errors)
                    batches_completed += 1
                    progress.log_progress()
                if status is RunStatus.COMPLETED and self._cancel_event.is_set():
                    status = RunStatus.CANCELLED

            return self._finish(run_id, status, progress, errors, started_at, batches_completed)

    def list_keys(self) -> List[str]:
        """List every pending payload key under the prefix, sorted."""

        keys: List[str] = []
        token: Optional[str] = None
        processed_prefix = self.processed_prefix
        while True:
            try:
                page, token = self._retry.call(
                    lambda token=token: self._store.list_page(
                        self.prefix, token, self._settings.migration_page_size
                    ),
                    operation="list",
                    key=self.prefix,
                    cancel_event=self._cancel_event,
                )
            except BookAggregatorError as exc:
                raise ListingError(f"listing {self.prefix} failed: {exc}") from exc
            keys.extend(
                key
                for key in page
                if key.endswith(PAYLOAD_SUFFIXES) and not key.startswith(processed_prefix)
            )
            if not token:
                break
        return sorted(set(keys))

    def _apply_limits(self, keys: List[str]) -> List[str]:
        skip = self._settings.migration_skip_files
        limit = self._settings.migration_max_files
        selected = keys[skip:]
        if limit:
            selected = selected[:limit]
        if len(selected) != len(keys):
            logger.info(
                "Limiting the run to %d of %d pending payload(s) (skip=%d, max=%s)",
                len(selected),
                len(keys),
                skip,
                limit or "unlimited",
                extra={"event": "migration.limited", "skip": skip, "max": limit},
            )
        return selected

    def _run_batch(
        self,
        executor: concurrent.futures.ThreadPoolExecutor,
        batch: List[str],
        progress: MigrationProgress,
        errors: MigrationErrorAggregator,
    ) -> None:
        self._set_state(PipelineState.DISPATCHING)
        started_at: Dict[str, float] = {}
        started = {key: threading.Event() for key in batch}

        def timed(key: str) -> FileOutcome:
            started_at[key] = self._clock()
            started[key].set()
            return self.process_file(key)

        futures: Dict[concurrent.futures.Future, str] = {}
        for key in batch:
            context = contextvars.copy_context()
            futures[executor.submit(context.run, timed, key)] = key

        self._set_state(PipelineState.AWAITING)
        timeout = self._settings.migration_file_timeout_seconds
        for future, key in futures.items():
            # Each file gets its own deadline, counted from when a worker picks it up.
            started[key].wait()
            remaining = max(0.0, started_at[key] + timeout - self._clock())
            try:
                outcome = future.result(timeout=remaining)
            except concurrent.futures.TimeoutError:
                outcome = self._await_overdue(future, key, timeout, progress)
            self._record(outcome, progress, errors)
        self._set_state(PipelineState.IDLE)

    @staticmethod
    def _await_overdue(
        future: concurrent.futures.Future,
        key: str,
        timeout: float,
        progress: MigrationProgress,
    ) -> FileOutcome:
        logger.warning(
            "Processing %s exceeded %.1fs; waiting for it before the next batch",
            key,
            timeout,
            extra={"event": "migration.file.overrun", "object_key": key},
        )
        progress.record_overrun()
        observability.increment_counter("migration.file_overruns")
        # The worker cannot be interrupted; its real outcome is what gets counted.
        return future.result()

    @staticmethod
    def _record(
        outcome: FileOutcome, progress: MigrationProgress, errors: MigrationErrorAggregator
    ) -> None:
        if outcome.status is not FileStatus.NOT_STARTED:
            observability.increment_counter("migration.files", attributes={"status": outcome.status.value})
        progress.add_skipped_entries(outcome.skipped_entries)
        if outcome.status is FileStatus.PROCESSED:
            progress.increment_processed()
        elif outcome.status is FileStatus.SKIPPED:
            progress.increment_skipped()
            errors.record(outcome.operation or "parse", outcome.key, outcome.error)
        elif outcome.status is FileStatus.FAILED:
            progress.increment_failed()
            errors.record(outcome.operation or "process", outcome.key, outcome.error)

    # ------------------------------------------------------------------
    # Per file
    # ------------------------------------------------------------------

    def process_file(self, key: str) -> FileOutcome:
        """Fetch, decode, ingest and archive one payload. Never raises."""

        if self._cancel_event.is_set():
            return FileOutcome(key, FileStatus.NOT_STARTED)

        with log_mgr.log_context(object_key=key):
            operation = "fetch"
            try:
                raw = self._retry.call(
                    lambda: self._read(key),
                    operation=operation,
                    key=key,
                    cancel_event=self._cancel_event,
                )
                operation = "parse"
                payload = decode_payload(raw, key=key)
                operation = "persist"
                ingested = self._ingest.ingest_entries(
                    payload, source_key=key, retry=self._persist_retry
                )
                operation = "move"
                self._retry.call(
                    lambda: self._store.move(key, self.processed_key(key)),
                    operation=operation,
                    key=key,
                    cancel_event=self._cancel_event,
                )
            except FormatError as exc:
                logger.warning(
                    "Skipping %s: %s",
                    key,
                    exc,
                    extra={"event": "migration.file.skipped", "status": "skipped"},
                )
                return FileOutcome(key, FileStatus.SKIPPED, operation=operation, error=exc)
            except BookAggregatorError as exc:
                logger.error(
                    "Failed to migrate %s during %s: %s",
                    key,
                    operation,
                    exc,
                    extra={"event": "migration.file.failed", "status": "failed"},
                )
                return FileOutcome(key, FileStatus.FAILED, operation=operation, error=exc)
            except Exception as exc:
                logger.exception(
                    "Unexpected error migrating %s during %s",
                    key,
                    operation,
                    extra={"event": "migration.file.failed", "status": "failed"},
                )
                return FileOutcome(key, FileStatus.FAILED, operation=operation, error=exc)

            created = sum(1 for result in ingested.results if result.created)
            logger.debug(
                "Migrated %s (%d record(s), %d new, %d entries skipped)",
                key,
                len(ingested.results),
                created,
                len(ingested.skipped),
                extra={"event": "migration.file.processed", "status": "processed", "console_suppress": True},
            )
            return FileOutcome(
                key,
                FileStatus.PROCESSED,
                records=len(ingested.results),
                skipped_entries=len(ingested.skipped),
            )

    def _read(self, key: str) -> bytes:
        with self._store.open(key) as handle:
            return handle.read()

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def _finish(
        self,
        run_id: str,
        status: RunStatus,
        progress: MigrationProgress,
        errors: MigrationErrorAggregator,
        started_at: datetime,
        batches_completed: int,
    ) -> MigrationRunState:
        if status is not RunStatus.ABORTED:
            self._set_state(PipelineState.IDLE)
        breaker = self._retry.breaker
        snapshot = breaker.snapshot() if breaker is not None else CircuitBreaker().snapshot()
        result = MigrationRunState(
            run_id=run_id,
            status=status,
            total=progress.total,
            processed=progress.processed,
            failed=progress.failed,
            skipped=progress.skipped,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            batches_completed=batches_completed,
            breaker=snapshot,
            errors=tuple(errors.errors),
            error_counts_by_kind=errors.counts_by_kind,
            overruns=progress.overruns,
            skipped_entries=progress.skipped_entries,
        )
        log = logger.error if status is RunStatus.ABORTED else logger.info
        log(
            "Migration %s: %d processed, %d failed, %d skipped of %d in %.1fs",
            status.value,
            result.processed,
            result.failed,
            result.skipped,
            result.total,
            result.duration_seconds,
            extra={
                "event": "migration.finished",
                "status": status.value,
                "batches_completed": batches_completed,
                "breaker_state": snapshot.state.value,
            },
        )
        errors.log_report()
        return result


__all__ = [
    "FileOutcome",
    "FileStatus",
    "GZIP_MAGIC",
    "MAX_LEADING_GARBAGE",
    "MigrationPipeline",
    "clean_payload_text",
    "decode_payload",
    "partition",
    "split_documents",
]
