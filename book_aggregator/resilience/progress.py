"""Thread-safe migration counters and error aggregation."""

from __future__ import annotations

import logging
import threading
import time
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional

from book_aggregator import logging_manager as log_mgr
from book_aggregator.catalog.errors import error_kind

logger = log_mgr.get_logger().getChild("resilience.progress")

_TRACE_LIMIT = 1000
_REPORT_LIMIT = 10


class MigrationProgress:
    """Monotonic processed/failed/skipped counters for one run."""

    def __init__(self, *, clock=time.monotonic) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._started = clock()
        self._total = 0
        self._processed = 0
        self._failed = 0
        self._skipped = 0
        # Not file outcomes; tallied beside them.
        self._overruns = 0
        self._skipped_entries = 0

    def set_total(self, total: int) -> None:
        with self._lock:
            self._total = max(0, total)

    def increment_processed(self) -> None:
        with self._lock:
            self._processed += 1

    def increment_failed(self) -> None:
        with self._lock:
            self._failed += 1

    def increment_skipped(self) -> None:
        with self._lock:
            self._skipped += 1

    def record_overrun(self) -> None:
        with self._lock:
            self._overruns += 1

    def add_skipped_entries(self, count: int) -> None:
        with self._lock:
            self._skipped_entries += max(0, count)

    @property
    def total(self) -> int:
        with self._lock:
            return self._total

    @property
    def processed(self) -> int:
        with self._lock:
            return self._processed

    @property
    def failed(self) -> int:
        with self._lock:
            return self._failed

    @property
    def skipped(self) -> int:
        with self._lock:
            return self._skipped

    @property
    def overruns(self) -> int:
        with self._lock:
            return self._overruns

    @property
    def skipped_entries(self) -> int:
        with self._lock:
            return self._skipped_entries

    @property
    def completed(self) -> int:
        with self._lock:
            return self._processed + self._failed + self._skipped

    @property
    def percentage(self) -> float:
        with self._lock:
            if self._total <= 0:
                return 0.0
            done = self._processed + self._failed + self._skipped
            return round(100.0 * done / self._total, 2)

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    def to_dict(self) -> Dict[str, object]:
        with self._lock:
            total = self._total
            processed, failed, skipped = self._processed, self._failed, self._skipped
        done = processed + failed + skipped
        return {
            "total": total,
            "processed": processed,
            "failed": failed,
            "skipped": skipped,
            "percentage": round(100.0 * done / total, 2) if total else 0.0,
            "elapsed_seconds": round(self.elapsed, 3),
        }

    def log_progress(self, *, level: int = logging.INFO) -> None:
        snapshot = self.to_dict()
        logger.log(
            level,
            "Migration progress: %s/%s done (%s%%), %s processed, %s failed, %s skipped",
            snapshot["processed"] + snapshot["failed"] + snapshot["skipped"],
            snapshot["total"],
            snapshot["percentage"],
            snapshot["processed"],
            snapshot["failed"],
            snapshot["skipped"],
            extra={"event": "migration.progress", **snapshot},
        )


@dataclass(frozen=True, slots=True)
class ErrorDetail:
    """One recorded failure."""

    operation: str
    key: Optional[str]
    error_kind: str
    message: str
    timestamp: datetime
    trace: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "operation": self.operation,
            "key": self.key,
            "error_kind": self.error_kind,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


def _short_trace(exc: BaseException) -> str:
    text = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    if len(text) > _TRACE_LIMIT:
        return text[:_TRACE_LIMIT] + "\n  ... truncated ..."
    return text


class MigrationErrorAggregator:
    """Ordered error details with per-kind counts."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._errors: List[ErrorDetail] = []
        self._counts: Dict[str, int] = {}

    def record(
        self,
        operation: str,
        key: Optional[str],
        exc: Optional[BaseException] = None,
        *,
        kind: Optional[str] = None,
        message: Optional[str] = None,
    ) -> ErrorDetail:
        detail = ErrorDetail(
            operation=operation,
            key=key,
            error_kind=kind or (error_kind(exc) if exc is not None else "error"),
            message=message or (str(exc) if exc is not None else ""),
            timestamp=datetime.now(timezone.utc),
            trace=_short_trace(exc) if exc is not None else None,
        )
        with self._lock:
            self._errors.append(detail)
            self._counts[detail.error_kind] = self._counts.get(detail.error_kind, 0) + 1
        return detail

    @property
    def errors(self) -> List[ErrorDetail]:
        with self._lock:
            return list(self._errors)

    @property
    def counts_by_kind(self) -> Mapping[str, int]:
        with self._lock:
            return dict(self._counts)

    def __len__(self) -> int:
        with self._lock:
            return len(self._errors)

    def log_report(self) -> None:
        errors = self.errors
        if not errors:
            return
        counts = self.counts_by_kind
        logger.error(
            "Migration finished with %d error(s): %s",
            len(errors),
            ", ".join(f"{kind}={count}" for kind, count in sorted(counts.items())),
            extra={"event": "migration.error_report", "error_counts": counts},
        )
        for detail in errors[:_REPORT_LIMIT]:
            logger.error(
                "[%s] %s - %s: %s",
                detail.operation,
                detail.key,
                detail.error_kind,
                detail.message,
                extra={"event": "migration.error_detail", "console_suppress": True},
            )


__all__ = ["ErrorDetail", "MigrationErrorAggregator", "MigrationProgress"]
