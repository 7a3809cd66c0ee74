"""Pipeline state machine values and the immutable run summary."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from book_aggregator.resilience.circuit_breaker import BreakerSnapshot
from book_aggregator.resilience.progress import ErrorDetail


class PipelineState(str, Enum):
    """States a migration pipeline moves through."""

    IDLE = "idle"
    LISTING = "listing"
    BATCHING = "batching"
    DISPATCHING = "dispatching"
    AWAITING = "awaiting"
    ABORTED = "aborted"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


@dataclass(frozen=True)
class MigrationRunState:
    """Snapshot returned by :meth:`MigrationPipeline.run`."""

    run_id: str
    status: RunStatus
    total: int
    processed: int
    failed: int
    skipped: int
    started_at: datetime
    finished_at: datetime
    batches_completed: int
    breaker: BreakerSnapshot
    errors: Tuple[ErrorDetail, ...] = ()
    error_counts_by_kind: Mapping[str, int] = field(default_factory=dict)
    overruns: int = 0
    skipped_entries: int = 0

    @property
    def completed(self) -> int:
        return self.processed + self.failed + self.skipped

    @property
    def progress_percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return round(100.0 * self.completed / self.total, 2)

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        opened_at: Optional[float] = self.breaker.opened_at
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "progress_percentage": self.progress_percentage,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "batches_completed": self.batches_completed,
            "overruns": self.overruns,
            "skipped_entries": self.skipped_entries,
            "breaker": {
                "state": self.breaker.state.value,
                "consecutive_failures": self.breaker.consecutive_failures,
                "opened_at": opened_at,
            },
            "error_counts_by_kind": dict(self.error_counts_by_kind),
            "errors": [detail.to_dict() for detail in self.errors],
        }


__all__ = ["MigrationRunState", "PipelineState", "RunStatus"]
