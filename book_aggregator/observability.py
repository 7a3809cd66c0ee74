"""Observability utilities for structured logging and telemetry."""

from __future__ import annotations

import contextlib
import time
from typing import Dict, Iterator, Mapping, Optional

from opentelemetry import metrics, trace

from . import logging_manager as log_mgr

logger = log_mgr.get_logger().getChild("observability")

_tracer = trace.get_tracer("book_aggregator")
_meter = metrics.get_meter("book_aggregator")
_histograms: Dict[str, metrics.Histogram] = {}
_counters: Dict[str, metrics.Counter] = {}


def _get_histogram(name: str) -> metrics.Histogram:
    histogram = _histograms.get(name)
    if histogram is None:
        histogram = _meter.create_histogram(name)
        _histograms[name] = histogram
    return histogram


def _get_counter(name: str) -> metrics.Counter:
    counter = _counters.get(name)
    if counter is None:
        counter = _meter.create_counter(name)
        _counters[name] = counter
    return counter


def _clean_attributes(attributes: Optional[Mapping[str, object]]) -> Dict[str, object]:
    cleaned: Dict[str, object] = {}
    for key, value in (attributes or {}).items():
        if value is None:
            continue
        if isinstance(value, (str, bool, int, float)):
            cleaned[key] = value
        else:
            cleaned[key] = str(value)
    return cleaned


def record_metric(
    name: str,
    value: float,
    attributes: Optional[Mapping[str, object]] = None,
) -> None:
    """Record a numeric observation on an OpenTelemetry histogram."""

    attrs = _clean_attributes(attributes)
    _get_histogram(name).record(value, attributes=attrs)
    logger.debug(
        "Metric recorded",
        extra={
            "event": "observability.metric_recorded",
            "metric": name,
            "value": value,
            "attributes": attrs,
            "console_suppress": True,
        },
    )


def increment_counter(
    name: str,
    amount: int = 1,
    attributes: Optional[Mapping[str, object]] = None,
) -> None:
    """Add ``amount`` to an OpenTelemetry counter."""

    _get_counter(name).add(amount, attributes=_clean_attributes(attributes))


@contextlib.contextmanager
def pipeline_stage(stage: str, attributes: Optional[Mapping[str, object]] = None) -> Iterator[None]:
    """Instrument a pipeline stage with structured logging and a trace span."""

    attrs = _clean_attributes(attributes)

    with log_mgr.log_context(run_id=attrs.get("run_id"), stage=stage):
        start = time.perf_counter()
        logger.info(
            "Stage started",
            extra={
                "event": "pipeline.stage.start",
                "stage": stage,
                "attributes": attrs,
                "console_suppress": True,
            },
        )
        status = "ok"
        try:
            with _tracer.start_as_current_span(f"pipeline.stage.{stage}", attributes=attrs):
                yield
        except BaseException:
            status = "error"
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            record_metric(
                "pipeline.stage.duration", duration_ms, {**attrs, "stage": stage, "status": status}
            )
            logger.info(
                "Stage completed",
                extra={
                    "event": "pipeline.stage.complete",
                    "stage": stage,
                    "status": status,
                    "duration_ms": round(duration_ms, 2),
                    "attributes": attrs,
                    "console_suppress": True,
                },
            )


@contextlib.contextmanager
def lookup_tier(tier: str, attributes: Optional[Mapping[str, object]] = None) -> Iterator[None]:
    """Time a single tier check of the lookup coordinator."""

    attrs = _clean_attributes(attributes)
    start = time.perf_counter()
    with _tracer.start_as_current_span(f"lookup.tier.{tier}", attributes=attrs):
        try:
            yield
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            record_metric("lookup.tier.duration", duration_ms, {**attrs, "tier": tier})


__all__ = [
    "increment_counter",
    "lookup_tier",
    "pipeline_stage",
    "record_metric",
]
