"""Structured events and CSV metrics for the signal engine.

``log_event`` writes one JSON object per line through the caller's logger so
connection lifecycle, queue saturation and signal events can be grepped or
shipped as-is.  ``record_metric`` appends ``ts,metric,value,labels`` rows to
the file named by ``METRICS_PATH`` (``metrics.csv`` by default); an empty
``METRICS_PATH`` turns the sink off.
"""
from __future__ import annotations

import csv
import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional

_OBSERVABILITY_LOGGER = logging.getLogger("observability")

_FIELDS = ("ts", "metric", "value", "labels")


def log_event(logger: Optional[logging.Logger], event: str, **fields: Any) -> None:
    """Emit ``{"event": event, "ts": ..., **fields}`` as a JSON log line.

    Values that JSON cannot encode (sets, enums, exceptions) are written
    with ``repr`` instead of failing the log call.
    """

    payload = dict(fields, event=event, ts=time.time())
    (logger or _OBSERVABILITY_LOGGER).info(json.dumps(payload, sort_keys=True, default=repr))


class _CsvMetricsSink:
    """Append-only CSV writer shared by the event loop and worker threads."""

    def __init__(self, path: Optional[str] = None) -> None:
        if path is None:
            path = os.getenv("METRICS_PATH", "metrics.csv")
        self._path = Path(path) if path else None
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._path is not None

    def record(self, metric: str, value: float, labels: Optional[Mapping[str, Any]] = None) -> None:
        if self._path is None:
            return
        row = (
            f"{time.time():.6f}",
            metric,
            f"{float(value):.6f}",
            json.dumps(dict(labels or {}), sort_keys=True, default=repr),
        )
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fresh = not self._path.exists() or self._path.stat().st_size == 0
            with self._path.open("a", newline="") as handle:
                writer = csv.writer(handle)
                if fresh:
                    writer.writerow(_FIELDS)
                writer.writerow(row)


_metrics_sink = _CsvMetricsSink()


def record_metric(metric: str, value: float, *, labels: Optional[Mapping[str, Any]] = None) -> None:
    """Record a gauge or counter sample; sink failures never reach the caller."""

    try:
        _metrics_sink.record(metric, value, labels)
    except (OSError, ValueError, TypeError):
        _OBSERVABILITY_LOGGER.debug("Failed to record metric %s", metric, exc_info=True)


@contextmanager
def timed(metric: str, **labels: Any) -> Iterator[None]:
    """Record the wall time spent inside the block as ``metric`` seconds."""

    started = time.perf_counter()
    try:
        yield
    finally:
        record_metric(metric, time.perf_counter() - started, labels=labels or None)


__all__ = ["log_event", "record_metric", "timed"]
