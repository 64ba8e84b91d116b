from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from policy_engine.runtime_profile import env_int

logger = logging.getLogger(__name__)

TELEMETRY_SCHEMA_VERSION = "telemetry.v1"
CONSTRAINT_BATCH_SPAN = "constraints.evaluate.batch"
DEFAULT_MAX_SPANS = 1000


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Telemetry:
    """Span and counter sink for the prescriptive pipeline.

    Spans are keyed by label; starting a label that is already open replaces the
    open record. Finished spans are folded into per-label stats as they end;
    only the most recent ``max_spans`` raw records are kept for snapshots.
    Counters are plain floats and are also mirrored to debug logs.
    """

    def __init__(self, *, clock: Callable[[], float] | None = None, max_spans: int = DEFAULT_MAX_SPANS) -> None:
        if max_spans <= 0:
            raise ValueError("max_spans must be positive")
        self._clock = clock or time.perf_counter
        self._lock = threading.RLock()
        self.max_spans = max_spans
        self._spans: deque[dict[str, Any]] = deque(maxlen=max_spans)
        self._span_stats: dict[str, dict[str, float]] = {}
        self._active: dict[str, float] = {}
        self._counters: dict[str, float] = {}
        self._adaptive_summary: dict[str, Any] | None = None

    def start_span(self, label: str) -> None:
        with self._lock:
            self._active[label] = self._clock()

    def end_span(self, label: str) -> None:
        with self._lock:
            started = self._active.pop(label, None)
            if started is None:
                return
            duration_ms = (self._clock() - started) * 1000.0
            self._spans.append({"label": label, "duration_ms": duration_ms})
            self._fold_span(label, duration_ms)

    def _fold_span(self, label: str, duration_ms: float) -> None:
        bucket = self._span_stats.setdefault(
            label,
            {"count": 0, "total_ms": 0.0, "min_ms": float("inf"), "max_ms": 0.0, "incomplete": 0},
        )
        bucket["count"] += 1
        if duration_ms < 0:
            bucket["incomplete"] += 1
            return
        bucket["total_ms"] += duration_ms
        bucket["min_ms"] = min(bucket["min_ms"], duration_ms)
        bucket["max_ms"] = max(bucket["max_ms"], duration_ms)

    @contextmanager
    def span(self, label: str) -> Iterator[None]:
        self.start_span(label)
        try:
            yield
        finally:
            self.end_span(label)

    def counter(self, name: str, inc: float = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + inc
        logger.debug("telemetry_counter name=%s inc=%s", name, inc)

    def counters(self) -> dict[str, float]:
        with self._lock:
            return dict(self._counters)

    def attach_adaptive_summary(self, *, actions: list[Mapping[str, Any]], stats: Mapping[str, int]) -> None:
        top = sorted(actions, key=lambda a: a.get("priority", 0), reverse=True)[:3]
        with self._lock:
            self._adaptive_summary = {
                "stats": dict(stats),
                "top": [dict(a) for a in top],
                "generated_at": _utcnow_iso(),
            }

    def rollups(self) -> dict[str, Any]:
        with self._lock:
            raw_stats = {label: dict(bucket) for label, bucket in self._span_stats.items()}
            counters = dict(self._counters)
            adaptive_summary = self._adaptive_summary

        span_stats: dict[str, dict[str, float]] = {}
        for label, bucket in raw_stats.items():
            complete = bucket["count"] - bucket["incomplete"]
            span_stats[label] = {
                "count": bucket["count"],
                "total_ms": bucket["total_ms"],
                "min_ms": 0.0 if bucket["min_ms"] == float("inf") else bucket["min_ms"],
                "max_ms": bucket["max_ms"],
                "avg_ms": bucket["total_ms"] / complete if complete > 0 else 0.0,
                "incomplete": bucket["incomplete"],
            }

        counter_groups: dict[str, float] = {}
        for name, value in counters.items():
            prefix = name.split(".", 1)[0]
            counter_groups[prefix] = counter_groups.get(prefix, 0) + value

        batch = span_stats.get(CONSTRAINT_BATCH_SPAN)
        evaluated = counters.get("constraints.evaluated", 0)
        hard = counters.get("constraints.violation.hard", 0)
        soft = counters.get("constraints.violation.soft", 0)
        return {
            "span_stats": span_stats,
            "total_spans": sum(b["count"] for b in span_stats.values()),
            "total_duration_ms": sum(b["total_ms"] for b in span_stats.values()),
            "counter_groups": counter_groups,
            "derived": {
                "total_constraint_eval_ms": batch["total_ms"] if batch else 0.0,
                "constraint_eval_batches": batch["count"] if batch else 0,
                "avg_constraint_batch_ms": batch["avg_ms"] if batch else 0.0,
                "constraints_evaluated": evaluated,
                "hard_violations": hard,
                "soft_violations": soft,
                "violation_hard_rate": hard / evaluated if evaluated > 0 else 0.0,
                "violation_soft_rate": soft / evaluated if evaluated > 0 else 0.0,
            },
            "adaptive_summary": adaptive_summary,
        }

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            spans = [dict(x) for x in self._spans]
            counters = dict(self._counters)
        return {
            "schema_version": TELEMETRY_SCHEMA_VERSION,
            "spans": spans,
            "counters": counters,
            "rollups": self.rollups(),
            "timestamp": _utcnow_iso(),
        }

    def reset(self) -> None:
        with self._lock:
            self._spans.clear()
            self._span_stats = {}
            self._active = {}
            self._counters = {}
            self._adaptive_summary = None


class NullTelemetry(Telemetry):
    """Sink used when callers pass no telemetry; records nothing."""

    def start_span(self, label: str) -> None:
        return None

    def end_span(self, label: str) -> None:
        return None

    def counter(self, name: str, inc: float = 1) -> None:
        return None

    def attach_adaptive_summary(self, *, actions: list[Mapping[str, Any]], stats: Mapping[str, int]) -> None:
        return None


NULL_TELEMETRY = NullTelemetry()

telemetry = Telemetry(max_spans=env_int("TELEMETRY_MAX_SPANS", DEFAULT_MAX_SPANS))


def resolve(sink: Telemetry | None) -> Telemetry:
    return NULL_TELEMETRY if sink is None else sink
