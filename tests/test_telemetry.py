from __future__ import annotations

import pytest

from policy_engine.telemetry import NULL_TELEMETRY, Telemetry, resolve


class StepClock:
    def __init__(self, *ticks: float) -> None:
        self._ticks = list(ticks)

    def __call__(self) -> float:
        return self._ticks.pop(0)


def test_span_rollups_and_incomplete_spans():
    sink = Telemetry(clock=StepClock(0.0, 0.005, 0.010, 0.013, 20.0, 19.0, 30.0))
    with sink.span("constraints.evaluate.batch"):
        pass
    with sink.span("constraints.evaluate.batch"):
        pass
    with sink.span("skewed"):
        pass
    sink.start_span("open")

    rollups = sink.rollups()
    batch = rollups["span_stats"]["constraints.evaluate.batch"]
    assert batch["count"] == 2
    assert batch["total_ms"] == pytest.approx(8.0)
    assert batch["min_ms"] == pytest.approx(3.0)
    assert batch["max_ms"] == pytest.approx(5.0)
    assert batch["avg_ms"] == pytest.approx(4.0)
    assert rollups["span_stats"]["skewed"] == {
        "count": 1,
        "total_ms": 0.0,
        "min_ms": 0.0,
        "max_ms": 0.0,
        "avg_ms": 0.0,
        "incomplete": 1,
    }
    assert "open" not in rollups["span_stats"]
    assert rollups["derived"]["constraint_eval_batches"] == 2


def test_raw_spans_are_capped_but_rollups_count_everything():
    sink = Telemetry(clock=lambda: 0.0, max_spans=10)
    for _ in range(1000):
        with sink.span("constraints.evaluate.batch"):
            pass

    snapshot = sink.snapshot()
    assert len(snapshot["spans"]) == 10
    assert snapshot["rollups"]["total_spans"] == 1000
    assert snapshot["rollups"]["span_stats"]["constraints.evaluate.batch"]["count"] == 1000


def test_max_spans_must_be_positive():
    with pytest.raises(ValueError, match="max_spans"):
        Telemetry(max_spans=0)


def test_derived_violation_rates_and_counter_groups():
    sink = Telemetry()
    sink.counter("constraints.evaluated", 4)
    sink.counter("constraints.violation.hard")
    sink.counter("constraints.violation.soft", 2)
    sink.counter("frontier.considered", 3)

    rollups = sink.rollups()
    assert rollups["derived"]["violation_hard_rate"] == 0.25
    assert rollups["derived"]["violation_soft_rate"] == 0.5
    assert rollups["counter_groups"] == {"constraints": 7, "frontier": 3}


def test_adaptive_summary_keeps_top_three_by_priority():
    sink = Telemetry()
    actions = [{"id": str(p), "priority": p} for p in (10, 90, 50, 70)]
    sink.attach_adaptive_summary(actions=actions, stats={"tighten": 1})
    top = sink.rollups()["adaptive_summary"]["top"]
    assert [a["id"] for a in top] == ["90", "70", "50"]


def test_snapshot_and_reset():
    sink = Telemetry()
    sink.counter("x")
    snapshot = sink.snapshot()
    assert snapshot["schema_version"] == "telemetry.v1"
    assert snapshot["counters"] == {"x": 1}
    sink.reset()
    assert sink.counters() == {}
    assert sink.rollups()["adaptive_summary"] is None


def test_null_telemetry_records_nothing():
    assert resolve(None) is NULL_TELEMETRY
    NULL_TELEMETRY.counter("ignored")
    with NULL_TELEMETRY.span("ignored"):
        pass
    assert NULL_TELEMETRY.counters() == {}
    assert NULL_TELEMETRY.rollups()["total_spans"] == 0
