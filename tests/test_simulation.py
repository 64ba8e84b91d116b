from __future__ import annotations

import pytest

from conftest import make_constraint
from policy_engine.adaptive_actions import AdaptiveAction, AdaptiveConstraintAction
from policy_engine.constraint_dsl import ConstraintKind
from policy_engine.frontier import metric_axis
from policy_engine.simulation import (
    EstimationConfig,
    FrontierCandidate,
    SimulationSample,
    adjust_segment,
    format_literal,
    simulate_adjustments,
)
from policy_engine.telemetry import Telemetry
from policy_engine.trace import start_session

COST = make_constraint("c_cost", "cost <= 100")


def _tighten(cid: str = "c_cost", delta: float | None = 0.1) -> AdaptiveConstraintAction:
    return AdaptiveConstraintAction(
        id=cid, action=AdaptiveAction.TIGHTEN, reason="high_criticality", priority=90, suggested_delta=delta
    )


def test_format_literal_drops_float_noise():
    assert format_literal(100 * 0.9) == "90"
    assert format_literal(12.5) == "12.5"


def test_adjust_segment_scales_by_bound_direction():
    assert adjust_segment("cost <= 100", AdaptiveAction.TIGHTEN, 0.1).adjusted == "cost <= 90"
    assert adjust_segment("cost <= 100", AdaptiveAction.RELAX, -0.1).adjusted == "cost <= 110"
    assert adjust_segment("demand >= 10", AdaptiveAction.TIGHTEN, 0.1).adjusted == "demand >= 11"
    relaxed = adjust_segment("demand >= 10", AdaptiveAction.RELAX, 0.2)
    assert relaxed.adjusted == "demand >= 8"
    assert relaxed.delta_pct == pytest.approx(-0.2)


def test_adjust_segment_skip_reasons():
    assert adjust_segment("(cost <= 1", AdaptiveAction.TIGHTEN, 0.1).reason_skipped == "cannot_parse"
    assert adjust_segment("region <= EU", AdaptiveAction.TIGHTEN, 0.1).reason_skipped == "non_numeric_literal"
    assert adjust_segment("tier == 2", AdaptiveAction.TIGHTEN, 0.1).reason_skipped == "unsupported_operator"
    assert adjust_segment("cost <= 100", AdaptiveAction.TIGHTEN, 0).reason_skipped == "zero_delta"
    assert adjust_segment("cost <= 0", AdaptiveAction.TIGHTEN, 0.1).reason_skipped == "zero_delta"
    assert adjust_segment("cost <= 1e308", AdaptiveAction.RELAX, 1.5).reason_skipped == "non_finite_new_value"


def test_adjust_segment_clamps_negative_results():
    segment = adjust_segment("demand >= 10", AdaptiveAction.RELAX, 1.5)
    assert segment.adjusted == "demand >= 0"
    assert segment.note == "clamped_negative_to_zero"
    assert segment.delta_pct == -1.0


def test_tightening_cost_bound_changes_feasibility_on_real_samples():
    samples = [SimulationSample("s1", {"cost": 95}), SimulationSample("s2", {"cost": 80})]
    session = start_session()
    sink = Telemetry()
    result = simulate_adjustments([COST], [_tighten()], samples, session=session, telemetry=sink)

    [preview] = result.adjustments
    assert preview.applied
    assert preview.adjusted_expression == "cost <= 90"
    assert preview.estimation_mode is False
    assert preview.predicted_violation_delta == 0.5
    assert result.aggregate["feasible_ratio_before"] == 1.0
    assert result.aggregate["feasible_ratio_after"] == 0.5
    assert result.aggregate["feasible_ratio_delta"] == -0.5
    assert result.notes == []
    assert result.policy_version_id == session.meta.policy_version_id

    [record] = session.records
    assert record.violation_delta == 0.5
    assert record.feasibility_delta == -0.5
    assert sink.counters()["adaptive.simulation.runs"] == 1
    assert sink.counters()["adaptive.simulation.adjusted"] == 1


def test_later_action_for_same_constraint_replaces_earlier_one():
    relax = AdaptiveConstraintAction(
        id="c_cost", action=AdaptiveAction.RELAX, reason="low_criticality", priority=40, suggested_delta=-0.1
    )
    samples = [SimulationSample("s1", {"cost": 95}), SimulationSample("s2", {"cost": 105})]
    session = start_session()
    result = simulate_adjustments([COST], [relax, _tighten()], samples, session=session)

    [preview] = result.adjustments
    assert preview.action == AdaptiveAction.TIGHTEN
    assert preview.adjusted_expression == "cost <= 90"
    assert preview.predicted_violation_delta == 0.5

    [record] = session.records
    assert record.action == "TIGHTEN"
    assert record.adjusted_expression == "cost <= 90"
    assert record.violation_delta == 0.5


def test_inputs_are_not_mutated():
    constraints = [COST]
    simulate_adjustments(constraints, [_tighten()], [SimulationSample("s", {"cost": 1})])
    assert constraints[0].expression == "cost <= 100"


def test_estimation_mode_without_samples():
    relax = AdaptiveConstraintAction(
        id="c_soft", action=AdaptiveAction.RELAX, reason="over_safe", priority=40, suggested_delta=-0.05
    )
    soft = make_constraint("c_soft", "latency <= 200", kind=ConstraintKind.SOFT)
    session = start_session()
    result = simulate_adjustments([COST, soft], [_tighten(), relax], [], session=session)

    assert "estimation_mode" in result.notes
    by_id = {p.id: p for p in result.adjustments}
    assert by_id["c_cost"].predicted_violation_delta == pytest.approx(0.03)
    assert by_id["c_soft"].predicted_violation_delta == pytest.approx(-0.01)
    assert all(p.estimation_mode for p in result.adjustments)
    assert result.aggregate["feasible_ratio_before"] is None
    assert session.meta.estimation_used is True
    assert all(r.estimation_mode for r in session.records)


def test_estimation_mode_when_adjusted_metric_is_missing():
    samples = [SimulationSample("s1", {"latency": 5}), SimulationSample("s2", None)]
    result = simulate_adjustments([COST], [_tighten()], samples, estimation=EstimationConfig(0.5, 0.5))
    assert "estimation_mode" in result.notes
    assert result.adjustments[0].predicted_violation_delta == pytest.approx(0.05)


def test_estimation_multipliers_come_from_environment(monkeypatch):
    monkeypatch.setenv("ESTIMATION_TIGHTEN_MULTIPLIER", "1.0")
    result = simulate_adjustments([COST], [_tighten()], [])
    assert result.adjustments[0].predicted_violation_delta == pytest.approx(0.1)


def test_non_adjustable_actions_are_ignored():
    keep = AdaptiveConstraintAction(id="c_cost", action=AdaptiveAction.KEEP, reason="default", priority=10)
    no_delta = _tighten(delta=None)
    result = simulate_adjustments([COST], [keep, no_delta], [SimulationSample("s", {"cost": 1})])
    assert result.adjustments == []
    assert result.notes == ["no_adjustable_constraints"]


def test_missing_definition_is_not_applied():
    result = simulate_adjustments([COST], [_tighten("ghost")], [SimulationSample("s", {"cost": 1})])
    [preview] = result.adjustments
    assert preview.applied is False
    assert preview.estimation_mode is True
    assert "no_adjustable_constraints" in result.notes


def test_mixed_expression_keeps_unadjustable_segments():
    definition = make_constraint("mix", "cost <= 100 AND region == EU")
    result = simulate_adjustments(
        [definition], [_tighten("mix")], [SimulationSample("s", {"cost": 95, "region": "EU"})]
    )
    [preview] = result.adjustments
    assert preview.adjusted_expression == "cost <= 90 AND region == EU"
    assert [s.reason_skipped for s in preview.segments] == [None, "non_numeric_literal"]


def test_frontier_candidates_compare_before_and_after():
    candidates = [
        FrontierCandidate("a", {"cost": 95, "demand": 50}),
        FrontierCandidate("b", {"cost": 80, "demand": 10}),
    ]
    axes = [metric_axis("cost", "MIN"), metric_axis("demand", "MAX")]
    result = simulate_adjustments(
        [COST],
        [_tighten()],
        [SimulationSample("s", {"cost": 50})],
        frontier_candidates=candidates,
        frontier_axes=axes,
    )
    assert result.aggregate["frontier_size_before"] == 2
    assert result.aggregate["frontier_size_after"] == 1
    assert result.aggregate["frontier_size_delta"] == -1
    assert result.aggregate["diversity_after"]["point_count"] == 1


def test_frontier_axes_without_candidates_are_noted():
    result = simulate_adjustments(
        [COST], [_tighten()], [SimulationSample("s", {"cost": 50})], frontier_axes=[metric_axis("cost", "MIN")]
    )
    assert "missing_frontier_candidates" in result.notes
    assert result.aggregate["frontier_size_before"] is None


def test_feature_flag_disabled(monkeypatch):
    monkeypatch.setenv("PRESCRIPTIVE_ROBUST_V1", "false")
    result = simulate_adjustments([COST], [_tighten()], [])
    assert result.reason == "feature_flag_disabled"
    assert result.adjustments == []
