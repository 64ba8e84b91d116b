from __future__ import annotations

from conftest import make_constraint
from policy_engine.adaptive_actions import (
    AdaptiveAction,
    AdaptiveConfig,
    compute_adaptive_actions,
    decide_action,
)
from policy_engine.constraint_dsl import ConstraintKind
from policy_engine.sensitivity import ConstraintSensitivity
from policy_engine.telemetry import Telemetry


def _sens(
    cid: str = "c1",
    *,
    violation_rate: float = 0.0,
    support: float = 1.0,
    criticality: float | None = None,
    slack_mean: float | None = None,
    stability: float | None = 0.5,
) -> ConstraintSensitivity:
    return ConstraintSensitivity(
        id=cid,
        violation_rate=violation_rate,
        support=support,
        evaluated=10,
        total_samples=10,
        violations=int(violation_rate * 10),
        normalized_criticality=violation_rate if criticality is None else criticality,
        low_support=support < 0.2,
        slack_mean=slack_mean,
        stability_score=stability,
    )


SOFT = make_constraint("c1", "cost <= 100", kind=ConstraintKind.SOFT)
HARD = make_constraint("c1", "cost <= 100")


def test_missing_sensitivity_flags_review():
    decided = decide_action(SOFT, None)
    assert decided.action == AdaptiveAction.FLAG_REVIEW
    assert decided.reason == "no_sensitivity_data"


def test_low_support_wins_over_everything():
    decided = decide_action(SOFT, _sens(violation_rate=0.9, support=0.1))
    assert decided.action == AdaptiveAction.FLAG_REVIEW
    assert decided.reason == "low_support"


def test_over_safe_soft_constraint_relaxes():
    decided = decide_action(SOFT, _sens(slack_mean=60))
    assert decided.action == AdaptiveAction.RELAX
    assert decided.reason == "over_safe"
    assert decided.suggested_delta == -0.05


def test_hard_relax_guard_requires_wide_slack():
    guarded = decide_action(HARD, _sens(slack_mean=60))
    assert guarded.action == AdaptiveAction.FLAG_REVIEW
    assert guarded.reason == "hard_relax_guard"

    allowed = decide_action(HARD, _sens(slack_mean=150))
    assert allowed.action == AdaptiveAction.RELAX


def test_high_criticality_tightens():
    decided = decide_action(SOFT, _sens(violation_rate=0.5, slack_mean=0))
    assert decided.action == AdaptiveAction.TIGHTEN
    assert decided.reason == "high_criticality"
    assert decided.suggested_delta == 0.1
    assert decided.priority == 90


def test_low_impact_stable_relaxes():
    decided = decide_action(SOFT, _sens(violation_rate=0.01, slack_mean=5, stability=0.9))
    assert decided.action == AdaptiveAction.RELAX
    assert decided.reason == "low_impact_stable"


def test_narrow_margin_tightens():
    decided = decide_action(SOFT, _sens(violation_rate=0.1, slack_mean=5, stability=0.5))
    assert decided.action == AdaptiveAction.TIGHTEN
    assert decided.reason == "narrow_margin"
    assert decided.suggested_delta == 0.05


def test_default_keeps():
    decided = decide_action(SOFT, _sens(violation_rate=0.1, slack_mean=30))
    assert decided.action == AdaptiveAction.KEEP
    assert decided.suggested_delta is None


def test_custom_thresholds_change_the_decision():
    cfg = AdaptiveConfig(criticality_high=0.05)
    decided = decide_action(SOFT, _sens(violation_rate=0.1, slack_mean=30), cfg)
    assert decided.action == AdaptiveAction.TIGHTEN


def test_compute_adaptive_actions_counts_and_attaches_summary():
    definitions = [
        make_constraint("a", "x <= 1", kind=ConstraintKind.SOFT),
        make_constraint("b", "y <= 1", kind=ConstraintKind.SOFT),
        make_constraint("c", "z <= 1", kind=ConstraintKind.SOFT),
    ]
    sens = [_sens("a", violation_rate=0.5, slack_mean=0), _sens("b", slack_mean=30, violation_rate=0.1)]
    sink = Telemetry()
    summary = compute_adaptive_actions(definitions, sens, telemetry=sink)

    assert [a.action for a in summary.actions] == [
        AdaptiveAction.TIGHTEN,
        AdaptiveAction.KEEP,
        AdaptiveAction.FLAG_REVIEW,
    ]
    assert summary.stats == {"tighten": 1, "relax": 0, "keep": 1, "review": 1}
    assert sink.counters()["constraints.adaptive.actions"] == 3
    attached = sink.rollups()["adaptive_summary"]
    assert attached["top"][0]["id"] == "a"
    assert attached["stats"]["tighten"] == 1
