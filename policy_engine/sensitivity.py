from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass
from typing import Any

from policy_engine.constraint_dsl import (
    INDETERMINATE_STATUSES,
    EvalStatus,
    EvaluatedConstraintResult,
    Operator,
    ScenarioEvaluation,
    as_number,
)
from policy_engine.runtime_profile import feature_enabled
from policy_engine.stats import floor_percentile, mean, sample_std
from policy_engine.telemetry import Telemetry, resolve

LOW_SUPPORT_THRESHOLD = 0.2


@dataclass(frozen=True)
class ConstraintSensitivity:
    id: str
    violation_rate: float
    support: float
    evaluated: int
    total_samples: int
    violations: int
    normalized_criticality: float
    low_support: bool
    slack_mean: float | None = None
    slack_std: float | None = None
    slack_min: float | None = None
    slack_p10: float | None = None
    slack_p90: float | None = None
    volatility: float | None = None
    stability_score: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def compute_slack(result: EvaluatedConstraintResult) -> float | None:
    """Distance to the bound; positive means margin, negative means overshoot."""
    if result.operator is None or result.value_left is None or result.value_right is None:
        return None
    left = as_number(result.value_left)
    right = as_number(result.value_right)
    if left is None or right is None:
        return None
    if result.operator in (Operator.LT, Operator.LE):
        return right - left
    if result.operator in (Operator.GT, Operator.GE):
        return left - right
    return None


def _sensitivity_for(constraint_id: str, results: list[EvaluatedConstraintResult], total_samples: int) -> ConstraintSensitivity:
    evaluable = [r for r in results if r.status not in INDETERMINATE_STATUSES]
    violations = sum(1 for r in evaluable if r.status == EvalStatus.VIOLATED)
    violation_rate = violations / len(evaluable) if evaluable else 0.0
    support = len(evaluable) / total_samples if total_samples else 0.0

    slacks = [s for s in (compute_slack(r) for r in evaluable) if s is not None]
    if not slacks:
        return ConstraintSensitivity(
            id=constraint_id,
            violation_rate=violation_rate,
            support=support,
            evaluated=len(evaluable),
            total_samples=total_samples,
            violations=violations,
            normalized_criticality=violation_rate,
            low_support=support < LOW_SUPPORT_THRESHOLD,
        )

    ordered = sorted(slacks)
    slack_mean = mean(ordered)
    slack_std = sample_std(ordered)
    volatility = slack_std / (abs(slack_mean) + 1e-9)
    return ConstraintSensitivity(
        id=constraint_id,
        violation_rate=violation_rate,
        support=support,
        evaluated=len(evaluable),
        total_samples=total_samples,
        violations=violations,
        normalized_criticality=violation_rate / (1 + max(0.0, slack_mean)),
        low_support=support < LOW_SUPPORT_THRESHOLD,
        slack_mean=slack_mean,
        slack_std=slack_std,
        slack_min=ordered[0],
        slack_p10=floor_percentile(ordered, 0.1),
        slack_p90=floor_percentile(ordered, 0.9),
        volatility=volatility,
        stability_score=1 - min(1.0, volatility),
    )


def compute_sensitivity(
    samples: Sequence[ScenarioEvaluation],
    *,
    telemetry: Telemetry | None = None,
) -> list[ConstraintSensitivity]:
    """Aggregate per-constraint sensitivity across scenarios, in first-seen order."""
    if not feature_enabled():
        return []
    sink = resolve(telemetry)
    grouped: dict[str, list[EvaluatedConstraintResult]] = {}
    for sample in samples:
        for result in sample.results:
            grouped.setdefault(result.definition.id, []).append(result)

    with sink.span("sensitivity.compute"):
        out = [_sensitivity_for(cid, results, len(samples)) for cid, results in grouped.items()]
    sink.counter("sensitivity.evals", len(out))
    return out
