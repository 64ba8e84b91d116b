from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass
from typing import Any

from policy_engine.constraint_dsl import ConstraintKind, EvalStatus, ScenarioEvaluation
from policy_engine.runtime_profile import feature_enabled
from policy_engine.stats import floor_percentile, mean, population_std
from policy_engine.telemetry import Telemetry, resolve

ROBUSTNESS_WEIGHTS = {
    "feasible": 0.55,
    "soft_health": 0.15,
    "stability": 0.15,
    "tail": 0.15,
}


@dataclass(frozen=True)
class RobustnessMetrics:
    sample_size: int = 0
    objective_count: int = 0
    feasible_ratio: float = 0.0
    soft_penalty_mean: float = 0.0
    objective_mean: float = 0.0
    objective_std: float = 0.0
    objective_p10: float = 0.0
    objective_p90: float = 0.0
    tail_span_ratio: float = 0.0
    soft_health: float = 0.0
    stability_factor: float = 0.0
    tail_resilience: float = 0.0
    robustness_score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def compute_robustness(
    samples: Sequence[ScenarioEvaluation],
    *,
    telemetry: Telemetry | None = None,
) -> RobustnessMetrics:
    if not feature_enabled() or not samples:
        return RobustnessMetrics()
    sink = resolve(telemetry)

    with sink.span("robustness.compute"):
        feasible = 0
        soft_violations = 0
        objectives: list[float] = []
        for sample in samples:
            if sample.feasible:
                feasible += 1
            soft_violations += sum(
                1
                for r in sample.results
                if r.definition.kind == ConstraintKind.SOFT and r.status == EvalStatus.VIOLATED
            )
            if sample.objective_value is not None:
                objectives.append(float(sample.objective_value))

        n = len(samples)
        objectives.sort()
        objective_mean = mean(objectives)
        objective_std = population_std(objectives)
        denom = max(1e-9, abs(objective_mean))
        p10 = floor_percentile(objectives, 0.1)
        p90 = floor_percentile(objectives, 0.9)

        feasible_ratio = feasible / n
        soft_penalty_mean = soft_violations / n
        soft_health = 1 / (1 + soft_penalty_mean)
        stability_factor = 1 / (1 + objective_std / denom)
        tail_span_ratio = (p90 - p10) / denom
        tail_resilience = 1 / (1 + max(0.0, tail_span_ratio))
        score = (
            ROBUSTNESS_WEIGHTS["feasible"] * feasible_ratio
            + ROBUSTNESS_WEIGHTS["soft_health"] * soft_health
            + ROBUSTNESS_WEIGHTS["stability"] * stability_factor
            + ROBUSTNESS_WEIGHTS["tail"] * tail_resilience
        )

    sink.counter("robustness.samples", n)
    return RobustnessMetrics(
        sample_size=n,
        objective_count=len(objectives),
        feasible_ratio=feasible_ratio,
        soft_penalty_mean=soft_penalty_mean,
        objective_mean=objective_mean,
        objective_std=objective_std,
        objective_p10=p10,
        objective_p90=p90,
        tail_span_ratio=tail_span_ratio,
        soft_health=soft_health,
        stability_factor=stability_factor,
        tail_resilience=tail_resilience,
        robustness_score=score,
    )
