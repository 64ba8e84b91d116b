from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from policy_engine.adaptive_actions import compute_adaptive_actions
from policy_engine.constraint_dsl import (
    ConstraintDefinition,
    ConstraintKind,
    ScenarioEvaluation,
    Severity,
    evaluate_all,
    summarize_constraint_results,
)
from policy_engine.frontier import compute_diversity, compute_frontier
from policy_engine.robustness import compute_robustness
from policy_engine.scenario_sampler import SamplerConfig, ScenarioStratum, generate_scenarios
from policy_engine.sensitivity import compute_sensitivity
from policy_engine.simulation import SimulationSample, simulate_adjustments
from policy_engine.telemetry import CONSTRAINT_BATCH_SPAN, Telemetry, resolve
from policy_engine.trace import start_session


def evaluate_scenarios(
    definitions: Sequence[ConstraintDefinition],
    scenarios: Iterable[tuple[str, Mapping[str, Any] | None, float | None]],
    *,
    telemetry: Telemetry | None = None,
) -> list[ScenarioEvaluation]:
    """Evaluate every constraint against each ``(scenario_id, metrics, objective)``."""
    sink = resolve(telemetry)
    out: list[ScenarioEvaluation] = []
    for scenario_id, metrics, objective in scenarios:
        factors = dict(metrics or {})
        with sink.span(CONSTRAINT_BATCH_SPAN):
            results = evaluate_all(definitions, factors, telemetry=sink)
        out.append(
            ScenarioEvaluation(
                scenario_id=scenario_id,
                results=tuple(results),
                objective_value=objective,
                factors=factors,
            )
        )
    return out


SMOKE_CONSTRAINTS: tuple[ConstraintDefinition, ...] = (
    ConstraintDefinition(
        id="c_latency",
        version="v1",
        kind=ConstraintKind.HARD,
        severity=Severity.BLOCK,
        expression="latency <= 220",
        description="Latency must stay under threshold",
    ),
    ConstraintDefinition(
        id="c_cost_soft",
        version="v1",
        kind=ConstraintKind.SOFT,
        severity=Severity.WARN,
        expression="cost <= 6000",
        description="Prefer lower cost",
    ),
    ConstraintDefinition(
        id="c_demand_region",
        version="v1",
        kind=ConstraintKind.CONDITIONAL,
        severity=Severity.INFO,
        expression="demand >= 10",
        activation_predicate="region == EU",
        description="Demand minimum in EU",
    ),
    ConstraintDefinition(
        id="c_dynamic_score",
        version="v1",
        kind=ConstraintKind.DYNAMIC,
        severity=Severity.WARN,
        expression="adaptive_score >= 0.7",
        required_context_keys=("adaptive_score",),
    ),
)


def _smoke_objective(factors: Mapping[str, float]) -> float:
    return (100 - factors.get("latency", 0)) + factors.get("demand", 0) - factors.get("cost", 0) / 1000


def run_smoke(*, seed: int, total: int = 30, telemetry: Telemetry | None = None) -> dict[str, Any]:
    """Sampler through finalized policy version on a synthetic batch.

    Half of the ``normal`` stratum is tagged as region EU; ``adaptive_score`` is
    never provided so the DYNAMIC constraint stays INSUFFICIENT_CONTEXT.
    """
    sink = resolve(telemetry)
    with sink.span("sampler.generate"):
        scenarios = generate_scenarios(
            SamplerConfig(
                total=total,
                strata=(ScenarioStratum(id="normal", weight=2), ScenarioStratum(id="high_load", weight=1)),
                tail_focus_ratio=0.2,
            ),
            seed=seed,
        )

    rows: list[tuple[str, dict[str, Any], float]] = []
    for idx, scenario in enumerate(scenarios):
        is_eu = scenario.stratum_id == "normal" and idx % 2 == 0
        metrics: dict[str, Any] = {**scenario.factors, "region": "EU" if is_eu else "NA"}
        rows.append((scenario.scenario_id, metrics, _smoke_objective(scenario.factors)))

    definitions = list(SMOKE_CONSTRAINTS)
    evaluations = evaluate_scenarios(definitions, rows, telemetry=sink)
    summary = summarize_constraint_results(r for e in evaluations for r in e.results)
    robustness = compute_robustness(evaluations, telemetry=sink)
    frontier = compute_frontier(evaluations, telemetry=sink)
    diversity = compute_diversity(frontier.frontier, telemetry=sink)
    sensitivity = compute_sensitivity(evaluations, telemetry=sink)
    adaptive = compute_adaptive_actions(definitions, sensitivity, telemetry=sink)

    session = start_session(telemetry=sink)
    simulation = simulate_adjustments(
        definitions,
        adaptive.actions,
        [SimulationSample(scenario_id=sid, metrics=metrics) for sid, metrics, _ in rows],
        session=session,
        telemetry=sink,
    )
    return {
        "seed": seed,
        "summary": summary,
        "robustness": robustness.to_dict(),
        "frontier": frontier.to_dict(),
        "diversity": diversity,
        "sensitivity": [s.to_dict() for s in sensitivity],
        "adaptive": adaptive.to_dict(),
        "simulation": simulation.to_dict(),
        "trace": session.snapshot(),
        "telemetry": sink.snapshot(),
    }
