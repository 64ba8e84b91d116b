from __future__ import annotations

import dataclasses
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from policy_engine.adaptive_actions import AdaptiveAction, AdaptiveConstraintAction
from policy_engine.constraint_dsl import (
    INDETERMINATE_STATUSES,
    AtomicClause,
    ConstraintDefinition,
    ConstraintKind,
    EvalStatus,
    EvaluatedConstraintResult,
    ParseError,
    ScenarioEvaluation,
    evaluate_constraint,
    parse_clause,
    referenced_metrics,
    split_segments,
)
from policy_engine.frontier import AxisSpec, compute_diversity, compute_frontier
from policy_engine.runtime_profile import env_float, feature_enabled
from policy_engine.telemetry import Telemetry, resolve
from policy_engine.trace import AdjustedConstraintSegment, TraceSession

ADJUSTABLE_ACTIONS = (AdaptiveAction.TIGHTEN, AdaptiveAction.RELAX)


@dataclass(frozen=True)
class EstimationConfig:
    """Violation-delta heuristic used when samples cannot be re-evaluated."""

    tighten_multiplier: float = 0.3
    relax_multiplier: float = 0.2

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EstimationConfig":
        return cls(
            tighten_multiplier=env_float("ESTIMATION_TIGHTEN_MULTIPLIER", 0.3, environ),
            relax_multiplier=env_float("ESTIMATION_RELAX_MULTIPLIER", 0.2, environ),
        )


@dataclass(frozen=True)
class SimulationSample:
    scenario_id: str
    metrics: Mapping[str, Any] | None


@dataclass(frozen=True)
class FrontierCandidate:
    id: str
    metrics: Mapping[str, Any]


@dataclass(frozen=True)
class AdjustedConstraintPreview:
    id: str
    original_expression: str
    action: AdaptiveAction
    suggested_delta: float | None
    applied: bool
    estimation_mode: bool
    adjusted_expression: str | None = None
    segments: tuple[AdjustedConstraintSegment, ...] = ()
    predicted_violation_delta: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "original_expression": self.original_expression,
            "adjusted_expression": self.adjusted_expression,
            "segments": [s.to_dict() for s in self.segments],
            "action": self.action.value,
            "suggested_delta": self.suggested_delta,
            "applied": self.applied,
            "estimation_mode": self.estimation_mode,
            "predicted_violation_delta": self.predicted_violation_delta,
        }


@dataclass(frozen=True)
class SimulationResult:
    adjustments: list[AdjustedConstraintPreview] = field(default_factory=list)
    aggregate: dict[str, Any] = field(default_factory=dict)
    notes: list[str] = field(default_factory=list)
    reason: str | None = None
    policy_version_id: str | None = None
    generated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "adjustments": [a.to_dict() for a in self.adjustments],
            "aggregate": dict(self.aggregate),
            "notes": list(self.notes),
            "reason": self.reason,
            "policy_version_id": self.policy_version_id,
            "generated_at": self.generated_at,
        }


def format_literal(value: float) -> str:
    rounded = round(value, 9)
    if rounded == int(rounded):
        return str(int(rounded))
    return format(rounded, ".12g")


def _scale(old_value: float, clause: AtomicClause, delta: float, action: AdaptiveAction) -> float:
    if clause.op.is_upper_bound:
        factor = 1 - delta if action == AdaptiveAction.TIGHTEN else 1 + delta
    else:
        factor = 1 + delta if action == AdaptiveAction.TIGHTEN else 1 - delta
    return old_value * factor


def adjust_segment(segment: str, action: AdaptiveAction, suggested_delta: float) -> AdjustedConstraintSegment:
    """Rescale one ``metric OP literal`` segment; anything else is left verbatim with a skip reason."""
    text = segment.strip()
    clause = parse_clause(text)
    if isinstance(clause, ParseError):
        return AdjustedConstraintSegment(original=text, reason_skipped="cannot_parse")
    old_value = clause.numeric_literal
    if old_value is None:
        return AdjustedConstraintSegment(original=text, reason_skipped="non_numeric_literal", operator=clause.op.value)
    if not (clause.op.is_upper_bound or clause.op.is_lower_bound):
        return AdjustedConstraintSegment(original=text, reason_skipped="unsupported_operator", operator=clause.op.value)

    delta = abs(suggested_delta)
    new_value = _scale(old_value, clause, delta, action)
    if delta == 0 or new_value == old_value:
        return AdjustedConstraintSegment(
            original=text, reason_skipped="zero_delta", operator=clause.op.value, old_value=old_value, new_value=old_value, delta_pct=0.0
        )
    if not math.isfinite(new_value):
        return AdjustedConstraintSegment(
            original=text, reason_skipped="non_finite_new_value", operator=clause.op.value, old_value=old_value
        )
    note = None
    if new_value < 0 <= old_value:
        new_value = 0.0
        note = "clamped_negative_to_zero"
    return AdjustedConstraintSegment(
        original=text,
        adjusted=f"{clause.metric} {clause.op.value} {format_literal(new_value)}",
        operator=clause.op.value,
        old_value=old_value,
        new_value=new_value,
        delta_pct=(new_value - old_value) / old_value if old_value != 0 else 0.0,
        note=note,
    )


def preview_adjustment(definition: ConstraintDefinition | None, act: AdaptiveConstraintAction) -> AdjustedConstraintPreview:
    if definition is None:
        return AdjustedConstraintPreview(
            id=act.id,
            original_expression="",
            action=act.action,
            suggested_delta=act.suggested_delta,
            applied=False,
            estimation_mode=True,
        )
    segments = tuple(adjust_segment(seg, act.action, act.suggested_delta or 0.0) for seg in split_segments(definition.expression))
    applied = any(s.adjusted is not None for s in segments)
    adjusted_expression = " AND ".join(s.adjusted or s.original for s in segments) if applied else None
    return AdjustedConstraintPreview(
        id=act.id,
        original_expression=definition.expression,
        adjusted_expression=adjusted_expression,
        segments=segments,
        action=act.action,
        suggested_delta=act.suggested_delta,
        applied=applied,
        estimation_mode=False,
    )


def _feasible_ratio(rows: Sequence[Sequence[EvaluatedConstraintResult]]) -> float:
    if not rows:
        return 0.0
    return sum(1 for row in rows if not any(r.is_hard_violation for r in row)) / len(rows)


def _needs_estimation(samples: Sequence[SimulationSample], adjusted: Sequence[ConstraintDefinition]) -> bool:
    if not samples:
        return True
    needed: set[str] = set()
    for definition in adjusted:
        needed |= referenced_metrics(definition.expression)
    for sample in samples:
        if sample.metrics is None:
            return True
        if any(sample.metrics.get(metric) is None for metric in needed):
            return True
    return False


def _passes_hard_constraints(metrics: Mapping[str, Any], definitions: Sequence[ConstraintDefinition]) -> bool:
    for definition in definitions:
        if definition.kind != ConstraintKind.HARD:
            continue
        if evaluate_constraint(definition, metrics).status == EvalStatus.VIOLATED:
            return False
    return True


def _numeric_delta(before: Mapping[str, Any], after: Mapping[str, Any]) -> dict[str, float]:
    out: dict[str, float] = {}
    for key, vb in before.items():
        va = after.get(key)
        if isinstance(vb, (int, float)) and isinstance(va, (int, float)) and not isinstance(vb, bool):
            out[key] = va - vb
    return out


def simulate_adjustments(
    constraints: Sequence[ConstraintDefinition],
    actions: Sequence[AdaptiveConstraintAction],
    samples: Sequence[SimulationSample],
    *,
    frontier_candidates: Sequence[FrontierCandidate] | None = None,
    frontier_axes: Sequence[AxisSpec] | None = None,
    session: TraceSession | None = None,
    estimation: EstimationConfig | None = None,
    telemetry: Telemetry | None = None,
) -> SimulationResult:
    """What-if preview of TIGHTEN/RELAX actions without mutating the inputs.

    With a ``session`` every applied adjustment is recorded, deltas are
    backfilled and the policy version is finalized before returning.
    """
    if not feature_enabled():
        return SimulationResult(notes=["feature_flag_disabled"], reason="feature_flag_disabled")
    sink = resolve(telemetry)
    estimation = estimation or EstimationConfig.from_env()
    notes: list[str] = []

    by_id = {c.id: c for c in constraints}
    actionable = [
        a
        for a in actions
        if a.action in ADJUSTABLE_ACTIONS and isinstance(a.suggested_delta, (int, float)) and not isinstance(a.suggested_delta, bool)
    ]
    # A later action for the same constraint replaces the earlier one.
    actionable = list({a.id: a for a in actionable}.values())
    previews = [preview_adjustment(by_id.get(a.id), a) for a in actionable]
    priorities = {a.id: a.priority for a in actionable}

    if session is not None:
        for preview in previews:
            if preview.applied:
                session.record_adjustment(
                    constraint_id=preview.id,
                    action=preview.action.value,
                    original_expression=preview.original_expression,
                    adjusted_expression=preview.adjusted_expression,
                    segments=preview.segments,
                    priority=priorities.get(preview.id),
                )

    if not any(p.applied for p in previews):
        notes.append("no_adjustable_constraints")

    applied_by_id = {p.id: p for p in previews if p.applied and p.adjusted_expression}
    adjusted_constraints = [
        dataclasses.replace(c, expression=applied_by_id[c.id].adjusted_expression) if c.id in applied_by_id else c
        for c in constraints
    ]

    feasible_before: float | None = None
    feasible_after: float | None = None
    if _needs_estimation(samples, [c for c in adjusted_constraints if c.id in applied_by_id]):
        notes.append("estimation_mode")
        estimated: list[AdjustedConstraintPreview] = []
        for preview in previews:
            predicted = preview.predicted_violation_delta
            if preview.applied:
                d = abs(preview.suggested_delta or 0.0)
                if preview.action == AdaptiveAction.TIGHTEN:
                    predicted = estimation.tighten_multiplier * d
                else:
                    predicted = -estimation.relax_multiplier * d
            estimated.append(dataclasses.replace(preview, estimation_mode=True, predicted_violation_delta=predicted))
        previews = estimated
        if session is not None:
            session.mark_all_estimation()
    else:
        with sink.span("simulation.reevaluate"):
            baseline_rows: list[list[EvaluatedConstraintResult]] = []
            adjusted_rows: list[list[EvaluatedConstraintResult]] = []
            for sample in samples:
                metrics = sample.metrics or {}
                baseline = [evaluate_constraint(c, metrics, telemetry=sink) for c in constraints]
                adjusted = [
                    evaluate_constraint(adj, metrics, telemetry=sink) if adj.id in applied_by_id else base
                    for adj, base in zip(adjusted_constraints, baseline)
                ]
                baseline_rows.append(baseline)
                adjusted_rows.append(adjusted)
        feasible_before = _feasible_ratio(baseline_rows)
        feasible_after = _feasible_ratio(adjusted_rows)

        index = {c.id: i for i, c in enumerate(constraints)}
        updated: list[AdjustedConstraintPreview] = []
        for preview in previews:
            if not preview.applied:
                updated.append(preview)
                continue
            col = index[preview.id]
            evaluable = viol_before = viol_after = 0
            for base_row, adj_row in zip(baseline_rows, adjusted_rows):
                if base_row[col].status in INDETERMINATE_STATUSES:
                    continue
                evaluable += 1
                viol_before += base_row[col].status == EvalStatus.VIOLATED
                viol_after += adj_row[col].status == EvalStatus.VIOLATED
            predicted = (viol_after - viol_before) / evaluable if evaluable else None
            updated.append(dataclasses.replace(preview, predicted_violation_delta=predicted))
        previews = updated

    aggregate: dict[str, Any] = {
        "feasible_ratio_before": feasible_before,
        "feasible_ratio_after": feasible_after,
        "feasible_ratio_delta": (
            feasible_after - feasible_before if feasible_before is not None and feasible_after is not None else None
        ),
        "frontier_size_before": None,
        "frontier_size_after": None,
        "frontier_size_delta": None,
        "diversity_before": None,
        "diversity_after": None,
        "diversity_delta": None,
    }
    if frontier_candidates is not None:
        base_points = [
            ScenarioEvaluation(scenario_id=c.id, results=(), factors=c.metrics)
            for c in frontier_candidates
            if _passes_hard_constraints(c.metrics, constraints)
        ]
        adj_points = [
            ScenarioEvaluation(scenario_id=c.id, results=(), factors=c.metrics)
            for c in frontier_candidates
            if _passes_hard_constraints(c.metrics, adjusted_constraints)
        ]
        before = compute_frontier(base_points, frontier_axes, telemetry=sink)
        after = compute_frontier(adj_points, frontier_axes, telemetry=sink)
        diversity_before = compute_diversity(before.frontier, frontier_axes, telemetry=sink)
        diversity_after = compute_diversity(after.frontier, frontier_axes, telemetry=sink)
        aggregate.update(
            {
                "frontier_size_before": len(before.frontier),
                "frontier_size_after": len(after.frontier),
                "frontier_size_delta": len(after.frontier) - len(before.frontier),
                "diversity_before": diversity_before,
                "diversity_after": diversity_after,
                "diversity_delta": _numeric_delta(diversity_before, diversity_after),
            }
        )
    elif frontier_axes:
        notes.append("missing_frontier_candidates")

    sink.counter("adaptive.simulation.runs")
    sink.counter("adaptive.simulation.adjusted", sum(1 for p in previews if p.applied))

    policy_version_id = None
    if session is not None:
        feasibility_delta = aggregate["feasible_ratio_delta"]
        session.backfill_deltas(
            {
                p.id: {"feasibility_delta": feasibility_delta, "violation_delta": p.predicted_violation_delta}
                for p in previews
                if p.applied
            }
        )
        policy_version_id = session.finalize_policy_version([(c.id, c.expression) for c in constraints])

    return SimulationResult(
        adjustments=previews,
        aggregate=aggregate,
        notes=notes,
        policy_version_id=policy_version_id,
    )
