from __future__ import annotations

import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from policy_engine.constraint_dsl import ScenarioEvaluation
from policy_engine.runtime_profile import feature_enabled
from policy_engine.telemetry import Telemetry, resolve


class AxisDirection(str, Enum):
    MIN = "MIN"
    MAX = "MAX"


@dataclass(frozen=True)
class AxisSpec:
    name: str
    direction: AxisDirection
    selector: Callable[[Mapping[str, Any]], Any]


def metric_axis(name: str, direction: AxisDirection | str) -> AxisSpec:
    return AxisSpec(name=name, direction=AxisDirection(direction), selector=lambda factors: factors.get(name))


DEFAULT_AXES: tuple[AxisSpec, ...] = (
    metric_axis("latency", AxisDirection.MIN),
    metric_axis("cost", AxisDirection.MIN),
    metric_axis("demand", AxisDirection.MAX),
)


@dataclass(frozen=True)
class FrontierPoint:
    scenario_id: str
    values: dict[str, float]

    def to_dict(self) -> dict[str, Any]:
        return {"scenario_id": self.scenario_id, "values": dict(self.values)}


@dataclass(frozen=True)
class FrontierResult:
    frontier: list[FrontierPoint] = field(default_factory=list)
    dominated_count: int = 0
    considered: int = 0
    feasible_count: int = 0
    discarded_invalid: int = 0
    warnings: list[str] = field(default_factory=list)
    axes_used: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "frontier": [p.to_dict() for p in self.frontier],
            "dominated_count": self.dominated_count,
            "considered": self.considered,
            "feasible_count": self.feasible_count,
            "discarded_invalid": self.discarded_invalid,
            "warnings": list(self.warnings),
            "axes_used": [dict(a) for a in self.axes_used],
        }


def _valid_axis_value(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value):
        return None
    return float(value)


def dominates(a: FrontierPoint, b: FrontierPoint, axes: Sequence[AxisSpec]) -> bool:
    """True when ``a`` is at least as good on every axis and strictly better on one."""
    strictly_better = False
    for axis in axes:
        av = a.values[axis.name]
        bv = b.values[axis.name]
        if axis.direction == AxisDirection.MIN:
            if av > bv:
                return False
            if av < bv:
                strictly_better = True
        else:
            if av < bv:
                return False
            if av > bv:
                strictly_better = True
    return strictly_better


def compute_frontier(
    samples: Sequence[ScenarioEvaluation],
    axes: Sequence[AxisSpec] | None = None,
    *,
    telemetry: Telemetry | None = None,
) -> FrontierResult:
    """Non-dominated feasible points over the given axes.

    Dominance filtering is pairwise and quadratic in the number of distinct
    feasible points, which is fine for a few thousand scenarios.
    """
    if not feature_enabled():
        return FrontierResult()
    sink = resolve(telemetry)
    use_axes = list(axes) if axes else list(DEFAULT_AXES)

    with sink.span("frontier.compute"):
        warnings: list[str] = []
        feasible: list[FrontierPoint] = []
        discarded_invalid = 0
        for sample in samples:
            if not sample.feasible:
                continue
            values: dict[str, float] = {}
            for axis in use_axes:
                value = _valid_axis_value(axis.selector(sample.factors))
                if value is None:
                    break
                values[axis.name] = value
                if axis.name == "cost" and value < 0:
                    warnings.append(f"Negative cost in {sample.scenario_id}")
            else:
                feasible.append(FrontierPoint(scenario_id=sample.scenario_id, values=values))
                continue
            discarded_invalid += 1

        seen: set[tuple[float, ...]] = set()
        distinct: list[FrontierPoint] = []
        for point in feasible:
            key = tuple(point.values[a.name] for a in use_axes)
            if key in seen:
                continue
            seen.add(key)
            distinct.append(point)

        frontier: list[FrontierPoint] = []
        dominated_count = 0
        for i, candidate in enumerate(distinct):
            if any(i != j and dominates(other, candidate, use_axes) for j, other in enumerate(distinct)):
                dominated_count += 1
            else:
                frontier.append(candidate)

    sink.counter("frontier.considered", len(samples))
    sink.counter("frontier.feasible", len(feasible))
    return FrontierResult(
        frontier=frontier,
        dominated_count=dominated_count,
        considered=len(samples),
        feasible_count=len(feasible),
        discarded_invalid=discarded_invalid,
        warnings=warnings,
        axes_used=[{"name": a.name, "direction": a.direction.value} for a in use_axes],
    )


def compute_diversity(
    points: Sequence[FrontierPoint],
    axes: Sequence[AxisSpec] | None = None,
    *,
    telemetry: Telemetry | None = None,
) -> dict[str, Any]:
    if not points:
        return {"point_count": 0, "axis_spreads": [], "pairwise_distance_mean": None, "coverage_score": None}
    use_axes = list(axes) if axes else list(DEFAULT_AXES)

    spreads: list[dict[str, Any]] = []
    for axis in use_axes:
        vals = [p.values[axis.name] for p in points if _valid_axis_value(p.values.get(axis.name)) is not None]
        if not vals:
            continue
        lo, hi = min(vals), max(vals)
        spreads.append({"axis": axis.name, "min": lo, "max": hi, "range": hi - lo})

    pairwise_mean: float | None = None
    if len(points) > 1 and spreads:
        total = 0.0
        count = 0
        for i in range(len(points)):
            for j in range(i + 1, len(points)):
                d2 = 0.0
                for sp in spreads:
                    scale = sp["range"] or 1.0
                    a = (points[i].values[sp["axis"]] - sp["min"]) / scale
                    b = (points[j].values[sp["axis"]] - sp["min"]) / scale
                    d2 += (a - b) ** 2
                total += math.sqrt(d2)
                count += 1
        pairwise_mean = total / count

    coverage = sum(1 for sp in spreads if sp["range"] != 0) / len(spreads) if spreads else None
    resolve(telemetry).counter("frontier.diversity.computed")
    return {
        "point_count": len(points),
        "axis_spreads": spreads,
        "pairwise_distance_mean": pairwise_mean,
        "coverage_score": coverage,
    }
