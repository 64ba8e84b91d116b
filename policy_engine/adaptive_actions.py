from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from policy_engine.constraint_dsl import ConstraintDefinition, ConstraintKind
from policy_engine.runtime_profile import feature_enabled
from policy_engine.sensitivity import ConstraintSensitivity
from policy_engine.telemetry import Telemetry, resolve


class AdaptiveAction(str, Enum):
    TIGHTEN = "TIGHTEN"
    RELAX = "RELAX"
    KEEP = "KEEP"
    FLAG_REVIEW = "FLAG_REVIEW"


@dataclass(frozen=True)
class AdaptiveConfig:
    criticality_high: float = 0.4
    criticality_low: float = 0.05
    stability_high: float = 0.75
    support_low: float = 0.2
    slack_tightenable_mean: float = 15.0
    over_safe_slack_mean: float = 50.0
    hard_relax_min_slack: float = 100.0


DEFAULT_ADAPTIVE_CONFIG = AdaptiveConfig()


@dataclass(frozen=True)
class AdaptiveConstraintAction:
    id: str
    action: AdaptiveAction
    reason: str
    priority: int
    suggested_delta: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action.value,
            "reason": self.reason,
            "priority": self.priority,
            "suggested_delta": self.suggested_delta,
        }


@dataclass(frozen=True)
class AdaptiveSummary:
    actions: list[AdaptiveConstraintAction] = field(default_factory=list)
    stats: dict[str, int] = field(default_factory=lambda: {"tighten": 0, "relax": 0, "keep": 0, "review": 0})
    generated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "actions": [a.to_dict() for a in self.actions],
            "stats": dict(self.stats),
            "generated_at": self.generated_at,
        }


def decide_action(
    definition: ConstraintDefinition,
    sensitivity: ConstraintSensitivity | None,
    cfg: AdaptiveConfig = DEFAULT_ADAPTIVE_CONFIG,
) -> AdaptiveConstraintAction:
    """First matching rule wins; HARD constraints are then guarded against relaxation."""
    cid = definition.id
    if sensitivity is None:
        return AdaptiveConstraintAction(id=cid, action=AdaptiveAction.FLAG_REVIEW, reason="no_sensitivity_data", priority=50)

    crit = sensitivity.normalized_criticality
    slack_mean = sensitivity.slack_mean
    stability = sensitivity.stability_score if sensitivity.stability_score is not None else 0.0
    violated = sensitivity.violation_rate > 0

    if sensitivity.low_support or sensitivity.support < cfg.support_low:
        decided = AdaptiveConstraintAction(id=cid, action=AdaptiveAction.FLAG_REVIEW, reason="low_support", priority=60)
    elif not violated and slack_mean is not None and slack_mean > cfg.over_safe_slack_mean:
        decided = AdaptiveConstraintAction(
            id=cid, action=AdaptiveAction.RELAX, reason="over_safe", priority=40, suggested_delta=-0.05
        )
    elif crit >= cfg.criticality_high:
        decided = AdaptiveConstraintAction(
            id=cid, action=AdaptiveAction.TIGHTEN, reason="high_criticality", priority=90, suggested_delta=0.1
        )
    elif crit < cfg.criticality_low and stability >= cfg.stability_high:
        decided = AdaptiveConstraintAction(
            id=cid, action=AdaptiveAction.RELAX, reason="low_impact_stable", priority=50, suggested_delta=-0.1
        )
    elif slack_mean is not None and 0 < slack_mean < cfg.slack_tightenable_mean and violated:
        decided = AdaptiveConstraintAction(
            id=cid, action=AdaptiveAction.TIGHTEN, reason="narrow_margin", priority=70, suggested_delta=0.05
        )
    else:
        decided = AdaptiveConstraintAction(id=cid, action=AdaptiveAction.KEEP, reason="default", priority=10)

    if (
        definition.kind == ConstraintKind.HARD
        and decided.action == AdaptiveAction.RELAX
        and not (slack_mean is not None and slack_mean > cfg.hard_relax_min_slack)
    ):
        decided = AdaptiveConstraintAction(id=cid, action=AdaptiveAction.FLAG_REVIEW, reason="hard_relax_guard", priority=65)
    return decided


def compute_adaptive_actions(
    definitions: Sequence[ConstraintDefinition],
    sensitivities: Sequence[ConstraintSensitivity],
    cfg: AdaptiveConfig = DEFAULT_ADAPTIVE_CONFIG,
    *,
    telemetry: Telemetry | None = None,
) -> AdaptiveSummary:
    if not feature_enabled():
        return AdaptiveSummary()
    sink = resolve(telemetry)
    by_id = {s.id: s for s in sensitivities}
    actions = [decide_action(d, by_id.get(d.id), cfg) for d in definitions]

    stats = {"tighten": 0, "relax": 0, "keep": 0, "review": 0}
    for item in actions:
        if item.action == AdaptiveAction.TIGHTEN:
            stats["tighten"] += 1
        elif item.action == AdaptiveAction.RELAX:
            stats["relax"] += 1
        elif item.action == AdaptiveAction.KEEP:
            stats["keep"] += 1
        else:
            stats["review"] += 1

    sink.counter("constraints.adaptive.actions", len(actions))
    sink.attach_adaptive_summary(actions=[a.to_dict() for a in actions], stats=stats)
    return AdaptiveSummary(actions=actions, stats=stats)
