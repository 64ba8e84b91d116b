from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from policy_engine.adaptive_actions import AdaptiveAction, AdaptiveConfig, AdaptiveConstraintAction
from policy_engine.constraint_dsl import ConstraintDefinition, ConstraintKind, Severity
from policy_engine.frontier import AxisSpec, metric_axis


class ConstraintIn(BaseModel):
    id: str = Field(min_length=1)
    version: str = "v1"
    kind: Literal["HARD", "SOFT", "CONDITIONAL", "DYNAMIC"]
    severity: Literal["BLOCK", "WARN", "INFO"] = "WARN"
    expression: str
    description: str | None = None
    activation_predicate: str | None = None
    required_context_keys: list[str] = Field(default_factory=list)

    def to_definition(self) -> ConstraintDefinition:
        return ConstraintDefinition(
            id=self.id,
            version=self.version,
            kind=ConstraintKind(self.kind),
            severity=Severity(self.severity),
            expression=self.expression,
            description=self.description,
            activation_predicate=self.activation_predicate,
            required_context_keys=tuple(self.required_context_keys),
        )


class ScenarioIn(BaseModel):
    scenario_id: str
    metrics: dict[str, Any] | None = None
    objective_value: float | None = None


class AxisIn(BaseModel):
    name: str = Field(min_length=1)
    direction: Literal["MIN", "MAX"]

    def to_spec(self) -> AxisSpec:
        return metric_axis(self.name, self.direction)


class AdaptiveConfigIn(BaseModel):
    criticality_high: float = Field(default=0.4, ge=0)
    criticality_low: float = Field(default=0.05, ge=0)
    stability_high: float = Field(default=0.75, ge=0, le=1)
    support_low: float = Field(default=0.2, ge=0, le=1)
    slack_tightenable_mean: float = Field(default=15.0, ge=0)

    def to_config(self) -> AdaptiveConfig:
        return AdaptiveConfig(**self.model_dump())


class ActionIn(BaseModel):
    id: str
    action: Literal["TIGHTEN", "RELAX", "KEEP", "FLAG_REVIEW"]
    reason: str = "manual"
    priority: int = 0
    suggested_delta: float | None = None

    def to_action(self) -> AdaptiveConstraintAction:
        return AdaptiveConstraintAction(
            id=self.id,
            action=AdaptiveAction(self.action),
            reason=self.reason,
            priority=self.priority,
            suggested_delta=self.suggested_delta,
        )


class FrontierCandidateIn(BaseModel):
    id: str
    metrics: dict[str, Any]


class EvaluateConstraintsRequest(BaseModel):
    constraints: list[ConstraintIn] = Field(min_length=1)
    contexts: list[dict[str, Any]] = Field(min_length=1)


class ScenarioBatchRequest(BaseModel):
    constraints: list[ConstraintIn] = Field(default_factory=list)
    scenarios: list[ScenarioIn] = Field(default_factory=list)


class AdaptiveActionsRequest(ScenarioBatchRequest):
    config: AdaptiveConfigIn | None = None


class FrontierRequest(ScenarioBatchRequest):
    axes: list[AxisIn] = Field(default_factory=list)
    include_diversity: bool = True


class SimulateRequest(BaseModel):
    constraints: list[ConstraintIn] = Field(min_length=1)
    scenarios: list[ScenarioIn] = Field(default_factory=list)
    actions: list[ActionIn] | None = None
    adaptive_config: AdaptiveConfigIn | None = None
    frontier_candidates: list[FrontierCandidateIn] | None = None
    frontier_axes: list[AxisIn] | None = None
    persist: bool = False


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
