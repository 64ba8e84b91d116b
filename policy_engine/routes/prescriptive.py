from __future__ import annotations

from fastapi import APIRouter, Request

from policy_engine.adaptive_actions import DEFAULT_ADAPTIVE_CONFIG, compute_adaptive_actions
from policy_engine.constraint_dsl import ScenarioEvaluation, evaluate_all, summarize_constraint_results
from policy_engine.frontier import compute_diversity, compute_frontier
from policy_engine.pipeline import evaluate_scenarios
from policy_engine.robustness import compute_robustness
from policy_engine.routes._deps import trace_id_from_request
from policy_engine.runtime_profile import feature_enabled
from policy_engine.schemas import (
    AdaptiveActionsRequest,
    EvaluateConstraintsRequest,
    FrontierRequest,
    ScenarioBatchRequest,
    SimulateRequest,
    success_envelope,
)
from policy_engine.sensitivity import compute_sensitivity
from policy_engine.simulation import FrontierCandidate, SimulationSample, simulate_adjustments
from policy_engine.state import explain_store
from policy_engine.telemetry import CONSTRAINT_BATCH_SPAN, telemetry
from policy_engine.trace import start_session

router = APIRouter(prefix="/api/v1/prescriptive", tags=["prescriptive"])


def _disabled(request: Request) -> dict[str, object]:
    return success_envelope({"reason": "feature_flag_disabled"}, trace_id_from_request(request))


def _evaluations(payload: ScenarioBatchRequest) -> list[ScenarioEvaluation]:
    definitions = [c.to_definition() for c in payload.constraints]
    return evaluate_scenarios(
        definitions,
        ((s.scenario_id, s.metrics, s.objective_value) for s in payload.scenarios),
        telemetry=telemetry,
    )


@router.post("/constraints/evaluate")
def evaluate_constraints(payload: EvaluateConstraintsRequest, request: Request):
    if not feature_enabled():
        return _disabled(request)
    definitions = [c.to_definition() for c in payload.constraints]
    items = []
    every = []
    for idx, context in enumerate(payload.contexts):
        with telemetry.span(CONSTRAINT_BATCH_SPAN):
            results = evaluate_all(definitions, context, telemetry=telemetry)
        every.extend(results)
        items.append({"context_index": idx, "results": [r.to_dict() for r in results]})
    data = {"items": items, "summary": summarize_constraint_results(every)}
    return success_envelope(data, trace_id_from_request(request))


@router.post("/sensitivity")
def sensitivity(payload: ScenarioBatchRequest, request: Request):
    if not feature_enabled():
        return _disabled(request)
    items = compute_sensitivity(_evaluations(payload), telemetry=telemetry)
    return success_envelope({"items": [s.to_dict() for s in items]}, trace_id_from_request(request))


@router.post("/robustness")
def robustness(payload: ScenarioBatchRequest, request: Request):
    if not feature_enabled():
        return _disabled(request)
    metrics = compute_robustness(_evaluations(payload), telemetry=telemetry)
    return success_envelope(metrics.to_dict(), trace_id_from_request(request))


@router.post("/adaptive-actions")
def adaptive_actions(payload: AdaptiveActionsRequest, request: Request):
    if not feature_enabled():
        return _disabled(request)
    sens = compute_sensitivity(_evaluations(payload), telemetry=telemetry)
    cfg = payload.config.to_config() if payload.config else DEFAULT_ADAPTIVE_CONFIG
    summary = compute_adaptive_actions(
        [c.to_definition() for c in payload.constraints],
        sens,
        cfg,
        telemetry=telemetry,
    )
    data = {"sensitivity": [s.to_dict() for s in sens], **summary.to_dict()}
    return success_envelope(data, trace_id_from_request(request))


@router.post("/frontier")
def frontier(payload: FrontierRequest, request: Request):
    if not feature_enabled():
        return _disabled(request)
    axes = [a.to_spec() for a in payload.axes] or None
    result = compute_frontier(_evaluations(payload), axes, telemetry=telemetry)
    data = result.to_dict()
    if payload.include_diversity:
        data["diversity"] = compute_diversity(result.frontier, axes, telemetry=telemetry)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/simulate")
async def simulate(payload: SimulateRequest, request: Request):
    if not feature_enabled():
        return _disabled(request)
    definitions = [c.to_definition() for c in payload.constraints]
    if payload.actions is not None:
        actions = [a.to_action() for a in payload.actions]
    else:
        sens = compute_sensitivity(
            evaluate_scenarios(
                definitions,
                ((s.scenario_id, s.metrics, s.objective_value) for s in payload.scenarios if s.metrics is not None),
                telemetry=telemetry,
            ),
            telemetry=telemetry,
        )
        cfg = payload.adaptive_config.to_config() if payload.adaptive_config else DEFAULT_ADAPTIVE_CONFIG
        actions = compute_adaptive_actions(definitions, sens, cfg, telemetry=telemetry).actions

    session = start_session(telemetry=telemetry)
    result = simulate_adjustments(
        definitions,
        actions,
        [SimulationSample(scenario_id=s.scenario_id, metrics=s.metrics) for s in payload.scenarios],
        frontier_candidates=(
            [FrontierCandidate(id=c.id, metrics=c.metrics) for c in payload.frontier_candidates]
            if payload.frontier_candidates is not None
            else None
        ),
        frontier_axes=[a.to_spec() for a in payload.frontier_axes] if payload.frontier_axes else None,
        session=session,
        telemetry=telemetry,
    )
    snapshot = session.snapshot()
    data = {"simulation": result.to_dict(), "trace": snapshot, "persist": None}
    if payload.persist:
        data["persist"] = await explain_store.persist_snapshot(snapshot)
    return success_envelope(data, trace_id_from_request(request))


@router.get("/telemetry")
def telemetry_snapshot(request: Request):
    return success_envelope(telemetry.snapshot(), trace_id_from_request(request))
