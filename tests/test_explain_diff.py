from __future__ import annotations

import asyncio

from conftest import make_constraint
from policy_engine.adaptive_actions import AdaptiveAction, AdaptiveConstraintAction
from policy_engine.explain_diff import adjustment_diff, diff_explainability, diff_snapshots, lineage_diff
from policy_engine.explain_store import ExplainabilityStore
from policy_engine.repositories.explain_snapshots import InMemoryExplainSnapshotsRepository
from policy_engine.simulation import SimulationSample, simulate_adjustments
from policy_engine.trace import start_session


def _snapshot(actions: list[AdaptiveConstraintAction]) -> dict:
    session = start_session()
    simulate_adjustments(
        [
            make_constraint("c_cost", "cost <= 100"),
            make_constraint("c_latency", "latency <= 200"),
        ],
        actions,
        [SimulationSample("s1", {"cost": 95, "latency": 150}), SimulationSample("s2", {"cost": 80, "latency": 190})],
        session=session,
    )
    return session.snapshot()


def _act(cid: str, action: AdaptiveAction, delta: float) -> AdaptiveConstraintAction:
    return AdaptiveConstraintAction(id=cid, action=action, reason="manual", priority=50, suggested_delta=delta)


FROM = [_act("c_cost", AdaptiveAction.TIGHTEN, 0.1)]
TO = [_act("c_cost", AdaptiveAction.TIGHTEN, 0.2), _act("c_latency", AdaptiveAction.RELAX, 0.1)]


def test_adjustment_diff_classifies_records():
    diff = adjustment_diff(_snapshot(FROM), _snapshot(TO))
    assert [e["constraint_id"] for e in diff["added"]] == ["c_latency"]
    assert diff["removed"] == []
    [modified] = diff["modified"]
    assert modified["constraint_id"] == "c_cost"
    assert modified["from"]["adjusted_expression"] == "cost <= 90"
    assert modified["to"]["adjusted_expression"] == "cost <= 80"
    assert modified["deltas"]["expression_changed"] is True
    assert modified["deltas"]["action_changed"] is False


def test_unchanged_records_are_sampled():
    diff = adjustment_diff(_snapshot(FROM), _snapshot(FROM))
    assert diff["modified"] == []
    assert [e["constraint_id"] for e in diff["unchanged_sample"]] == ["c_cost"]


def test_diff_is_symmetric():
    a, b = _snapshot(FROM), _snapshot(TO)
    forward = diff_snapshots(a, b, include_lineage=True)
    backward = diff_snapshots(b, a, include_lineage=True)

    assert [e["constraint_id"] for e in forward["adjustments"]["added"]] == [
        e["constraint_id"] for e in backward["adjustments"]["removed"]
    ]
    assert forward["meta"]["summary"]["adjustment_count_delta"] == -backward["meta"]["summary"]["adjustment_count_delta"]
    assert forward["lineage"]["node_count_delta"] == -backward["lineage"]["node_count_delta"]
    assert forward["lineage"]["added_nodes"] == backward["lineage"]["removed_nodes"]
    assert forward["meta"]["from"]["policy_version_id"] == backward["meta"]["to"]["policy_version_id"]


def test_lineage_diff_reports_affected_constraints():
    lineage = lineage_diff(_snapshot(FROM), _snapshot(TO))
    assert "c_latency" in lineage["affected_constraints"]
    assert "C_c_latency" in lineage["added_nodes"]
    assert lineage["added_edges"] > 0


def test_diff_explainability_reasons():
    store = ExplainabilityStore(InMemoryExplainSnapshotsRepository())
    a, b = _snapshot(FROM), _snapshot(TO)
    asyncio.run(store.persist_snapshot(a))
    pv_a = a["session"]["policy_version_id"]

    assert asyncio.run(diff_explainability(store, None, pv_a)) == {"ok": False, "reason": "missing_from"}
    assert asyncio.run(diff_explainability(store, pv_a, "")) == {"ok": False, "reason": "missing_to"}
    assert asyncio.run(diff_explainability(store, pv_a, pv_a)) == {"ok": False, "reason": "same_version"}
    assert asyncio.run(diff_explainability(store, pv_a, "nope"))["reason"] == "missing_to"

    asyncio.run(store.persist_snapshot(b))
    result = asyncio.run(diff_explainability(store, pv_a, b["session"]["policy_version_id"], include_lineage=True))
    assert result["ok"] is True
    assert "lineage" in result
    assert result["meta"]["summary"]["added_count"] == 1
