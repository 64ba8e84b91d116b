from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from policy_engine.explain_store import ExplainabilityStore
from policy_engine.runtime_profile import feature_enabled

UNCHANGED_SAMPLE_LIMIT = 5


def _entry(record: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "constraint_id": record.get("constraint_id"),
        "action": record.get("action"),
        "original_expression": record.get("original_expression"),
        "adjusted_expression": record.get("adjusted_expression"),
        "violation_delta": record.get("violation_delta"),
        "feasibility_delta": record.get("feasibility_delta"),
        "estimation_mode": record.get("estimation_mode"),
    }


def _number_diff(a: Any, b: Any) -> float | None:
    numeric = (int, float)
    if isinstance(a, numeric) and isinstance(b, numeric) and not isinstance(a, bool) and not isinstance(b, bool):
        d = b - a
        if d != 0:
            return d
    return None


def _first_by_constraint(snapshot: Mapping[str, Any]) -> dict[str, Mapping[str, Any]]:
    out: dict[str, Mapping[str, Any]] = {}
    for record in snapshot.get("adjustments") or []:
        out.setdefault(record.get("constraint_id"), record)
    return out


def adjustment_diff(from_snap: Mapping[str, Any], to_snap: Mapping[str, Any]) -> dict[str, list[dict[str, Any]]]:
    before = _first_by_constraint(from_snap)
    after = _first_by_constraint(to_snap)

    added = [_entry(after[k]) for k in after if k not in before]
    removed = [_entry(before[k]) for k in before if k not in after]
    modified: list[dict[str, Any]] = []
    unchanged: list[dict[str, Any]] = []
    for key, t in after.items():
        f = before.get(key)
        if f is None:
            continue
        expression_changed = (
            f.get("original_expression") != t.get("original_expression")
            or f.get("adjusted_expression") != t.get("adjusted_expression")
        )
        action_changed = f.get("action") != t.get("action")
        estimation_changed = bool(f.get("estimation_mode")) != bool(t.get("estimation_mode"))
        violation_diff = _number_diff(f.get("violation_delta"), t.get("violation_delta"))
        feasibility_diff = _number_diff(f.get("feasibility_delta"), t.get("feasibility_delta"))
        if expression_changed or action_changed or estimation_changed or violation_diff is not None or feasibility_diff is not None:
            modified.append(
                {
                    **_entry(t),
                    "from": _entry(f),
                    "to": _entry(t),
                    "deltas": {
                        "violation_delta_diff": violation_diff,
                        "feasibility_delta_diff": feasibility_diff,
                        "expression_changed": expression_changed,
                        "action_changed": action_changed,
                        "estimation_mode_changed": estimation_changed,
                    },
                }
            )
        elif len(unchanged) < UNCHANGED_SAMPLE_LIMIT:
            unchanged.append(_entry(t))
    return {"added": added, "removed": removed, "modified": modified, "unchanged_sample": unchanged}


def _edge_signature(edge: Mapping[str, Any]) -> str:
    return f"{edge.get('from')}|{edge.get('type')}|{edge.get('to')}"


def lineage_diff(from_snap: Mapping[str, Any], to_snap: Mapping[str, Any]) -> dict[str, Any]:
    from_lineage = from_snap.get("lineage") or {}
    to_lineage = to_snap.get("lineage") or {}
    from_nodes = [n.get("id") for n in from_lineage.get("nodes") or []]
    to_nodes = [n.get("id") for n in to_lineage.get("nodes") or []]
    from_edges = {_edge_signature(e) for e in from_lineage.get("edges") or []}
    to_edges = {_edge_signature(e) for e in to_lineage.get("edges") or []}

    from_node_set, to_node_set = set(from_nodes), set(to_nodes)
    added_nodes = [n for n in to_nodes if n not in from_node_set]
    removed_nodes = [n for n in from_nodes if n not in to_node_set]
    added_edges = sorted(to_edges - from_edges)
    removed_edges = sorted(from_edges - to_edges)

    affected: list[str] = []

    def _collect(node_id: str | None) -> None:
        if node_id and node_id.startswith("C_") and node_id[2:] not in affected:
            affected.append(node_id[2:])

    for node_id in added_nodes + removed_nodes:
        _collect(node_id)
    for sig in added_edges + removed_edges:
        parts = sig.split("|")
        if len(parts) == 3:
            _collect(parts[0])
            _collect(parts[2])

    return {
        "node_count_delta": len(to_nodes) - len(from_nodes),
        "edge_count_delta": len(to_lineage.get("edges") or []) - len(from_lineage.get("edges") or []),
        "added_nodes": added_nodes,
        "removed_nodes": removed_nodes,
        "added_edges": len(added_edges),
        "removed_edges": len(removed_edges),
        "affected_constraints": affected,
    }


def _session_meta(snapshot: Mapping[str, Any]) -> dict[str, Any]:
    session = snapshot.get("session") or {}
    return {
        "policy_version_id": session.get("policy_version_id"),
        "total_adjustments": session.get("total_adjustments"),
        "estimation_used": session.get("estimation_used"),
        "started_at": session.get("started_at"),
        "finished_at": session.get("finished_at"),
    }


def diff_snapshots(
    from_snap: Mapping[str, Any],
    to_snap: Mapping[str, Any],
    *,
    include_lineage: bool = False,
) -> dict[str, Any]:
    adjustments = adjustment_diff(from_snap, to_snap)
    from_session = from_snap.get("session") or {}
    to_session = to_snap.get("session") or {}
    result: dict[str, Any] = {
        "ok": True,
        "meta": {
            "from": _session_meta(from_snap),
            "to": _session_meta(to_snap),
            "summary": {
                "adjustment_count_delta": int(to_session.get("total_adjustments") or 0)
                - int(from_session.get("total_adjustments") or 0),
                "added_count": len(adjustments["added"]),
                "removed_count": len(adjustments["removed"]),
                "modified_count": len(adjustments["modified"]),
                "unchanged_count": len(adjustments["unchanged_sample"]),
                "estimation_state_changed": bool(from_session.get("estimation_used"))
                != bool(to_session.get("estimation_used")),
            },
        },
        "adjustments": adjustments,
    }
    if include_lineage:
        result["lineage"] = lineage_diff(from_snap, to_snap)
    return result


async def diff_explainability(
    store: ExplainabilityStore,
    from_pv: str | None,
    to_pv: str | None,
    *,
    include_lineage: bool = False,
) -> dict[str, Any]:
    if not feature_enabled():
        return {"ok": False, "reason": "feature_flag_disabled"}
    if not from_pv:
        return {"ok": False, "reason": "missing_from"}
    if not to_pv:
        return {"ok": False, "reason": "missing_to"}
    if from_pv == to_pv:
        return {"ok": False, "reason": "same_version"}

    from_full = await store.get_session_full(from_pv)
    if not from_full.get("found"):
        return {"ok": False, "reason": "missing_from"}
    to_full = await store.get_session_full(to_pv)
    if not to_full.get("found"):
        return {"ok": False, "reason": "missing_to"}
    return diff_snapshots(from_full["snapshot"], to_full["snapshot"], include_lineage=include_lineage)
