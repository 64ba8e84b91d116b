from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from typing import Any


class RedactionLevel(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    MINIMAL = "minimal"


_ROLE_LEVELS = {
    "SUPER_ADMIN": RedactionLevel.FULL,
    "ADMIN": RedactionLevel.FULL,
    "ANALYST": RedactionLevel.FULL,
    "AUDITOR": RedactionLevel.PARTIAL,
    "CRM_MANAGER": RedactionLevel.PARTIAL,
    "VIEWER": RedactionLevel.MINIMAL,
    "CRM": RedactionLevel.MINIMAL,
}

_LEVEL_ORDER = {RedactionLevel.MINIMAL: 0, RedactionLevel.PARTIAL: 1, RedactionLevel.FULL: 2}


def default_redaction_for_role(role: str | None) -> RedactionLevel:
    return _ROLE_LEVELS.get((role or "").strip().upper(), RedactionLevel.MINIMAL)


def resolve_level(role: str | None, requested: str | None = None) -> RedactionLevel:
    """Requested level, capped at what the role is allowed to see."""
    ceiling = default_redaction_for_role(role)
    if not requested:
        return ceiling
    try:
        wanted = RedactionLevel(requested.strip().lower())
    except ValueError:
        return ceiling
    return wanted if _LEVEL_ORDER[wanted] <= _LEVEL_ORDER[ceiling] else ceiling


class _Tracker:
    def __init__(self) -> None:
        self.removed_expressions = 0
        self.removed_hashes = 0
        self.trimmed_lineage = False
        self.hidden: list[str] = []

    def hide(self, field_name: str) -> None:
        if field_name not in self.hidden:
            self.hidden.append(field_name)

    def drop_expressions(self, entry: Mapping[str, Any], prefix: str) -> None:
        for key in ("original_expression", "adjusted_expression"):
            if entry.get(key):
                self.removed_expressions += 1
                self.hide(f"{prefix}.{key}")

    def meta(self, level: RedactionLevel, *, include_hashes: bool = True) -> dict[str, Any]:
        out: dict[str, Any] = {
            "level": level.value,
            "removed_expressions": self.removed_expressions,
            "trimmed_lineage": self.trimmed_lineage,
            "hidden_fields": list(self.hidden),
        }
        if include_hashes:
            out["removed_hashes"] = self.removed_hashes
        return out


def redact_snapshot(snapshot: Mapping[str, Any], level: RedactionLevel) -> dict[str, Any]:
    if level == RedactionLevel.FULL:
        return {"snapshot": dict(snapshot), "redaction": {"level": level.value}}

    tracker = _Tracker()
    session = dict(snapshot.get("session") or {})
    for key in ("constraints_hash", "adjusted_hash"):
        if session.pop(key, None):
            tracker.removed_hashes += 1
            tracker.hide(f"session.{key}")

    adjustments: list[dict[str, Any]] = []
    for record in snapshot.get("adjustments") or []:
        tracker.drop_expressions(record, "adjustments")
        if level == RedactionLevel.PARTIAL:
            adjustments.append(
                {
                    "constraint_id": record.get("constraint_id"),
                    "action": record.get("action"),
                    "violation_delta": record.get("violation_delta"),
                    "feasibility_delta": record.get("feasibility_delta"),
                    "estimation_mode": record.get("estimation_mode"),
                }
            )
        else:
            if record.get("violation_delta") is not None or record.get("feasibility_delta") is not None:
                tracker.hide("adjustments.violation_delta")
                tracker.hide("adjustments.feasibility_delta")
            adjustments.append({"constraint_id": record.get("constraint_id"), "action": record.get("action")})

    lineage_src = snapshot.get("lineage")
    lineage: dict[str, Any] | None = None
    if lineage_src:
        tracker.trimmed_lineage = True
        nodes = lineage_src.get("nodes") or []
        edges = lineage_src.get("edges") or []
        if level == RedactionLevel.PARTIAL:
            lineage = {
                "nodes": [{"id": n.get("id")} for n in nodes],
                "edges": [{"from": e.get("from"), "to": e.get("to"), "type": e.get("type")} for e in edges],
                "generated_at": lineage_src.get("generated_at"),
            }
            tracker.hide("lineage.nodes.meta")
        else:
            lineage = {"node_count": len(nodes), "edge_count": len(edges)}
            tracker.hide("lineage.nodes")
            tracker.hide("lineage.edges")

    tracker.hide("telemetry_counters")
    redacted = {
        "schema_version": snapshot.get("schema_version"),
        "session": session,
        "adjustments": adjustments,
        "lineage": lineage,
        "telemetry_counters": {},
    }
    return {"snapshot": redacted, "redaction": tracker.meta(level)}


def redact_diff_result(diff: Mapping[str, Any], level: RedactionLevel) -> dict[str, Any]:
    if level == RedactionLevel.FULL:
        return {"diff": dict(diff), "redaction": {"level": level.value}}

    tracker = _Tracker()

    def _entry(e: Mapping[str, Any]) -> dict[str, Any]:
        tracker.drop_expressions(e, "diff.adjustments")
        out = {"constraint_id": e.get("constraint_id"), "action": e.get("action")}
        if level == RedactionLevel.PARTIAL:
            out.update(
                {
                    "violation_delta": e.get("violation_delta"),
                    "feasibility_delta": e.get("feasibility_delta"),
                    "estimation_mode": e.get("estimation_mode"),
                }
            )
        return out

    def _modified(m: Mapping[str, Any]) -> dict[str, Any]:
        tracker.drop_expressions(m, "diff.adjustments")
        src = m.get("deltas") or {}
        deltas: dict[str, Any] = {
            "action_changed": src.get("action_changed"),
            "estimation_mode_changed": src.get("estimation_mode_changed"),
        }
        out: dict[str, Any] = {"constraint_id": m.get("constraint_id"), "action": m.get("action"), "deltas": deltas}
        if level == RedactionLevel.PARTIAL:
            out["violation_delta"] = m.get("violation_delta")
            out["feasibility_delta"] = m.get("feasibility_delta")
            for key in ("violation_delta_diff", "feasibility_delta_diff"):
                if src.get(key) is not None:
                    deltas[key] = src[key]
        return out

    result = dict(diff)
    adjustments = diff.get("adjustments")
    if adjustments is not None:
        result["adjustments"] = {
            "added": [_entry(e) for e in adjustments.get("added") or []],
            "removed": [_entry(e) for e in adjustments.get("removed") or []],
            "modified": [_modified(m) for m in adjustments.get("modified") or []],
            "unchanged_sample": [],
        }

    lineage = diff.get("lineage")
    if lineage is not None:
        tracker.trimmed_lineage = True
        if level == RedactionLevel.PARTIAL:
            result["lineage"] = {
                **lineage,
                "added_nodes": len(lineage.get("added_nodes") or []),
                "removed_nodes": len(lineage.get("removed_nodes") or []),
            }
            tracker.hide("diff.lineage.added_nodes")
            tracker.hide("diff.lineage.removed_nodes")
        else:
            result["lineage"] = {
                "node_count_delta": lineage.get("node_count_delta"),
                "edge_count_delta": lineage.get("edge_count_delta"),
            }
            tracker.hide("diff.lineage.*")

    return {"diff": result, "redaction": tracker.meta(level, include_hashes=False)}
