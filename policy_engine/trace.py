from __future__ import annotations

import dataclasses
import hashlib
import logging
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from policy_engine.telemetry import Telemetry, resolve

logger = logging.getLogger(__name__)

EXPLAIN_SCHEMA_VERSION = "explain.v1"


class NodeKind(str, Enum):
    CONSTRAINT = "CONSTRAINT"
    SEGMENT = "SEGMENT"
    ACTION = "ACTION"
    EFFECT = "EFFECT"


class EdgeKind(str, Enum):
    HAS_SEGMENT = "HAS_SEGMENT"
    APPLIED_AS = "APPLIED_AS"
    RESULTED_IN = "RESULTED_IN"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def content_hash(pairs: Iterable[tuple[str, str]]) -> str:
    """sha256 over sorted ``id|expression`` lines joined by newlines."""
    return sha256_hex("\n".join(sorted(f"{cid}|{expr}" for cid, expr in pairs)))


def derive_policy_version_id(constraints_hash: str, adjusted_hash: str) -> str:
    return sha256_hex(f"{constraints_hash}:{adjusted_hash}")[:24]


@dataclass(frozen=True)
class AdjustedConstraintSegment:
    original: str
    adjusted: str | None = None
    reason_skipped: str | None = None
    operator: str | None = None
    old_value: float | None = None
    new_value: float | None = None
    delta_pct: float | None = None
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class TraceAdjustmentRecord:
    record_id: str
    session_id: str
    ts: str
    constraint_id: str
    action: str
    original_expression: str
    adjusted_expression: str | None
    segments: tuple[AdjustedConstraintSegment, ...] = ()
    feasibility_delta: float | None = None
    violation_delta: float | None = None
    estimation_mode: bool = False
    notes: tuple[str, ...] = ()
    priority: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "session_id": self.session_id,
            "ts": self.ts,
            "constraint_id": self.constraint_id,
            "action": self.action,
            "original_expression": self.original_expression,
            "adjusted_expression": self.adjusted_expression,
            "segments": [s.to_dict() for s in self.segments],
            "feasibility_delta": self.feasibility_delta,
            "violation_delta": self.violation_delta,
            "estimation_mode": self.estimation_mode,
            "notes": list(self.notes),
            "priority": self.priority,
        }


@dataclass
class TraceSessionMeta:
    session_id: str
    started_at: str
    finished_at: str | None = None
    policy_version_id: str | None = None
    constraints_hash: str | None = None
    adjusted_hash: str | None = None
    total_adjustments: int = 0
    estimation_used: bool = False

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class LineageNode:
    id: str
    kind: NodeKind
    ref_id: str | None = None
    meta: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "kind": self.kind.value, "ref_id": self.ref_id, "meta": self.meta}


@dataclass(frozen=True)
class LineageEdge:
    source: str
    target: str
    type: EdgeKind

    def to_dict(self) -> dict[str, Any]:
        return {"from": self.source, "to": self.target, "type": self.type.value}


@dataclass(frozen=True)
class LineageGraph:
    nodes: list[LineageNode] = field(default_factory=list)
    edges: list[LineageEdge] = field(default_factory=list)
    generated_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "generated_at": self.generated_at,
        }


def record_id_for(*, constraint_id: str, action: str, original_expression: str, adjusted_expression: str | None) -> str:
    payload = "|".join([constraint_id, action, original_expression, adjusted_expression or ""])
    return "tr_" + sha256_hex(payload)[:16]


def _mean_delta_pct(segments: Sequence[AdjustedConstraintSegment]) -> float | None:
    values = [s.delta_pct for s in segments if s.delta_pct is not None and s.adjusted is not None]
    if not values:
        return None
    return sum(values) / len(values)


class TraceSession:
    """One policy-evaluation run: adjustment records plus the derived policy version.

    Records are immutable; delta backfill replaces them. After
    ``finalize_policy_version`` the session is closed and further writes are
    ignored.
    """

    def __init__(self, *, telemetry: Telemetry | None = None, session_id: str | None = None) -> None:
        self._telemetry = resolve(telemetry)
        self.meta = TraceSessionMeta(
            session_id=session_id or f"ts_{uuid.uuid4().hex[:12]}",
            started_at=_utcnow_iso(),
        )
        self._records: list[TraceAdjustmentRecord] = []
        self._telemetry.counter("explain.sessions.started")

    @property
    def session_id(self) -> str:
        return self.meta.session_id

    @property
    def finalized(self) -> bool:
        return self.meta.policy_version_id is not None

    @property
    def records(self) -> list[TraceAdjustmentRecord]:
        return list(self._records)

    def record_adjustment(
        self,
        *,
        constraint_id: str,
        action: str,
        original_expression: str,
        adjusted_expression: str | None,
        segments: Sequence[AdjustedConstraintSegment] = (),
        estimation_mode: bool = False,
        notes: Sequence[str] = (),
        priority: int | None = None,
    ) -> TraceAdjustmentRecord | None:
        if self.finalized:
            logger.warning("trace_write_after_finalize session_id=%s constraint_id=%s", self.session_id, constraint_id)
            return None
        record = TraceAdjustmentRecord(
            record_id=record_id_for(
                constraint_id=constraint_id,
                action=action,
                original_expression=original_expression,
                adjusted_expression=adjusted_expression,
            ),
            session_id=self.session_id,
            ts=_utcnow_iso(),
            constraint_id=constraint_id,
            action=action,
            original_expression=original_expression,
            adjusted_expression=adjusted_expression,
            segments=tuple(segments),
            estimation_mode=estimation_mode,
            notes=tuple(notes),
            priority=priority,
        )
        self._records.append(record)
        self.meta.total_adjustments = len(self._records)
        if estimation_mode:
            self.meta.estimation_used = True
        self._telemetry.counter("explain.trace.records")
        return record

    def mark_all_estimation(self) -> None:
        if self.finalized:
            logger.warning("trace_write_after_finalize session_id=%s op=mark_all_estimation", self.session_id)
            return
        changed = False
        for idx, record in enumerate(self._records):
            if not record.estimation_mode:
                self._records[idx] = dataclasses.replace(record, estimation_mode=True)
                changed = True
        if changed:
            self.meta.estimation_used = True

    def backfill_deltas(self, deltas: Mapping[str, Mapping[str, float | None]]) -> None:
        if self.finalized:
            logger.warning("trace_write_after_finalize session_id=%s op=backfill_deltas", self.session_id)
            return
        for idx, record in enumerate(self._records):
            update = deltas.get(record.constraint_id)
            if not update:
                continue
            feasibility = update.get("feasibility_delta")
            violation = update.get("violation_delta")
            self._records[idx] = dataclasses.replace(
                record,
                feasibility_delta=feasibility if feasibility is not None else record.feasibility_delta,
                violation_delta=violation if violation is not None else record.violation_delta,
            )

    def finalize_policy_version(
        self,
        constraints: Iterable[tuple[str, str]],
        adjustments: Iterable[TraceAdjustmentRecord] | None = None,
    ) -> str:
        """Close the session and return the content-derived policy version id.

        ``constraints`` are ``(id, expression)`` pairs for the full baseline
        policy; ``adjustments`` default to the session records that carry an
        adjusted expression.
        """
        if self.finalized:
            logger.warning("trace_already_finalized session_id=%s", self.session_id)
            return self.meta.policy_version_id  # type: ignore[return-value]
        records = list(adjustments) if adjustments is not None else [r for r in self._records if r.adjusted_expression]
        constraints_hash = content_hash(constraints)
        adjusted_hash = content_hash(
            (r.constraint_id, r.adjusted_expression or r.original_expression) for r in records
        )
        self.meta.constraints_hash = constraints_hash
        self.meta.adjusted_hash = adjusted_hash
        self.meta.finished_at = _utcnow_iso()
        self.meta.policy_version_id = derive_policy_version_id(constraints_hash, adjusted_hash)
        self._telemetry.counter("explain.sessions.finished")
        return self.meta.policy_version_id

    def build_lineage_graph(self) -> LineageGraph:
        nodes: dict[str, LineageNode] = {}
        edges: dict[tuple[str, str, EdgeKind], LineageEdge] = {}

        def _add(node: LineageNode) -> None:
            nodes.setdefault(node.id, node)

        def _link(source: str, target: str, kind: EdgeKind) -> None:
            edges.setdefault((source, target, kind), LineageEdge(source=source, target=target, type=kind))

        for record in self._records:
            c_id = f"C_{record.constraint_id}"
            a_id = f"A_{record.record_id}"
            e_id = f"E_{record.record_id}"
            _add(LineageNode(id=c_id, kind=NodeKind.CONSTRAINT, ref_id=record.constraint_id))
            _add(
                LineageNode(
                    id=a_id,
                    kind=NodeKind.ACTION,
                    ref_id=record.record_id,
                    meta={"action": record.action, "delta_pct": _mean_delta_pct(record.segments)},
                )
            )
            _link(c_id, a_id, EdgeKind.APPLIED_AS)
            for idx, segment in enumerate(record.segments):
                s_id = f"S_{record.record_id}_{idx}"
                _add(
                    LineageNode(
                        id=s_id,
                        kind=NodeKind.SEGMENT,
                        meta={
                            "original": segment.original,
                            "adjusted": segment.adjusted,
                            "reason_skipped": segment.reason_skipped,
                        },
                    )
                )
                _link(a_id, s_id, EdgeKind.HAS_SEGMENT)
            _add(
                LineageNode(
                    id=e_id,
                    kind=NodeKind.EFFECT,
                    meta={"feasibility_delta": record.feasibility_delta, "violation_delta": record.violation_delta},
                )
            )
            _link(a_id, e_id, EdgeKind.RESULTED_IN)
        return LineageGraph(nodes=list(nodes.values()), edges=list(edges.values()))

    def snapshot(self) -> dict[str, Any]:
        return {
            "schema_version": EXPLAIN_SCHEMA_VERSION,
            "session": self.meta.to_dict(),
            "adjustments": [r.to_dict() for r in self._records],
            "lineage": self.build_lineage_graph().to_dict(),
            "telemetry_counters": self._telemetry.counters(),
        }


def start_session(*, telemetry: Telemetry | None = None) -> TraceSession:
    return TraceSession(telemetry=telemetry)
