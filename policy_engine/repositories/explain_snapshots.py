from __future__ import annotations

import json
import re
import threading
from datetime import datetime, timezone
from typing import Any

from policy_engine.db.postgres import PostgresTxRunner


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def session_row(snapshot: dict[str, Any]) -> dict[str, Any]:
    session = snapshot.get("session") or {}
    return {
        "policy_version_id": session.get("policy_version_id"),
        "session_id": session.get("session_id"),
        "started_at": session.get("started_at"),
        "finished_at": session.get("finished_at"),
        "total_adjustments": int(session.get("total_adjustments") or 0),
        "estimation_used": bool(session.get("estimation_used")),
    }


class InMemoryExplainSnapshotsRepository:
    def __init__(self, rows: dict[str, dict[str, Any]] | None = None) -> None:
        self._rows: dict[str, dict[str, Any]] = {} if rows is None else rows
        self._lock = threading.RLock()

    def insert_if_absent(self, *, snapshot: dict[str, Any]) -> tuple[bool, dict[str, Any]]:
        row = session_row(snapshot)
        with self._lock:
            existing = self._rows.get(row["policy_version_id"])
            if existing is not None:
                return False, {k: v for k, v in existing.items() if k != "snapshot"}
            stored = {**row, "created_at": _utcnow_iso(), "snapshot": json.loads(json.dumps(snapshot))}
            self._rows[row["policy_version_id"]] = stored
        return True, {k: v for k, v in stored.items() if k != "snapshot"}

    def get(self, *, policy_version_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._rows.get(policy_version_id)
            if row is None:
                return None
            return json.loads(json.dumps(row["snapshot"]))

    def list_recent(self, *, limit: int) -> list[dict[str, Any]]:
        with self._lock:
            rows = [{k: v for k, v in r.items() if k != "snapshot"} for r in self._rows.values()]
        rows.sort(key=lambda r: r.get("started_at") or "", reverse=True)
        return rows[:limit]

    def reset(self) -> None:
        with self._lock:
            self._rows.clear()


class PostgresExplainSnapshotsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "explain_snapshots") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def insert_if_absent(self, *, snapshot: dict[str, Any]) -> tuple[bool, dict[str, Any]]:
        row = session_row(snapshot)
        insert_sql = f"""
            INSERT INTO {self._table_name} (
                policy_version_id, session_id, started_at, finished_at,
                total_adjustments, estimation_used, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(policy_version_id) DO NOTHING
            RETURNING session_id
        """
        select_sql = f"""
            SELECT session_id, started_at, finished_at, total_adjustments, estimation_used
            FROM {self._table_name}
            WHERE policy_version_id = %s
        """

        def _op(conn: Any) -> tuple[bool, dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(
                    insert_sql,
                    (
                        row["policy_version_id"],
                        row["session_id"],
                        row["started_at"],
                        row["finished_at"],
                        row["total_adjustments"],
                        row["estimation_used"],
                        json.dumps(snapshot, ensure_ascii=True, sort_keys=True),
                    ),
                )
                if cur.fetchone() is not None:
                    return True, row
                cur.execute(select_sql, (row["policy_version_id"],))
                existing = cur.fetchone()
            if existing is None:
                return False, row
            return False, {
                "policy_version_id": row["policy_version_id"],
                "session_id": existing[0],
                "started_at": _iso(existing[1]),
                "finished_at": _iso(existing[2]),
                "total_adjustments": existing[3],
                "estimation_used": existing[4],
            }

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, policy_version_id: str) -> dict[str, Any] | None:
        sql = f"SELECT payload FROM {self._table_name} WHERE policy_version_id = %s"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (policy_version_id,))
                found = cur.fetchone()
            if found is None:
                return None
            payload = found[0]
            if isinstance(payload, str):
                payload = json.loads(payload)
            return payload if isinstance(payload, dict) else None

        return self._tx_runner.run_in_tx(fn=_op)

    def list_recent(self, *, limit: int) -> list[dict[str, Any]]:
        sql = f"""
            SELECT policy_version_id, session_id, started_at, finished_at, total_adjustments, estimation_used
            FROM {self._table_name}
            ORDER BY started_at DESC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (limit,))
                rows = cur.fetchall() or []
            return [
                {
                    "policy_version_id": r[0],
                    "session_id": r[1],
                    "started_at": _iso(r[2]),
                    "finished_at": _iso(r[3]),
                    "total_adjustments": r[4],
                    "estimation_used": r[5],
                }
                for r in rows
            ]

        return self._tx_runner.run_in_tx(fn=_op)
