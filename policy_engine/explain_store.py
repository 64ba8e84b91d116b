from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping
from typing import Any, Protocol

from policy_engine.db.postgres import PostgresTxRunner
from policy_engine.repositories import InMemoryExplainSnapshotsRepository, PostgresExplainSnapshotsRepository
from policy_engine.runtime_profile import env_int, feature_enabled, true_stack_required

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 100


class SnapshotRepository(Protocol):
    def insert_if_absent(self, *, snapshot: dict[str, Any]) -> tuple[bool, dict[str, Any]]: ...

    def get(self, *, policy_version_id: str) -> dict[str, Any] | None: ...

    def list_recent(self, *, limit: int) -> list[dict[str, Any]]: ...


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_LIST_LIMIT
    return max(1, min(MAX_LIST_LIMIT, int(limit)))


class ExplainabilityStore:
    """Async facade over a snapshot repository.

    Repository calls run in a worker thread so blocking drivers never stall the
    event loop. A snapshot is written at most once per policy version.
    """

    def __init__(self, repository: SnapshotRepository, *, backend: str = "memory") -> None:
        self._repository = repository
        self.backend = backend

    async def persist_snapshot(self, snapshot: dict[str, Any] | None) -> dict[str, Any]:
        if not feature_enabled():
            return {"inserted": False, "reason": "feature_flag_disabled"}
        if not snapshot:
            return {"inserted": False, "reason": "null_snapshot"}
        session = snapshot.get("session") or {}
        policy_version_id = session.get("policy_version_id")
        if not policy_version_id:
            return {"inserted": False, "reason": "missing_policy_version"}

        inserted, row = await asyncio.to_thread(self._repository.insert_if_absent, snapshot=snapshot)
        if not inserted:
            return {
                "inserted": False,
                "reason": "already_persisted",
                "policy_version_id": policy_version_id,
                "session_id": row.get("session_id"),
            }
        logger.info(
            "explain_snapshot_persisted policy_version_id=%s session_id=%s backend=%s",
            policy_version_id,
            row.get("session_id"),
            self.backend,
        )
        return {"inserted": True, "policy_version_id": policy_version_id, "session_id": row.get("session_id")}

    async def list_sessions(self, limit: int | None = None) -> dict[str, Any]:
        if not feature_enabled():
            return {"items": [], "reason": "feature_flag_disabled"}
        effective = clamp_limit(limit)
        items = await asyncio.to_thread(self._repository.list_recent, limit=effective)
        return {"items": items, "limit": effective}

    async def get_session_full(self, policy_version_id: str) -> dict[str, Any]:
        if not feature_enabled():
            return {"found": False, "reason": "feature_flag_disabled"}
        snapshot = await asyncio.to_thread(self._repository.get, policy_version_id=policy_version_id)
        if snapshot is None:
            return {"found": False}
        return {"found": True, "snapshot": snapshot}

    async def get_session_meta(self, policy_version_id: str) -> dict[str, Any]:
        full = await self.get_session_full(policy_version_id)
        if not full.get("found"):
            return full
        snapshot = full["snapshot"]
        return {
            "found": True,
            "session": snapshot.get("session") or {},
            "adjustment_count": len(snapshot.get("adjustments") or []),
            "schema_version": snapshot.get("schema_version"),
        }

    async def latest(self) -> dict[str, Any]:
        listing = await self.list_sessions(1)
        if listing.get("reason"):
            return {"found": False, "reason": listing["reason"]}
        if not listing["items"]:
            return {"found": False}
        return await self.get_session_full(listing["items"][0]["policy_version_id"])

    def reset(self) -> None:
        if hasattr(self._repository, "reset"):
            self._repository.reset()


def create_store_from_env(environ: Mapping[str, str] | None = None) -> ExplainabilityStore:
    env = os.environ if environ is None else environ
    backend = env.get("EXPLAIN_STORE_BACKEND", "memory").strip().lower() or "memory"
    if backend == "memory":
        return ExplainabilityStore(InMemoryExplainSnapshotsRepository(), backend="memory")
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise RuntimeError("POSTGRES_DSN is required when EXPLAIN_STORE_BACKEND=postgres")
        timeout = env_int("POSTGRES_STATEMENT_TIMEOUT_MS", 0, env)
        runner = PostgresTxRunner(dsn, statement_timeout_ms=timeout or None)
        table = env.get("EXPLAIN_SNAPSHOTS_TABLE", "explain_snapshots")
        return ExplainabilityStore(
            PostgresExplainSnapshotsRepository(tx_runner=runner, table_name=table),
            backend="postgres",
        )
    raise ValueError(f"unsupported EXPLAIN_STORE_BACKEND: {backend}")


def create_store_for_runtime(environ: Mapping[str, str] | None = None) -> ExplainabilityStore:
    env = os.environ if environ is None else environ
    try:
        return create_store_from_env(env)
    except RuntimeError as exc:
        if true_stack_required(env):
            raise
        logger.warning("explain_store_fallback_to_memory error=%s", exc)
        return ExplainabilityStore(InMemoryExplainSnapshotsRepository(), backend="memory")
