from __future__ import annotations

from fastapi import APIRouter, Query, Request

from policy_engine.diff_cache import build_diff_cache_key
from policy_engine.errors import diff_rate_limited, session_not_found
from policy_engine.explain_diff import diff_explainability
from policy_engine.redaction import redact_diff_result, redact_snapshot, resolve_level
from policy_engine.routes._deps import (
    actor_identity_from_request,
    actor_role_from_request,
    trace_id_from_request,
)
from policy_engine.schemas import success_envelope
from policy_engine.state import RBAC_VERSION, diff_cache, diff_rate_limiter, explain_store

router = APIRouter(prefix="/api/v1/prescriptive/explain", tags=["explain"])


@router.get("/history")
async def explain_history(request: Request, limit: int | None = Query(default=None)):
    data = await explain_store.list_sessions(limit)
    return success_envelope(data, trace_id_from_request(request))


@router.get("/latest")
async def explain_latest(request: Request, redaction: str | None = Query(default=None)):
    data = await explain_store.latest()
    if data.get("found"):
        level = resolve_level(actor_role_from_request(request), redaction)
        data = {"found": True, **redact_snapshot(data["snapshot"], level)}
    return success_envelope(data, trace_id_from_request(request))


@router.get("/sessions/{policy_version_id}")
async def explain_session_meta(policy_version_id: str, request: Request):
    data = await explain_store.get_session_meta(policy_version_id)
    if data.get("reason"):
        return success_envelope(data, trace_id_from_request(request))
    if not data.get("found"):
        raise session_not_found(policy_version_id)
    return success_envelope(data, trace_id_from_request(request))


@router.get("/sessions/{policy_version_id}/full")
async def explain_session_full(
    policy_version_id: str,
    request: Request,
    redaction: str | None = Query(default=None),
):
    data = await explain_store.get_session_full(policy_version_id)
    if data.get("reason"):
        return success_envelope(data, trace_id_from_request(request))
    if not data.get("found"):
        raise session_not_found(policy_version_id)
    level = resolve_level(actor_role_from_request(request), redaction)
    return success_envelope({"found": True, **redact_snapshot(data["snapshot"], level)}, trace_id_from_request(request))


@router.get("/diff")
async def explain_diff(
    request: Request,
    from_pv: str | None = Query(default=None, alias="from"),
    to_pv: str | None = Query(default=None, alias="to"),
    lineage: bool = Query(default=False),
    redaction: str | None = Query(default=None),
):
    budget = diff_rate_limiter.consume(actor_identity_from_request(request))
    if not budget["allowed"]:
        raise diff_rate_limited(retry_after_ms=budget["retry_after_ms"])

    level = resolve_level(actor_role_from_request(request), redaction)
    cache_key = None
    if from_pv and to_pv:
        cache_key = build_diff_cache_key(
            from_pv=from_pv,
            to_pv=to_pv,
            lineage=lineage,
            redaction=level.value,
            rbac_version=RBAC_VERSION,
        )
        cached = diff_cache.get(cache_key)
        if cached is not None:
            return success_envelope({**cached, "cached": True}, trace_id_from_request(request))

    result = await diff_explainability(explain_store, from_pv, to_pv, include_lineage=lineage)
    if not result.get("ok"):
        return success_envelope(result, trace_id_from_request(request))
    data = redact_diff_result(result, level)
    if cache_key is not None:
        diff_cache.set(cache_key, data)
    return success_envelope({**data, "cached": False}, trace_id_from_request(request))
