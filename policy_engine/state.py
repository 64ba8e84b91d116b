from __future__ import annotations

from policy_engine.diff_cache import DiffCache, DiffRateLimiter
from policy_engine.explain_store import create_store_for_runtime
from policy_engine.telemetry import telemetry

# Bumped whenever the role -> redaction table changes so cached diffs are not reused.
RBAC_VERSION = 1

explain_store = create_store_for_runtime()
diff_rate_limiter = DiffRateLimiter.from_env()
diff_cache = DiffCache.from_env()


def reset_runtime_state() -> None:
    explain_store.reset()
    diff_rate_limiter.reset()
    diff_cache.clear()
    telemetry.reset()
