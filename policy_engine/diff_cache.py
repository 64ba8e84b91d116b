"""Throttling and caching for the explainability diff endpoint.

Each caller identity gets a token bucket that refills completely once per
window. Diff results are kept in a small LRU cache with a TTL; the key carries
the redaction level and RBAC version so a cached diff is never served to a
different audience.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from policy_engine.runtime_profile import env_int

logger = logging.getLogger(__name__)


@dataclass
class _Bucket:
    tokens: int
    last_refill_ms: float


def _now_ms() -> float:
    return time.monotonic() * 1000.0


class DiffRateLimiter:
    def __init__(
        self,
        *,
        capacity: int = 30,
        window_ms: int = 5 * 60 * 1000,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.window_ms = window_ms
        self._clock = clock or _now_ms
        self._buckets: dict[str, _Bucket] = {}
        self._last_sweep_ms: float | None = None
        self._lock = threading.RLock()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "DiffRateLimiter":
        return cls(
            capacity=env_int("EXPLAIN_DIFF_RATE_CAPACITY", 30, environ),
            window_ms=env_int("EXPLAIN_DIFF_RATE_WINDOW_MS", 5 * 60 * 1000, environ),
        )

    def consume(self, identity: str) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            self._evict_idle(now)
            bucket = self._buckets.get(identity)
            if bucket is None:
                bucket = _Bucket(tokens=self.capacity, last_refill_ms=now)
                self._buckets[identity] = bucket
            elif now - bucket.last_refill_ms >= self.window_ms:
                bucket.tokens = self.capacity
                bucket.last_refill_ms = now
            if bucket.tokens <= 0:
                retry_after = max(0, int(bucket.last_refill_ms + self.window_ms - now))
                logger.warning("explain_diff_rate_limited identity=%s retry_after_ms=%s", identity, retry_after)
                return {"allowed": False, "remaining": 0, "retry_after_ms": retry_after}
            bucket.tokens -= 1
            return {"allowed": True, "remaining": bucket.tokens, "retry_after_ms": 0}

    def _evict_idle(self, now: float) -> None:
        # A bucket idle for a full window refills on next use anyway.
        if self._last_sweep_ms is None:
            self._last_sweep_ms = now
            return
        if now - self._last_sweep_ms < self.window_ms:
            return
        self._last_sweep_ms = now
        idle = [k for k, b in self._buckets.items() if now - b.last_refill_ms >= self.window_ms]
        for key in idle:
            del self._buckets[key]

    def tracked_identities(self) -> int:
        with self._lock:
            return len(self._buckets)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._last_sweep_ms = None


def build_diff_cache_key(*, from_pv: str, to_pv: str, lineage: bool, redaction: str, rbac_version: int) -> str:
    return "|".join([from_pv, to_pv, "L1" if lineage else "L0", redaction, f"R{rbac_version}"])


class DiffCache:
    def __init__(
        self,
        *,
        ttl_ms: int = 2 * 60 * 1000,
        max_entries: int = 100,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl_ms = ttl_ms
        self.max_entries = max_entries
        self._clock = clock or _now_ms
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._lock = threading.RLock()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "DiffCache":
        return cls(
            ttl_ms=env_int("EXPLAIN_DIFF_CACHE_TTL_MS", 2 * 60 * 1000, environ),
            max_entries=env_int("EXPLAIN_DIFF_CACHE_MAX", 100, environ),
        )

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            stored_at, value = entry
            if self._clock() - stored_at > self.ttl_ms:
                del self._entries[key]
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
        logger.debug("explain_diff_cache_hit key=%s", key)
        return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._entries),
                "capacity": self.max_entries,
                "hits": self._hits,
                "misses": self._misses,
            }

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
