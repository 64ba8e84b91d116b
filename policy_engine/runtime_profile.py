from __future__ import annotations

from collections.abc import Mapping
import os

FEATURE_FLAG_ENV = "PRESCRIPTIVE_ROBUST_V1"


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env(environ: Mapping[str, str] | None) -> Mapping[str, str]:
    return os.environ if environ is None else environ


def env_float(name: str, default: float, environ: Mapping[str, str] | None = None) -> float:
    raw = _env(environ).get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def env_int(name: str, default: int, environ: Mapping[str, str] | None = None) -> int:
    raw = _env(environ).get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def feature_enabled(environ: Mapping[str, str] | None = None) -> bool:
    return _as_bool(_env(environ).get(FEATURE_FLAG_ENV, "false"))


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    return _as_bool(_env(environ).get("PRESCRIPTIVE_REQUIRE_TRUESTACK", "false"))
