from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


def session_not_found(policy_version_id: str) -> ApiError:
    return ApiError(
        code="EXPLAIN_SESSION_NOT_FOUND",
        message=f"no persisted trace for policy version: {policy_version_id}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def diff_rate_limited(*, retry_after_ms: int) -> ApiError:
    return ApiError(
        code="EXPLAIN_DIFF_RATE_LIMITED",
        message="diff rate limit exceeded",
        error_class="transient",
        retryable=True,
        http_status=429,
        details={"retry_after_ms": retry_after_ms},
    )
