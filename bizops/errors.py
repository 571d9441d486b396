from __future__ import annotations

from typing import Any

ERROR_CLASSES = frozenset({"validation", "business_rule", "security_sensitive", "transient", "internal"})


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

    def __repr__(self) -> str:
        return f"ApiError(code={self.code!r}, http_status={self.http_status}, message={self.message!r})"


def not_found(code: str, message: str) -> ApiError:
    return ApiError(code=code, message=message, error_class="validation", retryable=False, http_status=404)


def bad_request(code: str, message: str) -> ApiError:
    return ApiError(code=code, message=message, error_class="business_rule", retryable=False, http_status=400)


def forbidden(code: str, message: str) -> ApiError:
    return ApiError(code=code, message=message, error_class="security_sensitive", retryable=False, http_status=403)


def upstream_unavailable(code: str, message: str, *, http_status: int = 502) -> ApiError:
    return ApiError(code=code, message=message, error_class="transient", retryable=True, http_status=http_status)
