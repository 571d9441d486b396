from __future__ import annotations

import logging
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from bizops.errors import ApiError
from bizops.schemas import error_envelope
from bizops.security import redact_sensitive
from bizops.store import store

logger = logging.getLogger(__name__)


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def tenant_id_from_request(request: Request) -> str:
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id:
        return tenant_id
    return "tenant_default"


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def caller_id_from_request(request: Request) -> str:
    return str(getattr(request.state, "auth_subject", None) or "anonymous")


def require_idempotency_key(idempotency_key: str | None) -> str:
    if not idempotency_key:
        raise ApiError(
            code="IDEMPOTENCY_MISSING",
            message="Idempotency-Key header is required",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    return idempotency_key


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: dict | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
            details=details,
        ),
    )


def append_security_audit_log(
    *,
    request: Request,
    action: str,
    code: str,
    detail: str,
) -> None:
    security_cfg = request.app.state.security_cfg
    headers_obj = dict(request.headers.items())
    headers_payload = redact_sensitive(headers_obj) if security_cfg.log_redaction_enabled else headers_obj
    try:
        store._append_audit_log(
            log={
                "tenant_id": tenant_id_from_request(request),
                "action": action,
                "error_code": code,
                "detail": detail,
                "path": request.url.path,
                "trace_id": trace_id_from_request(request),
                "headers": headers_payload,
            }
        )
    except Exception as exc:
        # the rejection itself must still be answered
        logger.error("security_audit_append_failed code=%s error=%s", code, exc)
