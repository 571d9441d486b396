from __future__ import annotations

import logging
import os
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from bizops.errors import ApiError
from bizops.routes import domains, escrow, gateway, internal, treasury, webhooks
from bizops.routes._deps import (
    append_security_audit_log,
    error_response,
    request_id_from_request,
    trace_id_from_request,
)
from bizops.runtime_profile import store_backend_name
from bizops.schemas import success_envelope
from bizops.security import JwtSecurityConfig, parse_and_validate_bearer_token
from bizops.settings import configure_logging

logger = logging.getLogger(__name__)

# signature-verified or service-role endpoints; never bearer-token gated
_BEARER_EXEMPT_PREFIXES = ("/api/v1/webhooks/", "/api/v1/internal/")
_SECURITY_AUDITED_CODES = frozenset(
    {
        "AUTH_UNAUTHORIZED",
        "TENANT_SCOPE_VIOLATION",
        "TREASURY_FORBIDDEN",
        "ESCROW_FORBIDDEN",
        "WEBHOOK_SIGNATURE_MISSING",
        "WEBHOOK_SIGNATURE_INVALID",
    }
)


def _requires_bearer(path: str) -> bool:
    if not path.startswith("/api/v1/") or path == "/api/v1/health":
        return False
    return not path.startswith(_BEARER_EXEMPT_PREFIXES)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Bizops Edge API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg
    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "*")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=allow_origins != ["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth_subject = "anonymous"
        path = request.url.path
        if security_cfg.trace_id_strict_required and _requires_bearer(path) and not incoming_trace_id:
            response = error_response(
                request,
                code="TRACE_ID_REQUIRED",
                message="x-trace-id header is required",
                error_class="validation",
                retryable=False,
                status_code=400,
            )
            response.headers["x-trace-id"] = trace_id_from_request(request)
            response.headers["x-request-id"] = request_id_from_request(request)
            return response
        try:
            header_tenant_explicit = request.headers.get("x-tenant-id")
            if security_cfg.enabled and _requires_bearer(path):
                auth_ctx = parse_and_validate_bearer_token(
                    authorization=request.headers.get("Authorization"),
                    cfg=security_cfg,
                )
                request.state.auth_subject = auth_ctx.subject
                request.state.tenant_id = auth_ctx.tenant_id
                if header_tenant_explicit and header_tenant_explicit != auth_ctx.tenant_id:
                    raise ApiError(
                        code="TENANT_SCOPE_VIOLATION",
                        message="tenant mismatch",
                        error_class="security_sensitive",
                        retryable=False,
                        http_status=403,
                    )
            else:
                request.state.tenant_id = header_tenant_explicit or security_cfg.default_tenant_id
            response = await call_next(request)
            response.headers["x-trace-id"] = trace_id_from_request(request)
            response.headers["x-request-id"] = request_id_from_request(request)
            return response
        except ApiError as exc:
            logger.warning("request_blocked path=%s code=%s", path, exc.code)
            append_security_audit_log(
                request=request,
                action="security_blocked",
                code=exc.code,
                detail=exc.message,
            )
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
            response.headers["x-trace-id"] = trace_id_from_request(request)
            response.headers["x-request-id"] = request_id_from_request(request)
            return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in _SECURITY_AUDITED_CODES:
            append_security_audit_log(
                request=request,
                action="security_blocked",
                code=exc.code,
                detail=exc.message,
            )
        if exc.http_status >= 500:
            logger.error("request_failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
        else:
            logger.info("request_rejected path=%s code=%s", request.url.path, exc.code)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
            details=exc.details,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception("unhandled_error path=%s", request.url.path)
        return error_response(
            request,
            code="INTERNAL_ERROR",
            message="internal server error",
            error_class="internal",
            retryable=False,
            status_code=500,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope(
            {"status": "ok", "store_backend": store_backend_name()},
            trace_id_from_request(request),
        )

    app.include_router(treasury.router)
    app.include_router(escrow.router)
    app.include_router(webhooks.router)
    app.include_router(gateway.router)
    app.include_router(domains.router)
    app.include_router(internal.router)
    return app


app = create_app()
