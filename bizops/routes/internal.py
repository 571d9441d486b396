from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request

from bizops.errors import ApiError
from bizops.routes._deps import trace_id_from_request
from bizops.schemas import AgentLimitsRequest, SettlementExecuteRequest, success_envelope
from bizops.security import require_service_role
from bizops.store import store

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


def _require_service_role(request: Request, authorization: str | None) -> None:
    require_service_role(authorization=authorization, cfg=request.app.state.security_cfg)


@router.post("/settlements/execute")
def execute_settlement(
    payload: SettlementExecuteRequest,
    request: Request,
    authorization: str | None = Header(default=None),
):
    _require_service_role(request, authorization)
    data = store.execute_settlement(
        contract_id=payload.contract_id,
        trigger_event={"source": "internal", **payload.trigger_event},
        force=payload.force,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.put("/agents/limits")
def set_agent_limits(
    payload: AgentLimitsRequest,
    request: Request,
    authorization: str | None = Header(default=None),
):
    _require_service_role(request, authorization)
    data = store.gateway_usage_repository.set_agent_limits(
        tenant_id=payload.tenant_id,
        agent_id=payload.agent_id,
        daily_run_cap=payload.daily_run_cap,
        daily_cost_cap_usd=payload.daily_cost_cap_usd,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/audit/verify")
def verify_audit_integrity(
    request: Request,
    authorization: str | None = Header(default=None),
):
    _require_service_role(request, authorization)
    result = store.verify_audit_integrity()
    if not result["valid"]:
        raise ApiError(
            code="AUDIT_INTEGRITY_BROKEN",
            message=f"audit chain broken at {result.get('audit_id')}: {result.get('reason')}",
            error_class="security_sensitive",
            retryable=False,
            http_status=409,
        )
    return success_envelope(result, trace_id_from_request(request))


@router.get("/audit/logs")
def list_audit_logs(
    request: Request,
    tenant_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    authorization: str | None = Header(default=None),
):
    _require_service_role(request, authorization)
    items = store.list_audit_logs(tenant_id=tenant_id, action=action)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))
