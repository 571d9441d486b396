from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request

from bizops.routes._deps import (
    caller_id_from_request,
    require_idempotency_key,
    tenant_id_from_request,
    trace_id_from_request,
)
from bizops.schemas import TreasuryTransferRequest, success_envelope
from bizops.store import store

router = APIRouter(prefix="/api/v1/treasury", tags=["treasury"])


@router.post("/transfers")
def create_treasury_transfer(
    payload: TreasuryTransferRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    key = require_idempotency_key(idempotency_key)
    tenant_id = tenant_id_from_request(request)
    caller_id = caller_id_from_request(request)
    body = payload.model_dump()
    data = store.run_idempotent(
        endpoint="POST:/api/v1/treasury/transfers",
        tenant_id=tenant_id,
        idempotency_key=key,
        payload={**body, "caller_id": caller_id},
        execute=lambda: store.transfer_from_treasury(
            tenant_id=tenant_id,
            caller_id=caller_id,
            payload=body,
        ),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/{deal_room_id}")
def get_treasury(
    deal_room_id: str,
    request: Request,
    limit: int = Query(default=20, ge=1, le=200),
):
    data = store.get_treasury_overview(
        tenant_id=tenant_id_from_request(request),
        deal_room_id=deal_room_id,
        limit=limit,
    )
    return success_envelope(data, trace_id_from_request(request))
