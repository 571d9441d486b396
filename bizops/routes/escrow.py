from __future__ import annotations

from fastapi import APIRouter, Query, Request

from bizops.routes._deps import caller_id_from_request, tenant_id_from_request, trace_id_from_request
from bizops.schemas import EscrowReleaseRequest, VerifyFundingRequest, success_envelope
from bizops.store import store

router = APIRouter(prefix="/api/v1/escrow", tags=["escrow"])


@router.post("/verify-funding")
def verify_funding(payload: VerifyFundingRequest, request: Request):
    data = store.verify_escrow_funding(
        tenant_id=tenant_id_from_request(request),
        caller_id=caller_id_from_request(request),
        payload=payload.model_dump(),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/{deal_room_id}/release")
def release_escrow(deal_room_id: str, payload: EscrowReleaseRequest, request: Request):
    data = store.release_escrow(
        tenant_id=tenant_id_from_request(request),
        caller_id=caller_id_from_request(request),
        deal_room_id=deal_room_id,
        payload=payload.model_dump(),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/{deal_room_id}")
def get_escrow(
    deal_room_id: str,
    request: Request,
    limit: int = Query(default=20, ge=1, le=200),
):
    data = store.get_escrow_overview(
        tenant_id=tenant_id_from_request(request),
        deal_room_id=deal_room_id,
        limit=limit,
    )
    return success_envelope(data, trace_id_from_request(request))
