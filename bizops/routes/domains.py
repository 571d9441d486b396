from __future__ import annotations

from fastapi import APIRouter, Request

from bizops.routes._deps import caller_id_from_request, tenant_id_from_request, trace_id_from_request
from bizops.schemas import DnsConfigureRequest, success_envelope
from bizops.store import store

router = APIRouter(prefix="/api/v1/domains", tags=["domains"])


@router.post("/{domain}/dns")
def configure_dns(domain: str, payload: DnsConfigureRequest, request: Request):
    data = store.configure_dns(
        tenant_id=tenant_id_from_request(request),
        caller_id=caller_id_from_request(request),
        domain=domain,
        payload=payload.model_dump(),
    )
    return success_envelope(data, trace_id_from_request(request))
