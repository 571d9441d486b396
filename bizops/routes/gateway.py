from __future__ import annotations

from fastapi import APIRouter, Request

from bizops.routes._deps import tenant_id_from_request, trace_id_from_request
from bizops.schemas import CompletionRequest, success_envelope
from bizops.store import store

router = APIRouter(prefix="/api/v1/gateway", tags=["gateway"])


@router.post("/completions")
def create_completion(payload: CompletionRequest, request: Request):
    data = store.run_completion(
        tenant_id=tenant_id_from_request(request),
        payload=payload.model_dump(),
    )
    return success_envelope(data, trace_id_from_request(request))
