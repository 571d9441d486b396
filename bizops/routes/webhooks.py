"""Third-party callbacks. No bearer auth: each source proves itself by signature."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Header, Request
from starlette.concurrency import run_in_threadpool

from bizops.errors import ApiError
from bizops.routes._deps import trace_id_from_request
from bizops.schemas import success_envelope
from bizops.store import store
from bizops.webhook_signatures import construct_stripe_event, parse_hubspot_events, verify_hubspot_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
):
    cfg = store.integrations
    if not cfg.stripe_webhook_secret:
        raise ApiError(
            code="STRIPE_NOT_CONFIGURED",
            message="Stripe webhook secret not configured",
            error_class="internal",
            retryable=False,
            http_status=500,
        )
    body = await request.body()
    event = construct_stripe_event(
        payload=body,
        header=stripe_signature,
        secret=cfg.stripe_webhook_secret,
        tolerance_seconds=cfg.webhook_tolerance_seconds,
    )
    logger.info("stripe_webhook_received event_id=%s type=%s", event["id"], event["type"])
    data = await run_in_threadpool(store.handle_stripe_event, event=event)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/hubspot")
async def hubspot_webhook(
    request: Request,
    signature: str | None = Header(default=None, alias="X-HubSpot-Signature-v3"),
    timestamp: str | None = Header(default=None, alias="X-HubSpot-Request-Timestamp"),
):
    cfg = store.integrations
    body = await request.body()
    # HubSpot signs the public URL it called, which differs from request.url behind a proxy
    verify_hubspot_signature(
        method=request.method,
        uri=cfg.hubspot_webhook_url or str(request.url),
        body=body,
        signature=signature,
        timestamp=timestamp,
        secret=cfg.hubspot_client_secret,
        tolerance_seconds=cfg.webhook_tolerance_seconds,
    )
    events = parse_hubspot_events(body)
    data = await run_in_threadpool(store.handle_hubspot_events, events=events)
    return success_envelope(data, trace_id_from_request(request))
