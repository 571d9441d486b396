"""
Signature verification for inbound third-party webhooks.

Stripe:   header ``Stripe-Signature: t=<unix>,v1=<hex>[,v1=<hex>...]``,
          signed payload is ``"{t}.{raw_body}"`` (HMAC-SHA256, hex).
HubSpot:  v3 scheme, headers ``X-HubSpot-Signature-v3`` and
          ``X-HubSpot-Request-Timestamp`` (milliseconds); signed payload is
          ``method + uri + raw_body + timestamp`` (HMAC-SHA256, base64).
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any

from jsonschema import ValidationError, validate

from bizops.errors import ApiError

STRIPE_EVENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "type", "data"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "type": {"type": "string", "minLength": 1},
        "data": {
            "type": "object",
            "required": ["object"],
            "properties": {"object": {"type": "object"}},
        },
    },
}

HUBSPOT_EVENTS_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["subscriptionType", "objectId", "eventId"],
        "properties": {
            "subscriptionType": {"type": "string", "minLength": 1},
            "objectId": {"type": "integer"},
            "eventId": {"type": "integer"},
            "portalId": {"type": "integer"},
            "occurredAt": {"type": "integer"},
            "propertyName": {"type": "string"},
            "propertyValue": {"type": "string"},
        },
    },
}


def _invalid(message: str, *, http_status: int = 400) -> ApiError:
    return ApiError(
        code="WEBHOOK_SIGNATURE_INVALID",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=http_status,
    )


def _digest_matches(expected: str, candidate: str) -> bool:
    # compare_digest only accepts ASCII str; header values can be anything
    return hmac.compare_digest(expected.encode("ascii"), candidate.encode("utf-8", "surrogateescape"))


def _parse_stripe_header(header: str) -> tuple[int | None, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t" and value.isdigit():
            timestamp = int(value)
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_stripe_signature(
    *,
    payload: bytes,
    header: str | None,
    secret: str,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> None:
    if not header:
        raise ApiError(
            code="WEBHOOK_SIGNATURE_MISSING",
            message="Missing stripe-signature header",
            error_class="security_sensitive",
            retryable=False,
            http_status=400,
        )
    timestamp, signatures = _parse_stripe_header(header)
    if timestamp is None or not signatures:
        raise _invalid("Webhook signature verification failed")
    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    if not any(_digest_matches(expected, candidate) for candidate in signatures):
        raise _invalid("Webhook signature verification failed")
    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - timestamp) > tolerance_seconds:
        raise _invalid("Webhook timestamp outside tolerance")


def construct_stripe_event(
    *,
    payload: bytes,
    header: str | None,
    secret: str,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> dict[str, Any]:
    verify_stripe_signature(
        payload=payload,
        header=header,
        secret=secret,
        tolerance_seconds=tolerance_seconds,
        now=now,
    )
    try:
        event = json.loads(payload.decode("utf-8"))
        validate(instance=event, schema=STRIPE_EVENT_SCHEMA)
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
        raise ApiError(
            code="WEBHOOK_PAYLOAD_INVALID",
            message=f"invalid stripe event payload: {type(exc).__name__}",
            error_class="validation",
            retryable=False,
            http_status=400,
        ) from exc
    return event


def sign_hubspot_v3(*, method: str, uri: str, body: bytes, timestamp: str, secret: str) -> str:
    source = method.upper().encode("utf-8") + uri.encode("utf-8") + body + timestamp.encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), source, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_hubspot_signature(
    *,
    method: str,
    uri: str,
    body: bytes,
    signature: str | None,
    timestamp: str | None,
    secret: str,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> None:
    if not secret:
        raise _invalid("hubspot client secret not configured", http_status=401)
    if not signature or not timestamp:
        raise _invalid("missing hubspot signature headers", http_status=401)
    if not timestamp.strip().isdigit():
        raise _invalid("invalid hubspot request timestamp", http_status=401)
    current_ms = (time.time() if now is None else now) * 1000
    if abs(current_ms - int(timestamp)) > tolerance_seconds * 1000:
        raise _invalid("hubspot request timestamp outside tolerance", http_status=401)
    expected = sign_hubspot_v3(method=method, uri=uri, body=body, timestamp=timestamp, secret=secret)
    if not _digest_matches(expected, signature.strip()):
        raise _invalid("hubspot signature mismatch", http_status=401)


def parse_hubspot_events(body: bytes) -> list[dict[str, Any]]:
    try:
        events = json.loads(body.decode("utf-8"))
        validate(instance=events, schema=HUBSPOT_EVENTS_SCHEMA)
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
        raise ApiError(
            code="WEBHOOK_PAYLOAD_INVALID",
            message=f"invalid hubspot event batch: {type(exc).__name__}",
            error_class="validation",
            retryable=False,
            http_status=400,
        ) from exc
    return events
