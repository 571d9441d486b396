from __future__ import annotations

import hashlib
import hmac
import json

import pytest

from bizops.errors import ApiError
from bizops.webhook_signatures import (
    construct_stripe_event,
    parse_hubspot_events,
    sign_hubspot_v3,
    verify_hubspot_signature,
    verify_stripe_signature,
)

SECRET = "whsec_unit"
NOW = 1_700_000_000


def _stripe_header(payload: bytes, *, timestamp: int = NOW, secret: str = SECRET) -> str:
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def test_stripe_signature_accepts_any_matching_v1():
    payload = b'{"id":"evt_1"}'
    header = _stripe_header(payload)
    verify_stripe_signature(payload=payload, header=header, secret=SECRET, now=NOW + 10)
    rotated = header.replace("t=", "v1=deadbeef,t=", 1)
    verify_stripe_signature(payload=payload, header=rotated, secret=SECRET, now=NOW)


@pytest.mark.parametrize(
    ("header", "code"),
    [
        (None, "WEBHOOK_SIGNATURE_MISSING"),
        ("", "WEBHOOK_SIGNATURE_MISSING"),
        ("t=abc,v1=00", "WEBHOOK_SIGNATURE_INVALID"),
        (f"t={NOW}", "WEBHOOK_SIGNATURE_INVALID"),
        (f"t={NOW},v1=00ff", "WEBHOOK_SIGNATURE_INVALID"),
        (f"t={NOW},v1=\u00e9\u00e9", "WEBHOOK_SIGNATURE_INVALID"),
    ],
)
def test_stripe_signature_failures(header, code):
    with pytest.raises(ApiError) as exc:
        verify_stripe_signature(payload=b"{}", header=header, secret=SECRET, now=NOW)
    assert exc.value.code == code
    assert exc.value.http_status == 400


def test_stripe_signature_tolerance_window():
    payload = b"{}"
    header = _stripe_header(payload)
    with pytest.raises(ApiError, match="tolerance"):
        verify_stripe_signature(payload=payload, header=header, secret=SECRET, now=NOW + 301)


def test_construct_stripe_event_validates_shape():
    good = json.dumps({"id": "evt_1", "type": "invoice.paid", "data": {"object": {"id": "in_1"}}}).encode()
    event = construct_stripe_event(payload=good, header=_stripe_header(good), secret=SECRET, now=NOW)
    assert event["data"]["object"]["id"] == "in_1"

    bad = b"not json"
    with pytest.raises(ApiError) as exc:
        construct_stripe_event(payload=bad, header=_stripe_header(bad), secret=SECRET, now=NOW)
    assert exc.value.code == "WEBHOOK_PAYLOAD_INVALID"


def test_hubspot_v3_signature_round_trip_and_tamper():
    body = b'[{"eventId":1}]'
    uri = "https://edge.test/api/v1/webhooks/hubspot"
    timestamp = str(NOW * 1000)
    signature = sign_hubspot_v3(method="post", uri=uri, body=body, timestamp=timestamp, secret=SECRET)
    verify_hubspot_signature(
        method="POST", uri=uri, body=body, signature=signature, timestamp=timestamp, secret=SECRET, now=NOW
    )
    with pytest.raises(ApiError) as exc:
        verify_hubspot_signature(
            method="POST",
            uri=uri,
            body=b'[{"eventId":2}]',
            signature=signature,
            timestamp=timestamp,
            secret=SECRET,
            now=NOW,
        )
    assert exc.value.http_status == 401


@pytest.mark.parametrize(
    ("signature", "timestamp", "secret"),
    [
        ("sig", str(NOW * 1000), ""),
        (None, str(NOW * 1000), SECRET),
        ("sig", None, SECRET),
        ("sig", "yesterday", SECRET),
        ("sig", str((NOW - 301) * 1000), SECRET),
        ("\u00e9\u00e9", str(NOW * 1000), SECRET),
    ],
)
def test_hubspot_signature_rejections(signature, timestamp, secret):
    with pytest.raises(ApiError) as exc:
        verify_hubspot_signature(
            method="POST",
            uri="https://edge.test/hook",
            body=b"[]",
            signature=signature,
            timestamp=timestamp,
            secret=secret,
            now=NOW,
        )
    assert exc.value.code == "WEBHOOK_SIGNATURE_INVALID"
    assert exc.value.http_status == 401


def test_parse_hubspot_events_requires_integer_ids():
    events = parse_hubspot_events(b'[{"subscriptionType":"deal.creation","objectId":5,"eventId":6}]')
    assert events[0]["objectId"] == 5
    with pytest.raises(ApiError) as exc:
        parse_hubspot_events(b'{"subscriptionType":"deal.creation"}')
    assert exc.value.code == "WEBHOOK_PAYLOAD_INVALID"
