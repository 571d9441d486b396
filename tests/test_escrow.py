from __future__ import annotations

import httpx

from bizops.repositories.escrow import evaluate_kill_switch
from bizops.store import store


def _stripe_transport(objects: dict[str, dict], seen: list[httpx.Request] | None = None) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        obj = objects.get(request.url.path)
        if obj is None:
            return httpx.Response(404, json={"error": {"message": "No such object"}})
        return httpx.Response(200, json=obj)

    return httpx.MockTransport(handler)


def _intent(deal_room_id: str, *, status: str = "succeeded", amount: int = 250000) -> dict:
    return {
        "id": "pi_escrow_1",
        "object": "payment_intent",
        "status": status,
        "amount": amount,
        "currency": "usd",
        "metadata": {"deal_room_id": deal_room_id, "user_id": "user_funder"},
    }


def test_verify_funding_from_payment_intent_deposits_and_converts(client, seed_room):
    room = seed_room()
    deal_room_id = room["deal_room_id"]
    store.xdk_ledger_repository.add_rate(rate={"base_currency": "USD", "xdk_rate": 2.0})
    seen: list[httpx.Request] = []
    store.stripe_transport = _stripe_transport({"/v1/payment_intents/pi_escrow_1": _intent(deal_room_id)}, seen)

    resp = client.post(
        "/api/v1/escrow/verify-funding",
        json={"payment_intent_id": "pi_escrow_1", "xdk_conversion": True},
    )
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["amount_deposited"] == 2500.0
    assert data["new_balance"] == 2500.0
    assert data["xdk_conversion"] is True
    assert data["xdk_amount"] == 5000.0
    assert data["xdk_tx_hash"].startswith("0x")
    assert seen[0].headers["authorization"].startswith("Basic ")

    escrow = store.escrow_repository.get_for_deal_room(tenant_id="tenant_default", deal_room_id=deal_room_id)
    assert escrow["minimum_balance_threshold"] == 100.0
    assert escrow["escrow_type"] == "xdk_backed"
    treasury = store.xdk_ledger_repository.get_treasury(tenant_id=None, deal_room_id=deal_room_id)
    assert treasury["balance"] == 5000.0

    entries = store.value_ledger_repository.list_for_deal_room(tenant_id=None, deal_room_id=deal_room_id)
    assert entries[0]["entry_type"] == "escrow_deposit"
    assert entries[0]["contribution_credits"] == 250
    assert entries[0]["reference_type"] == "payment_intent"
    assert "5000.00 XDK minted to treasury" in entries[0]["narrative"]

    again = client.post("/api/v1/escrow/verify-funding", json={"payment_intent_id": "pi_escrow_1"})
    assert again.status_code == 200
    assert again.json()["data"]["already_processed"] is True
    reloaded = store.escrow_repository.get_for_deal_room(tenant_id=None, deal_room_id=deal_room_id)
    assert reloaded["total_deposited"] == 2500.0


def test_verify_funding_from_checkout_session_completes_funding_request(client, seed_room):
    room = seed_room()
    deal_room_id = room["deal_room_id"]
    funding = store.billing_repository.create_funding_request(
        request={"tenant_id": "tenant_default", "deal_room_id": deal_room_id, "stripe_checkout_session_id": "cs_test_1"}
    )
    store.stripe_transport = _stripe_transport(
        {
            "/v1/checkout/sessions/cs_test_1": {
                "id": "cs_test_1",
                "payment_status": "paid",
                "amount_total": 50000,
                "currency": "usd",
                "payment_intent": "pi_from_session",
                "metadata": {"deal_room_id": deal_room_id, "xdk_conversion": "false"},
            }
        }
    )

    resp = client.post("/api/v1/escrow/verify-funding", json={"session_id": "cs_test_1"})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["amount_deposited"] == 500.0
    assert data["xdk_conversion"] is False
    assert data["xdk_tx_hash"] is None

    updated = store.billing_repository.find_funding_request(tenant_id="tenant_default", stripe_reference="cs_test_1")
    assert updated["funding_request_id"] == funding["funding_request_id"]
    assert updated["status"] == "completed"
    entry = store.value_ledger_repository.list_for_deal_room(tenant_id=None, deal_room_id=deal_room_id)[0]
    assert entry["reference_type"] == "escrow_funding_request"
    assert entry["reference_id"] == funding["funding_request_id"]
    assert store.list_audit_logs(tenant_id="tenant_default", action="escrow_funding_verified")


def test_verify_funding_prefers_funding_request_id_from_metadata(client, seed_room):
    room = seed_room()
    deal_room_id = room["deal_room_id"]
    funding = store.billing_repository.create_funding_request(
        request={"tenant_id": "tenant_default", "deal_room_id": deal_room_id}
    )
    intent = _intent(deal_room_id, amount=30000)
    intent["metadata"]["funding_request_id"] = funding["funding_request_id"]
    store.stripe_transport = _stripe_transport({"/v1/payment_intents/pi_escrow_1": intent})

    resp = client.post("/api/v1/escrow/verify-funding", json={"payment_intent_id": "pi_escrow_1"})
    assert resp.status_code == 200
    row = store.billing_repository.get_funding_request(
        tenant_id="tenant_default", funding_request_id=funding["funding_request_id"]
    )
    assert row["status"] == "completed"
    assert row["metadata"]["amount_received"] == 300.0
    entry = store.value_ledger_repository.list_for_deal_room(tenant_id=None, deal_room_id=deal_room_id)[0]
    assert entry["reference_id"] == funding["funding_request_id"]


def test_verify_funding_rejects_incomplete_payment(client, seed_room):
    room = seed_room()
    store.stripe_transport = _stripe_transport(
        {"/v1/payment_intents/pi_escrow_1": _intent(room["deal_room_id"], status="requires_payment_method")}
    )
    resp = client.post("/api/v1/escrow/verify-funding", json={"payment_intent_id": "pi_escrow_1"})
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "PAYMENT_NOT_COMPLETED"
    assert "requires_payment_method" in error["message"]
    assert store.escrows == {}


def test_verify_funding_input_and_upstream_errors(client, seed_room):
    seed_room()
    missing_ref = client.post("/api/v1/escrow/verify-funding", json={})
    assert missing_ref.status_code == 400
    assert missing_ref.json()["error"]["code"] == "FUNDING_REFERENCE_REQUIRED"

    store.stripe_transport = _stripe_transport({})
    not_found = client.post("/api/v1/escrow/verify-funding", json={"payment_intent_id": "pi_unknown"})
    assert not_found.status_code == 404
    assert not_found.json()["error"]["code"] == "STRIPE_OBJECT_NOT_FOUND"

    def boom(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    store.stripe_transport = httpx.MockTransport(boom)
    down = client.post("/api/v1/escrow/verify-funding", json={"payment_intent_id": "pi_unknown"})
    assert down.status_code == 502
    assert down.json()["error"]["code"] == "STRIPE_UPSTREAM_UNAVAILABLE"
    assert down.json()["error"]["retryable"] is True


def test_release_beyond_balance_is_rejected_without_writes(client, seed_room):
    room = seed_room(escrow_balance=300.0)
    deal_room_id = room["deal_room_id"]
    escrow_before = store.escrow_repository.get_for_deal_room(tenant_id=None, deal_room_id=deal_room_id)
    tx_count = len(store.escrow_transactions)
    audit_count = len(store.audit_logs)

    resp = client.post(f"/api/v1/escrow/{deal_room_id}/release", json={"amount": 300.01, "purpose": "Vendor payout"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "ESCROW_INSUFFICIENT_BALANCE"

    escrow_after = store.escrow_repository.get_for_deal_room(tenant_id=None, deal_room_id=deal_room_id)
    assert escrow_after == escrow_before
    assert len(store.escrow_transactions) == tx_count
    assert len(store.audit_logs) == audit_count


def test_release_trips_kill_switch_and_pauses_later_releases(client, seed_room):
    room = seed_room(escrow_balance=300.0, min_balance=100.0)
    deal_room_id = room["deal_room_id"]

    first = client.post(
        f"/api/v1/escrow/{deal_room_id}/release",
        json={"amount": 250, "purpose": "Vendor payout", "recipient_user_id": "user_vendor"},
    )
    assert first.status_code == 200
    data = first.json()["data"]
    assert data["new_balance"] == 50.0
    assert data["workflows_paused"] is True
    assert data["kill_switch"]["should_pause"] is True
    assert data["kill_switch"]["reason"] == "Escrow balance (50.00) below minimum threshold (100.00)"
    assert store.list_audit_logs(action="escrow_workflows_paused")

    paused = client.post(f"/api/v1/escrow/{deal_room_id}/release", json={"amount": 10, "purpose": "More"})
    assert paused.status_code == 409
    assert paused.json()["error"]["code"] == "ESCROW_WORKFLOWS_PAUSED"

    forced = client.post(
        f"/api/v1/escrow/{deal_room_id}/release",
        json={"amount": 10, "purpose": "Emergency", "force": True},
    )
    assert forced.status_code == 200
    assert forced.json()["data"]["new_balance"] == 40.0
    # one trip, one audit row
    assert len(store.list_audit_logs(action="escrow_workflows_paused")) == 1

    overview = client.get(f"/api/v1/escrow/{deal_room_id}")
    assert overview.status_code == 200
    view = overview.json()["data"]
    assert view["available_balance"] == 40.0
    assert [tx["transaction_type"] for tx in view["transactions"]].count("release") == 2


def test_release_requires_deal_room_admin(client, seed_room):
    room = seed_room(escrow_balance=300.0)
    resp = client.post(
        f"/api/v1/escrow/{room['deal_room_id']}/release",
        json={"amount": 10, "purpose": "Sneaky"},
        user_id="user_intruder",
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "ESCROW_FORBIDDEN"


def test_deposit_clears_pause():
    escrow = store.escrow_repository.create(
        escrow={"tenant_id": "tenant_default", "deal_room_id": "dr_pause", "minimum_balance_threshold": 100.0}
    )
    store.escrow_repository.deposit(escrow_id=escrow["escrow_id"], amount=120.0, fields={})
    store.escrow_repository.release(escrow_id=escrow["escrow_id"], amount=60.0, fields={})
    assert store.escrow_repository.get(tenant_id=None, escrow_id=escrow["escrow_id"])["workflows_paused"] is True

    result = store.escrow_repository.deposit(escrow_id=escrow["escrow_id"], amount=500.0, fields={})
    assert result["escrow"]["workflows_paused"] is False
    assert result["escrow"]["paused_reason"] is None


def test_evaluate_kill_switch_decision():
    healthy = evaluate_kill_switch({"total_deposited": 500, "total_released": 100, "minimum_balance_threshold": 100})
    assert healthy == {
        "available": 400.0,
        "threshold": 100.0,
        "should_pause": False,
        "already_paused": False,
        "reason": None,
    }
    low = evaluate_kill_switch(
        {"total_deposited": 500, "total_released": 450, "minimum_balance_threshold": 100, "workflows_paused": True}
    )
    assert low["should_pause"] is True
    assert low["already_paused"] is True


def test_over_release_from_paused_escrow_reports_insufficient_balance(client, seed_room):
    room = seed_room(escrow_balance=300.0, min_balance=100.0)
    deal_room_id = room["deal_room_id"]
    first = client.post(f"/api/v1/escrow/{deal_room_id}/release", json={"amount": 250, "purpose": "Vendor payout"})
    assert first.json()["data"]["workflows_paused"] is True
    tx_count = len(store.escrow_transactions)

    resp = client.post(f"/api/v1/escrow/{deal_room_id}/release", json={"amount": 1000, "purpose": "Too much"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "ESCROW_INSUFFICIENT_BALANCE"
    assert "Available: 50.00, Requested: 1000.00" in resp.json()["error"]["message"]
    assert len(store.escrow_transactions) == tx_count
