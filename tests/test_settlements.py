from __future__ import annotations

import pytest

from bizops.errors import ApiError
from bizops.store import store
from bizops.store_settlements import compute_payout


def _contract(deal_room_id: str, **overrides) -> dict:
    return store.settlements_repository.create_contract(
        contract={
            "tenant_id": "tenant_default",
            "deal_room_id": deal_room_id,
            "name": "Partner revenue share",
            "payee_user_id": "user_partner",
            "distribution_logic": {"type": "percentage", "percentage": 10},
            **overrides,
        }
    )


def test_compute_payout_fixed_and_percentage():
    assert compute_payout({"distribution_logic": {"type": "fixed", "amount": 75}}, {}) == 75.0
    assert compute_payout({"distribution_logic": {"type": "percentage", "percentage": 12.5}}, {"amount": 1000}) == 125.0
    assert compute_payout({"distribution_logic": {"type": "percentage", "percentage": 10}}, {}) == 0.0


def test_compute_payout_rejects_unknown_distribution():
    with pytest.raises(ApiError) as exc:
        compute_payout({"distribution_logic": {"type": "tiered"}}, {"amount": 100})
    assert exc.value.code == "SETTLEMENT_DISTRIBUTION_INVALID"
    assert exc.value.http_status == 400


def test_internal_execute_releases_escrow_and_records_execution(client, seed_room, service_headers):
    room = seed_room(escrow_balance=2000.0)
    contract = _contract(room["deal_room_id"])

    resp = client.post(
        "/api/v1/internal/settlements/execute",
        headers=service_headers,
        json={"contract_id": contract["contract_id"], "trigger_event": {"amount": 1500}},
    )
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["amount"] == 150.0
    assert data["new_balance"] == 1850.0
    assert data["workflows_paused"] is False

    executions = store.settlements_repository.list_executions(tenant_id="tenant_default", contract_id=contract["contract_id"])
    assert executions[0]["execution_id"] == data["execution_id"]
    assert executions[0]["trigger_event"] == {"source": "internal", "amount": 1500}
    assert executions[0]["external_confirmed"] is False

    escrow_txs = store.escrow_repository.list_transactions(
        tenant_id=None, escrow_id=store.escrow_repository.get_for_deal_room(
            tenant_id=None, deal_room_id=room["deal_room_id"]
        )["escrow_id"]
    )
    release = next(tx for tx in escrow_txs if tx["transaction_id"] == data["escrow_transaction_id"])
    assert release["purpose"] == "Settlement: Partner revenue share"
    assert release["contract_id"] == contract["contract_id"]

    entry = store.value_ledger_repository.list_for_deal_room(tenant_id=None, deal_room_id=room["deal_room_id"])[0]
    assert entry["entry_type"] == "settlement_payout"
    assert entry["reference_id"] == data["execution_id"]
    audit = store.list_audit_logs(action="settlement_executed")
    assert audit[-1]["amount"] == 150.0
    assert audit[-1]["forced"] is False


def test_inactive_contract_needs_force(client, seed_room, service_headers):
    room = seed_room(escrow_balance=500.0)
    contract = _contract(room["deal_room_id"], is_active=False, distribution_logic={"type": "fixed", "amount": 50})

    blocked = client.post(
        "/api/v1/internal/settlements/execute",
        headers=service_headers,
        json={"contract_id": contract["contract_id"]},
    )
    assert blocked.status_code == 409
    assert blocked.json()["error"]["code"] == "SETTLEMENT_CONTRACT_INACTIVE"

    forced = client.post(
        "/api/v1/internal/settlements/execute",
        headers=service_headers,
        json={"contract_id": contract["contract_id"], "force": True},
    )
    assert forced.status_code == 200
    assert forced.json()["data"]["new_balance"] == 450.0
    assert store.list_audit_logs(action="settlement_executed")[-1]["forced"] is True


def test_settlement_failures_leave_escrow_untouched(client, seed_room, service_headers):
    room = seed_room(escrow_balance=100.0)
    missing = client.post(
        "/api/v1/internal/settlements/execute",
        headers=service_headers,
        json={"contract_id": "sc_missing"},
    )
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "SETTLEMENT_CONTRACT_NOT_FOUND"

    zero = _contract(room["deal_room_id"])
    resp = client.post(
        "/api/v1/internal/settlements/execute",
        headers=service_headers,
        json={"contract_id": zero["contract_id"], "trigger_event": {}},
    )
    assert resp.json()["error"]["code"] == "SETTLEMENT_AMOUNT_INVALID"

    too_big = _contract(room["deal_room_id"], distribution_logic={"type": "fixed", "amount": 100.01})
    resp = client.post(
        "/api/v1/internal/settlements/execute",
        headers=service_headers,
        json={"contract_id": too_big["contract_id"]},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "ESCROW_INSUFFICIENT_BALANCE"

    escrow = store.escrow_repository.get_for_deal_room(tenant_id=None, deal_room_id=room["deal_room_id"])
    assert escrow["total_released"] == 0.0
    assert store.settlements_repository.list_executions(tenant_id=None, contract_id=too_big["contract_id"]) == []


def test_contract_without_escrow(client, service_headers):
    contract = _contract("dr_no_escrow", distribution_logic={"type": "fixed", "amount": 10})
    resp = client.post(
        "/api/v1/internal/settlements/execute",
        headers=service_headers,
        json={"contract_id": contract["contract_id"]},
    )
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "ESCROW_NOT_FOUND"


def test_internal_routes_require_service_role_key(client):
    missing = client.post("/api/v1/internal/settlements/execute", json={"contract_id": "sc_1"})
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"

    wrong = client.post(
        "/api/v1/internal/settlements/execute",
        headers={"Authorization": "Bearer not-the-key"},
        json={"contract_id": "sc_1"},
    )
    assert wrong.status_code == 401
    assert store.list_audit_logs(action="security_blocked")[-1]["headers"]["authorization"] == "***REDACTED***"
