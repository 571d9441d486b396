def test_success_response_contains_trace_id_and_success_envelope(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.headers.get("x-trace-id")
    assert resp.headers.get("x-request-id")

    body = resp.json()
    assert body["success"] is True
    assert body["data"] == {"status": "ok"}
    assert body["message"] == "ok"
    assert body["meta"]["trace_id"]


def test_error_response_contains_standard_error_object(client):
    resp = client.get("/route-not-exists")
    assert resp.status_code == 404
    assert resp.headers.get("x-trace-id")
    assert resp.headers.get("x-request-id")

    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "REQ_NOT_FOUND"
    assert set(body["error"].keys()) >= {"code", "message", "retryable", "class"}
    assert body["meta"]["trace_id"]


def test_incoming_trace_and_request_ids_are_echoed(client):
    resp = client.get("/healthz", headers={"x-trace-id": "trace_echo_1", "x-request-id": "req_echo_1"})
    assert resp.headers["x-trace-id"] == "trace_echo_1"
    assert resp.headers["x-request-id"] == "req_echo_1"
    assert resp.json()["meta"]["trace_id"] == "trace_echo_1"


def test_invalid_body_maps_to_validation_error(client):
    resp = client.post(
        "/api/v1/treasury/transfers",
        headers={"Idempotency-Key": "idem_validation_1"},
        json={"deal_room_id": "dr_x", "amount": -5, "destination_type": "personal"},
    )
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "REQ_VALIDATION_FAILED"
    assert body["error"]["class"] == "validation"


def test_trace_id_strict_mode_rejects_missing_header(monkeypatch):
    from fastapi.testclient import TestClient

    from bizops.main import create_app

    monkeypatch.setenv("TRACE_ID_STRICT_REQUIRED", "true")
    strict = TestClient(create_app())
    resp = strict.get("/api/v1/treasury/dr_missing")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "TRACE_ID_REQUIRED"
