import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
import jwt

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bizops.main import create_app
from bizops.store import store

JWT_SECRET = "jwt_test_secret"
SERVICE_ROLE_KEY = "service_role_test_key"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
HUBSPOT_CLIENT_SECRET = "hubspot_test_secret"
HUBSPOT_WEBHOOK_URL = "https://edge.bizops.test/api/v1/webhooks/hubspot"


def _issue_token(*, secret: str, tenant_id: str, user_id: str | None = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id or f"user_{tenant_id}",
        "tenant_id": tenant_id,
        "exp": int((now + timedelta(minutes=30)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    def __init__(self, client: TestClient, *, jwt_secret: str):
        self._client = client
        self._jwt_secret = jwt_secret

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        user_id = kwargs.pop("user_id", None)
        if url.startswith("/api/v1/") and not url.startswith("/api/v1/internal/"):
            if "Authorization" not in headers:
                tenant_id = headers.get("x-tenant-id") or "tenant_default"
                token = _issue_token(secret=self._jwt_secret, tenant_id=str(tenant_id), user_id=user_id)
                headers["Authorization"] = f"Bearer {token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs):
        return self.request("PUT", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


@pytest.fixture(autouse=True)
def reset_store(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "tenant_id,sub,exp")
    monkeypatch.setenv("SERVICE_ROLE_KEY", SERVICE_ROLE_KEY)
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_bizops")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", STRIPE_WEBHOOK_SECRET)
    monkeypatch.setenv("HUBSPOT_CLIENT_SECRET", HUBSPOT_CLIENT_SECRET)
    monkeypatch.setenv("HUBSPOT_WEBHOOK_URL", HUBSPOT_WEBHOOK_URL)
    monkeypatch.setenv("ESCROW_DEFAULT_MIN_BALANCE", "100")
    store.reset()
    yield


@pytest.fixture
def client() -> TestClient:
    app = create_app()
    base = TestClient(app)
    return AuthenticatedClient(base, jwt_secret=JWT_SECRET)


@pytest.fixture
def service_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {SERVICE_ROLE_KEY}"}


@pytest.fixture
def seed_room():
    """Deal room owned by ``user_<tenant>``, optionally with a funded treasury and escrow."""

    def _seed(
        *,
        tenant_id: str = "tenant_default",
        name: str = "Acme Launch",
        treasury_balance: float | None = None,
        escrow_balance: float | None = None,
        min_balance: float = 0.0,
    ) -> dict:
        room = store.deal_rooms_repository.create(
            room={"tenant_id": tenant_id, "name": name, "created_by": f"user_{tenant_id}"}
        )
        deal_room_id = room["deal_room_id"]
        if treasury_balance is not None:
            treasury = store.ensure_treasury(tenant_id=tenant_id, deal_room_id=deal_room_id)
            if treasury_balance:
                store.xdk_ledger_repository.mint(
                    tenant_id=tenant_id,
                    to_address=treasury["xdk_address"],
                    amount=treasury_balance,
                    tx_type="mint_funding",
                )
        if escrow_balance is not None:
            escrow = store.escrow_repository.create(
                escrow={
                    "tenant_id": tenant_id,
                    "deal_room_id": deal_room_id,
                    "minimum_balance_threshold": min_balance,
                }
            )
            if escrow_balance:
                store.escrow_repository.deposit(escrow_id=escrow["escrow_id"], amount=escrow_balance, fields={})
        return room

    return _seed
