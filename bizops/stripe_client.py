"""
Minimal Stripe REST client for the objects the webhook and escrow handlers read.

Only GET retrievals are needed: checkout sessions, payment intents (with the
``latest_charge.balance_transaction`` expansion for fee breakdowns).
Authentication is HTTP basic with the secret key as username.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from bizops.errors import ApiError, upstream_unavailable
from bizops.settings import IntegrationConfig

logger = logging.getLogger(__name__)


class StripeClient:
    def __init__(
        self,
        *,
        secret_key: str,
        api_base: str = "https://api.stripe.com",
        timeout_s: float = 20.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not secret_key:
            raise ApiError(
                code="STRIPE_NOT_CONFIGURED",
                message="Stripe not configured",
                error_class="internal",
                retryable=False,
                http_status=500,
            )
        self._client = httpx.Client(
            base_url=api_base.rstrip("/"),
            auth=(secret_key, ""),
            timeout=timeout_s,
            transport=transport,
        )

    @classmethod
    def from_config(cls, cfg: IntegrationConfig, *, transport: httpx.BaseTransport | None = None) -> "StripeClient":
        return cls(secret_key=cfg.stripe_secret_key, api_base=cfg.stripe_api_base, transport=transport)

    def close(self) -> None:
        self._client.close()

    def _get(self, path: str, *, params: list[tuple[str, str]] | None = None) -> dict[str, Any]:
        try:
            response = self._client.get(path, params=params)
        except httpx.HTTPError as exc:
            logger.warning("stripe_request_failed path=%s error=%s", path, type(exc).__name__)
            raise upstream_unavailable(
                "STRIPE_UPSTREAM_UNAVAILABLE", f"stripe request failed: {type(exc).__name__}"
            ) from exc
        if response.status_code == 404:
            raise ApiError(
                code="STRIPE_OBJECT_NOT_FOUND",
                message=f"stripe object not found: {path}",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        if response.status_code >= 400:
            raise ApiError(
                code="STRIPE_UPSTREAM_ERROR",
                message=f"stripe returned {response.status_code}: {response.text[:200]}",
                error_class="transient",
                retryable=response.status_code >= 500,
                http_status=502,
            )
        return response.json()

    def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        return self._get(f"/v1/checkout/sessions/{session_id}")

    def retrieve_payment_intent(self, payment_intent_id: str, *, expand: list[str] | None = None) -> dict[str, Any]:
        params = [("expand[]", item) for item in expand or []]
        return self._get(f"/v1/payment_intents/{payment_intent_id}", params=params or None)


def fee_breakdown(payment_intent: dict[str, Any]) -> dict[str, float]:
    """Gross/fee/net in major units from an expanded payment intent."""
    gross = float(payment_intent.get("amount_received") or payment_intent.get("amount") or 0) / 100
    charge = payment_intent.get("latest_charge")
    balance_tx = charge.get("balance_transaction") if isinstance(charge, dict) else None
    if isinstance(balance_tx, dict):
        return {
            "gross_amount": gross,
            "stripe_fee": float(balance_tx.get("fee") or 0) / 100,
            "net_amount": float(balance_tx.get("net") or 0) / 100,
        }
    return {"gross_amount": gross, "stripe_fee": 0.0, "net_amount": gross}
