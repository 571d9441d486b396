from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class IntegrationConfig:
    stripe_secret_key: str
    stripe_webhook_secret: str
    stripe_api_base: str
    hubspot_client_secret: str
    hubspot_webhook_url: str
    webhook_tolerance_seconds: int
    platform_invoice_tag: str
    escrow_default_min_balance: float

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key and self.stripe_webhook_secret)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "IntegrationConfig":
        env = os.environ if environ is None else environ
        webhook_secret = (
            env.get("STRIPE_WEBHOOK_SECRET", "").strip() or env.get("STRIPE_UNIFIED_WEBHOOK_SECRET", "").strip()
        )
        return cls(
            stripe_secret_key=env.get("STRIPE_SECRET_KEY", "").strip(),
            stripe_webhook_secret=webhook_secret,
            stripe_api_base=env.get("STRIPE_API_BASE", "https://api.stripe.com").strip().rstrip("/"),
            hubspot_client_secret=env.get("HUBSPOT_CLIENT_SECRET", "").strip(),
            hubspot_webhook_url=env.get("HUBSPOT_WEBHOOK_URL", "").strip(),
            webhook_tolerance_seconds=_env_int(env, "WEBHOOK_TOLERANCE_SECONDS", default=300, minimum=1),
            platform_invoice_tag=env.get("PLATFORM_INVOICE_TAG", "biz_dev_app").strip() or "biz_dev_app",
            escrow_default_min_balance=_env_float(env, "ESCROW_DEFAULT_MIN_BALANCE", default=1000.0),
        )


def configure_logging(environ: Mapping[str, str] | None = None) -> None:
    env = os.environ if environ is None else environ
    level_name = env.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
