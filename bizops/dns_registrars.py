"""
Registrar DNS clients (Cloudflare, GoDaddy, Namecheap).

Each client applies a list of ``{type, name, value, ttl}`` records to a
domain in a single pass. There is no retry and no rollback: a registrar
failure part-way through leaves whatever records were already accepted.
"""

from __future__ import annotations

import logging
import os
import xml.etree.ElementTree as ET
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from bizops.errors import ApiError

logger = logging.getLogger(__name__)

REGISTRARS = ("cloudflare", "godaddy", "namecheap")

_NAMECHEAP_NS = "{http://api.namecheap.com/xml.response}"


def registrar_error(registrar: str, message: str) -> ApiError:
    return ApiError(
        code="DNS_REGISTRAR_ERROR",
        message=f"{registrar}: {message}",
        error_class="transient",
        retryable=False,
        http_status=502,
    )


def _not_configured(registrar: str, missing: str) -> ApiError:
    return ApiError(
        code="DNS_REGISTRAR_NOT_CONFIGURED",
        message=f"{registrar} credentials missing: {missing}",
        error_class="validation",
        retryable=False,
        http_status=400,
    )


@dataclass(frozen=True)
class RegistrarConfig:
    cloudflare_api_token: str = ""
    cloudflare_api_base: str = "https://api.cloudflare.com/client/v4"
    godaddy_api_key: str = ""
    godaddy_api_secret: str = ""
    godaddy_api_base: str = "https://api.godaddy.com"
    namecheap_api_user: str = ""
    namecheap_api_key: str = ""
    namecheap_client_ip: str = ""
    namecheap_api_base: str = "https://api.namecheap.com"
    timeout_s: float = 20.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RegistrarConfig":
        env = os.environ if environ is None else environ
        return cls(
            cloudflare_api_token=env.get("CLOUDFLARE_API_TOKEN", "").strip(),
            cloudflare_api_base=env.get("CLOUDFLARE_API_BASE", "").strip() or cls.cloudflare_api_base,
            godaddy_api_key=env.get("GODADDY_API_KEY", "").strip(),
            godaddy_api_secret=env.get("GODADDY_API_SECRET", "").strip(),
            godaddy_api_base=env.get("GODADDY_API_BASE", "").strip() or cls.godaddy_api_base,
            namecheap_api_user=env.get("NAMECHEAP_API_USER", "").strip(),
            namecheap_api_key=env.get("NAMECHEAP_API_KEY", "").strip(),
            namecheap_client_ip=env.get("NAMECHEAP_CLIENT_IP", "").strip(),
            namecheap_api_base=env.get("NAMECHEAP_API_BASE", "").strip() or cls.namecheap_api_base,
        )


class _RegistrarClient:
    name = "registrar"

    def __init__(self, *, base_url: str, timeout_s: float, transport: httpx.BaseTransport | None, headers: dict[str, str] | None = None) -> None:
        self._client = httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout_s, transport=transport, headers=headers)

    def close(self) -> None:
        self._client.close()

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("dns_registrar_request_failed registrar=%s error=%s", self.name, type(exc).__name__)
            raise registrar_error(self.name, f"request failed: {type(exc).__name__}") from exc
        if response.status_code >= 400:
            raise registrar_error(self.name, f"HTTP {response.status_code}: {response.text[:200]}")
        return response

    def apply_records(self, domain: str, records: list[dict[str, Any]]) -> dict[str, Any]:
        raise NotImplementedError


class CloudflareClient(_RegistrarClient):
    name = "cloudflare"

    def __init__(self, *, api_token: str, api_base: str, timeout_s: float = 20.0, transport: httpx.BaseTransport | None = None) -> None:
        if not api_token:
            raise _not_configured(self.name, "CLOUDFLARE_API_TOKEN")
        super().__init__(
            base_url=api_base,
            timeout_s=timeout_s,
            transport=transport,
            headers={"Authorization": f"Bearer {api_token}"},
        )

    def _zone_id(self, domain: str) -> str:
        payload = self._send("GET", "/zones", params={"name": domain}).json()
        zones = payload.get("result") or []
        if not payload.get("success", False) or not zones:
            raise registrar_error(self.name, f"zone not found for {domain}")
        return str(zones[0]["id"])

    def apply_records(self, domain: str, records: list[dict[str, Any]]) -> dict[str, Any]:
        zone_id = self._zone_id(domain)
        created: list[str] = []
        for record in records:
            payload = self._send(
                "POST",
                f"/zones/{zone_id}/dns_records",
                json={
                    "type": record["type"],
                    "name": record["name"],
                    "content": record["value"],
                    "ttl": record.get("ttl") or 3600,
                },
            ).json()
            if not payload.get("success", False):
                errors = payload.get("errors") or []
                detail = errors[0].get("message") if errors else "record rejected"
                raise registrar_error(self.name, str(detail))
            created.append(str((payload.get("result") or {}).get("id", "")))
        return {"zone_id": zone_id, "record_ids": created}


class GoDaddyClient(_RegistrarClient):
    name = "godaddy"

    def __init__(self, *, api_key: str, api_secret: str, api_base: str, timeout_s: float = 20.0, transport: httpx.BaseTransport | None = None) -> None:
        if not api_key or not api_secret:
            raise _not_configured(self.name, "GODADDY_API_KEY/GODADDY_API_SECRET")
        super().__init__(
            base_url=api_base,
            timeout_s=timeout_s,
            transport=transport,
            headers={"Authorization": f"sso-key {api_key}:{api_secret}"},
        )

    def apply_records(self, domain: str, records: list[dict[str, Any]]) -> dict[str, Any]:
        body = [
            {"type": r["type"], "name": r["name"], "data": r["value"], "ttl": r.get("ttl") or 3600}
            for r in records
        ]
        response = self._send("PATCH", f"/v1/domains/{domain}/records", json=body)
        return {"status_code": response.status_code, "records_applied": len(body)}


class NamecheapClient(_RegistrarClient):
    name = "namecheap"

    def __init__(
        self,
        *,
        api_user: str,
        api_key: str,
        client_ip: str,
        api_base: str,
        timeout_s: float = 20.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not api_user or not api_key or not client_ip:
            raise _not_configured(self.name, "NAMECHEAP_API_USER/NAMECHEAP_API_KEY/NAMECHEAP_CLIENT_IP")
        self._api_user = api_user
        self._api_key = api_key
        self._client_ip = client_ip
        super().__init__(base_url=api_base, timeout_s=timeout_s, transport=transport)

    @staticmethod
    def split_domain(domain: str) -> tuple[str, str]:
        sld, _, tld = domain.partition(".")
        if not sld or not tld:
            raise registrar_error("namecheap", f"cannot split domain {domain!r} into SLD/TLD")
        return sld, tld

    def apply_records(self, domain: str, records: list[dict[str, Any]]) -> dict[str, Any]:
        sld, tld = self.split_domain(domain)
        params: dict[str, str] = {
            "ApiUser": self._api_user,
            "ApiKey": self._api_key,
            "UserName": self._api_user,
            "ClientIp": self._client_ip,
            "Command": "namecheap.domains.dns.setHosts",
            "SLD": sld,
            "TLD": tld,
        }
        for idx, record in enumerate(records, start=1):
            params[f"HostName{idx}"] = record["name"]
            params[f"RecordType{idx}"] = record["type"]
            params[f"Address{idx}"] = record["value"]
            params[f"TTL{idx}"] = str(record.get("ttl") or 1800)
        response = self._send("GET", "/xml.response", params=params)
        try:
            root = ET.fromstring(response.text)
        except ET.ParseError as exc:
            raise registrar_error(self.name, "unparseable XML response") from exc
        if root.get("Status", "").upper() == "ERROR":
            error = root.find(f"{_NAMECHEAP_NS}Errors/{_NAMECHEAP_NS}Error")
            if error is None:
                error = root.find("Errors/Error")
            raise registrar_error(self.name, (error.text or "unknown error") if error is not None else "unknown error")
        return {"sld": sld, "tld": tld, "records_applied": len(records)}


def build_registrar_client(
    registrar: str,
    cfg: RegistrarConfig,
    *,
    transport: httpx.BaseTransport | None = None,
) -> _RegistrarClient:
    if registrar == "cloudflare":
        return CloudflareClient(
            api_token=cfg.cloudflare_api_token,
            api_base=cfg.cloudflare_api_base,
            timeout_s=cfg.timeout_s,
            transport=transport,
        )
    if registrar == "godaddy":
        return GoDaddyClient(
            api_key=cfg.godaddy_api_key,
            api_secret=cfg.godaddy_api_secret,
            api_base=cfg.godaddy_api_base,
            timeout_s=cfg.timeout_s,
            transport=transport,
        )
    if registrar == "namecheap":
        return NamecheapClient(
            api_user=cfg.namecheap_api_user,
            api_key=cfg.namecheap_api_key,
            client_ip=cfg.namecheap_client_ip,
            api_base=cfg.namecheap_api_base,
            timeout_s=cfg.timeout_s,
            transport=transport,
        )
    raise ApiError(
        code="DNS_REGISTRAR_UNSUPPORTED",
        message=f"unsupported registrar: {registrar}",
        error_class="validation",
        retryable=False,
        http_status=400,
    )
