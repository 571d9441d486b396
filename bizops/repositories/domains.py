from __future__ import annotations

from typing import Any

from bizops.repositories.rows import RowStore, utcnow_iso


class DomainsRepository:
    def __init__(self, *, domains: RowStore) -> None:
        self._domains = domains

    @staticmethod
    def _key(tenant_id: str, domain: str) -> str:
        return f"{tenant_id}:{domain.lower()}"

    def get(self, *, tenant_id: str, domain: str) -> dict[str, Any] | None:
        return self._domains.get(tenant_id=tenant_id, key=self._key(tenant_id, domain))

    def record_dns_configuration(
        self,
        *,
        tenant_id: str,
        domain: str,
        registrar: str,
        records: list[dict[str, Any]],
        result: dict[str, Any],
        configured_by: str,
    ) -> dict[str, Any]:
        existing = self.get(tenant_id=tenant_id, domain=domain) or {}
        return self._domains.insert(
            row={
                **existing,
                "domain_key": self._key(tenant_id, domain),
                "tenant_id": tenant_id,
                "domain": domain.lower(),
                "registrar": registrar,
                "dns_records": list(records),
                "dns_result": dict(result),
                "dns_configured": True,
                "dns_configured_by": configured_by,
                "dns_configured_at": utcnow_iso(),
            }
        )
