from __future__ import annotations

import logging
from typing import Any

from bizops.dns_registrars import build_registrar_client

logger = logging.getLogger(__name__)


class StoreDomainsMixin:
    def configure_dns(
        self,
        *,
        tenant_id: str,
        caller_id: str,
        domain: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        registrar = str(payload["registrar"])
        records = [dict(r) for r in payload.get("records") or []]
        client = build_registrar_client(registrar, self.registrar_config, transport=self.registrar_transport)
        logger.info("dns_configure_started domain=%s registrar=%s records=%s", domain, registrar, len(records))
        try:
            result = client.apply_records(domain, records)
        finally:
            client.close()
        row = self.domains_repository.record_dns_configuration(
            tenant_id=tenant_id,
            domain=domain,
            registrar=registrar,
            records=records,
            result=result,
            configured_by=caller_id,
        )
        self._append_audit_log(
            log={
                "tenant_id": tenant_id,
                "action": "dns_configured",
                "actor": caller_id,
                "domain": row["domain"],
                "registrar": registrar,
                "records_count": len(records),
            }
        )
        logger.info("dns_configure_completed domain=%s registrar=%s", domain, registrar)
        return {
            "domain": row["domain"],
            "registrar": registrar,
            "records_applied": len(records),
            "result": result,
            "dns_configured_at": row["dns_configured_at"],
        }
