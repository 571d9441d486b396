from __future__ import annotations

from typing import Any

from bizops.repositories.rows import RowStore, new_row_id, utcnow_iso


class WebhookEventsRepository:
    """Inbound third-party events and the CRM links HubSpot events produce."""

    def __init__(self, *, events: RowStore, crm_links: RowStore) -> None:
        self._events = events
        self._crm_links = crm_links

    @staticmethod
    def _key(source: str, event_id: str) -> str:
        return f"{source}:{event_id}"

    def log(
        self,
        *,
        source: str,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        tenant_id: str = "platform",
    ) -> dict[str, Any]:
        return self._events.insert(
            row={
                "event_key": self._key(source, event_id),
                "tenant_id": tenant_id,
                "source": source,
                "event_id": event_id,
                "event_type": event_type,
                "payload": payload,
                "processed": False,
                "processed_at": None,
                "processing_result": None,
                "error_message": None,
                "received_at": utcnow_iso(),
            }
        )

    def mark_processed(
        self,
        *,
        source: str,
        event_id: str,
        processed: bool,
        result: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> dict[str, Any] | None:
        return self._events.update(
            tenant_id=None,
            key=self._key(source, event_id),
            changes={
                "processed": processed,
                "processed_at": utcnow_iso(),
                "processing_result": result,
                "error_message": error_message,
            },
        )

    def get(self, *, source: str, event_id: str) -> dict[str, Any] | None:
        return self._events.get(tenant_id=None, key=self._key(source, event_id))

    def list(self, *, source: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        filters = {"source": source} if source else None
        return self._events.find(tenant_id=None, filters=filters, order_by="received_at", descending=True, limit=limit)

    def link_crm_entity(self, *, object_id: str, link_type: str, metadata: dict[str, Any]) -> dict[str, Any]:
        return self._crm_links.insert(
            row={
                "link_id": new_row_id("crm"),
                "tenant_id": "platform",
                "source_module": "hubspot",
                "source_entity_id": object_id,
                "target_module": "crm",
                "target_entity_id": object_id,
                "link_type": link_type,
                "discovered_by": "hubspot_webhook",
                "metadata": dict(metadata),
                "created_at": utcnow_iso(),
            }
        )

    def list_crm_links(self, *, link_type: str | None = None) -> list[dict[str, Any]]:
        filters = {"link_type": link_type} if link_type else None
        return self._crm_links.find(tenant_id=None, filters=filters, order_by="created_at")
