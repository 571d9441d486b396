from __future__ import annotations

from typing import Any

from bizops.repositories.rows import RowStore, new_row_id, utcnow_iso


class ValueLedgerRepository:
    def __init__(self, *, entries: RowStore) -> None:
        self._entries = entries

    def append(self, *, entry: dict[str, Any]) -> dict[str, Any]:
        item = {"entry_id": new_row_id("vle"), "created_at": utcnow_iso(), "metadata": {}, **entry}
        return self._entries.insert(row=item)

    def list_for_deal_room(self, *, tenant_id: str | None, deal_room_id: str, limit: int = 100) -> list[dict[str, Any]]:
        return self._entries.find(
            tenant_id=tenant_id,
            filters={"deal_room_id": deal_room_id},
            order_by="created_at",
            descending=True,
            limit=limit,
        )
