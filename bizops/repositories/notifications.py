from __future__ import annotations

from typing import Any

from bizops.repositories.rows import RowStore, new_row_id, utcnow_iso


class NotificationsRepository:
    def __init__(self, *, notifications: RowStore) -> None:
        self._notifications = notifications

    def notify(
        self,
        *,
        tenant_id: str,
        user_id: str,
        type: str,
        title: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self._notifications.insert(
            row={
                "notification_id": new_row_id("ntf"),
                "tenant_id": tenant_id,
                "user_id": user_id,
                "type": type,
                "title": title,
                "message": message,
                "metadata": dict(metadata or {}),
                "read": False,
                "created_at": utcnow_iso(),
            }
        )

    def list_for_user(self, *, tenant_id: str | None, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        return self._notifications.find(
            tenant_id=tenant_id,
            filters={"user_id": user_id},
            order_by="created_at",
            descending=True,
            limit=limit,
        )
