from __future__ import annotations

from typing import Any

from bizops.repositories.rows import RowStore, new_row_id, utcnow_iso

ADMIN_ROLES = frozenset({"owner", "admin"})


class DealRoomsRepository:
    """Deal rooms, their participants, and the user profiles they reference."""

    def __init__(self, *, rooms: RowStore, participants: RowStore, profiles: RowStore) -> None:
        self._rooms = rooms
        self._participants = participants
        self._profiles = profiles

    def get(self, *, tenant_id: str | None, deal_room_id: str) -> dict[str, Any] | None:
        return self._rooms.get(tenant_id=tenant_id, key=deal_room_id)

    def create(self, *, room: dict[str, Any]) -> dict[str, Any]:
        item = {"deal_room_id": new_row_id("dr"), "created_at": utcnow_iso(), **room}
        return self._rooms.insert(row=item)

    def add_participant(self, *, tenant_id: str, deal_room_id: str, user_id: str, role: str) -> dict[str, Any]:
        return self._participants.insert(
            row={
                "participant_id": f"{deal_room_id}:{user_id}",
                "tenant_id": tenant_id,
                "deal_room_id": deal_room_id,
                "user_id": user_id,
                "role": role,
                "joined_at": utcnow_iso(),
            }
        )

    def participant_role(self, *, tenant_id: str | None, deal_room_id: str, user_id: str) -> str | None:
        row = self._participants.get(tenant_id=tenant_id, key=f"{deal_room_id}:{user_id}")
        return None if row is None else str(row.get("role") or "")

    def can_administer(self, *, tenant_id: str | None, room: dict[str, Any], user_id: str) -> bool:
        if room.get("created_by") == user_id:
            return True
        role = self.participant_role(tenant_id=tenant_id, deal_room_id=str(room["deal_room_id"]), user_id=user_id)
        return role in ADMIN_ROLES

    def get_profile(self, *, tenant_id: str | None, user_id: str) -> dict[str, Any] | None:
        return self._profiles.get(tenant_id=tenant_id, key=user_id)

    def upsert_profile(self, *, profile: dict[str, Any]) -> dict[str, Any]:
        return self._profiles.insert(row=profile)

    def platform_owner(self) -> dict[str, Any] | None:
        return self._profiles.find_one(tenant_id=None, filters={"account_level": "owner"})

    def update_connect_account(self, *, account_id: str, changes: dict[str, Any]) -> list[dict[str, Any]]:
        updated: list[dict[str, Any]] = []
        for profile in self._profiles.find(tenant_id=None, filters={"stripe_connect_account_id": account_id}):
            row = self._profiles.update(tenant_id=None, key=str(profile["user_id"]), changes=changes)
            if row is not None:
                updated.append(row)
        return updated


def display_name(profile: dict[str, Any] | None, *, fallback: str = "Unknown User") -> str:
    if not profile:
        return fallback
    full = f"{profile.get('first_name') or ''} {profile.get('last_name') or ''}".strip()
    return full or str(profile.get("full_name") or profile.get("email") or fallback)
