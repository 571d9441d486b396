from __future__ import annotations

import hashlib
import logging
import time
from datetime import UTC, datetime
from typing import Any

from bizops.errors import bad_request, forbidden, not_found
from bizops.repositories.deal_rooms import display_name
from bizops.repositories.xdk_ledger import insufficient_balance

logger = logging.getLogger(__name__)


def user_address_for(user_id: str) -> str:
    return f"xdk1user{user_id.replace('-', '')[:30]}"


def treasury_address_for(deal_room_id: str) -> str:
    return f"xdk1dealroom{deal_room_id.replace('-', '')[:26]}"


def _system_signature(*parts: str) -> str:
    material = ":".join(["system", *parts, str(time.time_ns())])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]


class StoreLedgerMixin:
    """Deal-room treasuries and XDK account plumbing shared by the money paths."""

    def require_deal_room(self, *, tenant_id: str, deal_room_id: str) -> dict[str, Any]:
        room = self.deal_rooms_repository.get(tenant_id=None, deal_room_id=deal_room_id)
        if room is None:
            raise not_found("DEAL_ROOM_NOT_FOUND", "Deal room not found")
        self._assert_tenant_scope(str(room.get("tenant_id") or ""), tenant_id)
        return room

    def ensure_user_account(self, *, tenant_id: str, user_id: str) -> dict[str, Any]:
        account = self.xdk_ledger_repository.find_user_account(tenant_id=None, user_id=user_id)
        if account is not None:
            return account
        logger.info("xdk_user_account_created user_id=%s", user_id)
        return self.xdk_ledger_repository.create_account(
            account={
                "address": user_address_for(user_id),
                "tenant_id": tenant_id,
                "user_id": user_id,
                "account_type": "user",
            }
        )

    def ensure_treasury(self, *, tenant_id: str, deal_room_id: str) -> dict[str, Any]:
        treasury = self.xdk_ledger_repository.get_treasury(tenant_id=None, deal_room_id=deal_room_id)
        if treasury is not None:
            return treasury
        logger.info("xdk_treasury_created deal_room_id=%s", deal_room_id)
        return self.xdk_ledger_repository.create_treasury(
            tenant_id=tenant_id,
            deal_room_id=deal_room_id,
            address=treasury_address_for(deal_room_id),
        )

    def get_treasury_overview(self, *, tenant_id: str, deal_room_id: str, limit: int = 20) -> dict[str, Any]:
        self.require_deal_room(tenant_id=tenant_id, deal_room_id=deal_room_id)
        treasury = self.xdk_ledger_repository.get_treasury(tenant_id=tenant_id, deal_room_id=deal_room_id)
        if treasury is None:
            raise not_found("TREASURY_NOT_FOUND", "Deal room treasury not found")
        address = str(treasury["xdk_address"])
        return {
            "deal_room_id": deal_room_id,
            "xdk_address": address,
            "balance": float(treasury.get("balance", 0.0)),
            "transactions": self.xdk_ledger_repository.list_transactions(
                tenant_id=tenant_id, address=address, limit=limit
            ),
        }

    def _resolve_transfer_destination(
        self,
        *,
        tenant_id: str,
        caller_id: str,
        payload: dict[str, Any],
    ) -> tuple[str, str | None, str]:
        """Returns ``(address, destination_user_id, destination_name)``."""
        wallet = str(payload.get("destination_wallet_address") or "").strip()
        target_user = str(payload.get("destination_user_id") or "").strip() or None
        if wallet:
            return wallet, target_user, "External wallet"
        if target_user is None and payload.get("destination_type") == "personal":
            target_user = caller_id
        if target_user is None:
            raise bad_request("DESTINATION_UNRESOLVED", "Could not determine destination wallet address")
        account = self.ensure_user_account(tenant_id=tenant_id, user_id=target_user)
        profile = self.deal_rooms_repository.get_profile(tenant_id=None, user_id=target_user)
        return str(account["address"]), target_user, display_name(profile, fallback="User")

    def transfer_from_treasury(
        self,
        *,
        tenant_id: str,
        caller_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        deal_room_id = str(payload["deal_room_id"])
        amount = float(payload["amount"])
        room = self.require_deal_room(tenant_id=tenant_id, deal_room_id=deal_room_id)
        if not self.deal_rooms_repository.can_administer(tenant_id=tenant_id, room=room, user_id=caller_id):
            logger.warning("xdk_transfer_denied user_id=%s deal_room_id=%s", caller_id, deal_room_id)
            raise forbidden("TREASURY_FORBIDDEN", "Only deal room admins can transfer from treasury")
        treasury = self.xdk_ledger_repository.get_treasury(tenant_id=tenant_id, deal_room_id=deal_room_id)
        if treasury is None:
            raise not_found("TREASURY_NOT_FOUND", "Deal room treasury not found")
        available = float(treasury.get("balance", 0.0))
        if available < amount:
            raise insufficient_balance(available, amount)

        to_address, destination_user_id, destination_name = self._resolve_transfer_destination(
            tenant_id=tenant_id,
            caller_id=caller_id,
            payload=payload,
        )
        from_address = str(treasury["xdk_address"])
        if to_address == from_address:
            raise bad_request("DESTINATION_UNRESOLVED", "Destination must differ from the treasury address")
        if self.xdk_ledger_repository.get_account(tenant_id=None, address=to_address) is None:
            self.xdk_ledger_repository.create_account(
                account={"address": to_address, "tenant_id": tenant_id, "account_type": "external"}
            )

        purpose = str(payload.get("purpose") or "Treasury distribution")
        logger.info("xdk_transfer_started from=%s to=%s amount=%s", from_address, to_address, amount)
        tx = self.xdk_ledger_repository.transfer(
            tenant_id=tenant_id,
            from_address=from_address,
            to_address=to_address,
            amount=amount,
            data={
                "deal_room_id": deal_room_id,
                "initiated_by": caller_id,
                "purpose": purpose,
                "destination_type": payload.get("destination_type"),
                "category_id": payload.get("category_id"),
            },
            signature=_system_signature(deal_room_id, caller_id),
        )

        initiator = display_name(
            self.deal_rooms_repository.get_profile(tenant_id=None, user_id=caller_id),
            fallback="Admin",
        )
        stamp = datetime.now(UTC).strftime("%b %d, %Y %H:%M UTC")
        room_name = str(room.get("name") or deal_room_id)
        self.value_ledger_repository.append(
            entry={
                "tenant_id": tenant_id,
                "deal_room_id": deal_room_id,
                "source_entity_type": "deal_room",
                "source_entity_name": room_name,
                "destination_user_id": destination_user_id,
                "destination_entity_type": "individual" if payload.get("destination_type") == "personal" else "entity",
                "destination_entity_name": destination_name,
                "entry_type": "internal_transfer",
                "amount": 0,
                "currency": "XDK",
                "xdk_amount": amount,
                "purpose": purpose,
                "reference_type": "xodiak_transaction",
                "reference_id": tx["tx_hash"],
                "contribution_credits": 0,
                "credit_category": "transfer",
                "verification_source": "xodiak_chain",
                "xdk_tx_hash": tx["tx_hash"],
                "narrative": (
                    f"{initiator} transferred {amount:.2f} XDK from {room_name} treasury to "
                    f"{destination_name} on {stamp}. Purpose: {purpose}"
                ),
                "category_id": payload.get("category_id"),
                "metadata": {"initiated_by": caller_id, "destination_type": payload.get("destination_type")},
            }
        )
        logger.info("xdk_transfer_completed tx_hash=%s amount=%s", tx["tx_hash"], amount)
        return {
            "tx_hash": tx["tx_hash"],
            "amount": amount,
            "from_address": from_address,
            "to_address": to_address,
        }

    def mint_to_user(
        self,
        *,
        tenant_id: str,
        user_id: str,
        amount: float,
        tx_type: str,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        account = self.ensure_user_account(tenant_id=tenant_id, user_id=user_id)
        return self.xdk_ledger_repository.mint(
            tenant_id=tenant_id,
            to_address=str(account["address"]),
            amount=amount,
            tx_type=tx_type,
            data=data,
        )
