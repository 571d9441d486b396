from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from bizops.errors import ApiError, bad_request, forbidden, not_found
from bizops.repositories.deal_rooms import display_name
from bizops.repositories.escrow import available_balance

logger = logging.getLogger(__name__)


class StoreEscrowMixin:
    """Deal-room escrow: Stripe-verified deposits, admin releases, the kill switch."""

    def _stripe_payment_summary(self, *, session_id: str | None, payment_intent_id: str | None) -> dict[str, Any]:
        client = self.stripe_client()
        try:
            if payment_intent_id:
                intent = client.retrieve_payment_intent(payment_intent_id)
                return {
                    "completed": intent.get("status") == "succeeded",
                    "status": intent.get("status"),
                    "amount": float(intent.get("amount") or 0) / 100,
                    "currency": str(intent.get("currency") or "usd").upper(),
                    "metadata": dict(intent.get("metadata") or {}),
                    "stripe_reference": payment_intent_id,
                    "payment_intent_id": payment_intent_id,
                    "source": "payment_element",
                }
            session = client.retrieve_checkout_session(str(session_id))
            intent_id = session.get("payment_intent")
            return {
                "completed": session.get("payment_status") == "paid",
                "status": session.get("payment_status"),
                "amount": float(session.get("amount_total") or 0) / 100,
                "currency": str(session.get("currency") or "usd").upper(),
                "metadata": dict(session.get("metadata") or {}),
                "stripe_reference": str(intent_id or session_id),
                "payment_intent_id": str(intent_id) if intent_id else None,
                "source": "stripe_checkout",
            }
        finally:
            client.close()

    def verify_escrow_funding(self, *, tenant_id: str, caller_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        session_id = payload.get("session_id")
        payment_intent_id = payload.get("payment_intent_id")
        if not session_id and not payment_intent_id:
            raise bad_request("FUNDING_REFERENCE_REQUIRED", "session_id or payment_intent_id required")

        summary = self._stripe_payment_summary(session_id=session_id, payment_intent_id=payment_intent_id)
        if not summary["completed"]:
            raise ApiError(
                code="PAYMENT_NOT_COMPLETED",
                message=f"Payment not completed (status: {summary['status']})",
                error_class="business_rule",
                retryable=False,
                http_status=400,
            )

        metadata = summary["metadata"]
        deal_room_id = str(payload.get("deal_room_id") or metadata.get("deal_room_id") or "")
        if not deal_room_id:
            raise bad_request("DEAL_ROOM_REQUIRED", "deal_room_id required for funding verification")
        room = self.require_deal_room(tenant_id=tenant_id, deal_room_id=deal_room_id)

        requested_conversion = payload.get("xdk_conversion")
        xdk_conversion = (
            bool(requested_conversion)
            if requested_conversion is not None and summary["source"] == "payment_element"
            else str(metadata.get("xdk_conversion", "")).lower() == "true"
        )
        stripe_reference = summary["stripe_reference"]
        already = {"already_processed": True, "status": "completed", "stripe_reference": stripe_reference}

        if summary["payment_intent_id"] and self.escrow_repository.find_transaction_by_payment_intent(
            payment_intent_id=summary["payment_intent_id"]
        ):
            logger.info("escrow_funding_already_processed reference=%s", stripe_reference)
            return already
        funding_request = None
        if metadata.get("funding_request_id"):
            funding_request = self.billing_repository.get_funding_request(
                tenant_id=tenant_id,
                funding_request_id=str(metadata["funding_request_id"]),
            )
        if funding_request is None:
            funding_request = self.billing_repository.find_funding_request(
                tenant_id=tenant_id,
                stripe_reference=str(session_id or payment_intent_id),
            )
        if funding_request is not None and funding_request.get("status") == "completed":
            return already

        amount = float(summary["amount"])
        user_id = metadata.get("user_id") or caller_id
        escrow = self.escrow_repository.get_for_deal_room(tenant_id=tenant_id, deal_room_id=deal_room_id)
        if escrow is None:
            escrow = self.escrow_repository.create(
                escrow={
                    "tenant_id": tenant_id,
                    "deal_room_id": deal_room_id,
                    "currency": summary["currency"],
                    "escrow_type": "xdk_backed" if xdk_conversion else "internal",
                    "minimum_balance_threshold": self.integrations.escrow_default_min_balance,
                }
            )
        deposit = self.escrow_repository.deposit(
            escrow_id=str(escrow["escrow_id"]),
            amount=amount,
            fields={
                "stripe_payment_intent_id": summary["payment_intent_id"],
                "metadata": {
                    "stripe_payment_intent": stripe_reference,
                    "xdk_conversion": xdk_conversion,
                    "source": summary["source"],
                    "user_id": user_id,
                },
            },
        )
        logger.info("escrow_deposit_recorded escrow_id=%s amount=%s", escrow["escrow_id"], amount)

        xdk_amount = 0.0
        xdk_tx_hash = None
        if xdk_conversion:
            rate = self.xdk_ledger_repository.latest_rate(base_currency="USD")
            xdk_amount = round(amount * rate, 6)
            treasury = self.ensure_treasury(tenant_id=tenant_id, deal_room_id=deal_room_id)
            mint = self.xdk_ledger_repository.mint(
                tenant_id=tenant_id,
                to_address=str(treasury["xdk_address"]),
                amount=xdk_amount,
                tx_type="mint_funding",
                data={
                    "deal_room_id": deal_room_id,
                    "stripe_reference": stripe_reference,
                    "usd_amount": amount,
                    "exchange_rate": rate,
                    "funding_request_id": (funding_request or {}).get("funding_request_id"),
                },
            )
            xdk_tx_hash = mint["tx_hash"]

        if funding_request is not None:
            self.billing_repository.update_funding_request(
                funding_request_id=str(funding_request["funding_request_id"]),
                changes={
                    "status": "completed",
                    "verified_at": self._utcnow_iso(),
                    "xdk_tx_hash": xdk_tx_hash,
                    "metadata": {
                        "stripe_reference": stripe_reference,
                        "amount_received": amount,
                        "xdk_amount": xdk_amount,
                    },
                },
            )

        profile = self.deal_rooms_repository.get_profile(tenant_id=None, user_id=str(user_id))
        source_name = str((profile or {}).get("company") or display_name(profile, fallback="Unknown"))
        room_name = str(room.get("name") or "Deal Room")
        stamp = datetime.now(UTC).strftime("%b %d, %Y %H:%M UTC")
        narrative = f"{source_name} deposited ${amount:.2f} to {room_name} escrow on {stamp}."
        if xdk_conversion:
            narrative += f" {xdk_amount:.2f} XDK minted to treasury."
        self.value_ledger_repository.append(
            entry={
                "tenant_id": tenant_id,
                "deal_room_id": deal_room_id,
                "source_user_id": user_id,
                "source_entity_type": "company" if (profile or {}).get("company") else "individual",
                "source_entity_name": source_name,
                "destination_entity_type": "deal_room",
                "destination_entity_name": room_name,
                "entry_type": "escrow_deposit",
                "amount": amount,
                "currency": summary["currency"],
                "xdk_amount": xdk_amount if xdk_conversion else None,
                "purpose": "Escrow funding for deal room operations",
                "reference_type": "payment_intent" if summary["source"] == "payment_element" else "escrow_funding_request",
                "reference_id": (funding_request or {}).get("funding_request_id") or stripe_reference,
                "contribution_credits": round(amount / 10),
                "credit_category": "funding",
                "verification_source": "stripe",
                "verification_id": stripe_reference,
                "xdk_tx_hash": xdk_tx_hash,
                "narrative": narrative,
            }
        )
        self._append_audit_log(
            log={
                "tenant_id": tenant_id,
                "action": "escrow_funding_verified",
                "actor": caller_id,
                "deal_room_id": deal_room_id,
                "escrow_id": escrow["escrow_id"],
                "amount": amount,
                "stripe_reference": stripe_reference,
            }
        )
        return {
            "escrow_id": escrow["escrow_id"],
            "amount_deposited": amount,
            "new_balance": available_balance(deposit["escrow"]),
            "xdk_conversion": xdk_conversion,
            "xdk_amount": xdk_amount,
            "xdk_tx_hash": xdk_tx_hash,
        }

    def release_escrow_funds(
        self,
        *,
        escrow: dict[str, Any],
        amount: float,
        fields: dict[str, Any],
        force: bool = False,
    ) -> dict[str, Any]:
        """Release through the atomic repository path and report the kill-switch outcome."""
        result = self.escrow_repository.release(
            escrow_id=str(escrow["escrow_id"]),
            amount=amount,
            fields=fields,
            allow_paused=force,
        )
        decision = result["kill_switch"]
        if decision["should_pause"] and not decision["already_paused"]:
            logger.warning(
                "escrow_kill_switch_tripped escrow_id=%s available=%s threshold=%s",
                escrow["escrow_id"],
                decision["available"],
                decision["threshold"],
            )
            self._append_audit_log(
                log={
                    "tenant_id": escrow["tenant_id"],
                    "action": "escrow_workflows_paused",
                    "escrow_id": escrow["escrow_id"],
                    "reason": decision["reason"],
                }
            )
        return result

    def release_escrow(
        self,
        *,
        tenant_id: str,
        caller_id: str,
        deal_room_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        room = self.require_deal_room(tenant_id=tenant_id, deal_room_id=deal_room_id)
        if not self.deal_rooms_repository.can_administer(tenant_id=tenant_id, room=room, user_id=caller_id):
            raise forbidden("ESCROW_FORBIDDEN", "Only deal room admins can release escrow funds")
        escrow = self.escrow_repository.get_for_deal_room(tenant_id=tenant_id, deal_room_id=deal_room_id)
        if escrow is None:
            raise not_found("ESCROW_NOT_FOUND", "Deal room escrow not found")

        amount = float(payload["amount"])
        result = self.release_escrow_funds(
            escrow=escrow,
            amount=amount,
            fields={
                "purpose": payload.get("purpose"),
                "recipient_user_id": payload.get("recipient_user_id"),
                "released_by": caller_id,
            },
            force=bool(payload.get("force")),
        )
        updated = result["escrow"]
        logger.info("escrow_released escrow_id=%s amount=%s", escrow["escrow_id"], amount)
        return {
            "escrow_id": escrow["escrow_id"],
            "transaction_id": result["transaction"]["transaction_id"],
            "amount": amount,
            "new_balance": available_balance(updated),
            "workflows_paused": bool(updated.get("workflows_paused")),
            "kill_switch": result["kill_switch"],
        }

    def get_escrow_overview(self, *, tenant_id: str, deal_room_id: str, limit: int = 20) -> dict[str, Any]:
        self.require_deal_room(tenant_id=tenant_id, deal_room_id=deal_room_id)
        escrow = self.escrow_repository.get_for_deal_room(tenant_id=tenant_id, deal_room_id=deal_room_id)
        if escrow is None:
            raise not_found("ESCROW_NOT_FOUND", "Deal room escrow not found")
        return {
            **escrow,
            "available_balance": available_balance(escrow),
            "transactions": self.escrow_repository.list_transactions(
                tenant_id=tenant_id, escrow_id=str(escrow["escrow_id"]), limit=limit
            ),
        }
