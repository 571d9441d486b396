"""
Stripe webhook dispatch.

Money in:   payment_intent.*, invoice.*, charge.refunded, charge.dispute.*
Money out:  transfer.*, payout.*
Connect:    account.updated

Each handler returns a small result dict that is merged into the webhook
response as ``{"received": true, **result}``. Events that a handler skips
(``processed: false`` with a ``reason``) write nothing at all; events that
change state are journalled to ``webhook_events``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from bizops.repositories.deal_rooms import display_name
from bizops.stripe_client import fee_breakdown

logger = logging.getLogger(__name__)

_WITHDRAWAL_CLOSED_STATUSES = frozenset({"failed", "reversed"})


def _stamp() -> str:
    return datetime.now(UTC).strftime("%b %d, %Y %H:%M UTC")


class StoreStripeMixin:
    STRIPE_HANDLERS: dict[str, str] = {
        "payment_intent.succeeded": "_stripe_payment_intent_succeeded",
        "payment_intent.payment_failed": "_stripe_payment_intent_failed",
        "invoice.paid": "_stripe_invoice_paid",
        "invoice.payment_failed": "_stripe_invoice_payment_failed",
        "invoice.voided": "_stripe_invoice_voided",
        "charge.refunded": "_stripe_charge_refunded",
        "charge.dispute.created": "_stripe_dispute_created",
        "charge.dispute.closed": "_stripe_dispute_closed",
        "transfer.created": "_stripe_transfer_created",
        "transfer.failed": "_stripe_transfer_failed",
        "transfer.reversed": "_stripe_transfer_reversed",
        "payout.paid": "_stripe_payout_paid",
        "payout.failed": "_stripe_payout_failed",
        "account.updated": "_stripe_account_updated",
    }

    def handle_stripe_event(self, *, event: dict[str, Any]) -> dict[str, Any]:
        event_type = str(event["type"])
        event_id = str(event["id"])
        handler_name = self.STRIPE_HANDLERS.get(event_type)
        logger.info("stripe_event_received type=%s id=%s", event_type, event_id)
        if handler_name is None:
            logger.info("stripe_event_unhandled type=%s", event_type)
            return {"received": True}

        obj = dict(event["data"]["object"])
        try:
            result = getattr(self, handler_name)(obj)
        except Exception as exc:
            logger.exception("stripe_event_failed type=%s id=%s", event_type, event_id)
            self.webhook_events_repository.log(source="stripe", event_id=event_id, event_type=event_type, payload=obj)
            self.webhook_events_repository.mark_processed(
                source="stripe",
                event_id=event_id,
                processed=False,
                error_message=str(exc),
            )
            raise
        if result.get("processed"):
            self.webhook_events_repository.log(source="stripe", event_id=event_id, event_type=event_type, payload=obj)
            self.webhook_events_repository.mark_processed(
                source="stripe",
                event_id=event_id,
                processed=True,
                result=result,
            )
        return {"received": True, **result}

    # money in

    def _stripe_payment_intent_succeeded(self, intent: dict[str, Any]) -> dict[str, Any]:
        metadata = dict(intent.get("metadata") or {})
        if metadata.get("type") != "fund_contribution":
            logger.info("stripe_payment_intent_skipped type=%s", metadata.get("type"))
            return {"processed": False, "reason": "not_fund_contribution"}

        fund_request_id = str(metadata.get("fund_request_id") or "")
        fund_request = self.billing_repository.get_fund_request(tenant_id=None, fund_request_id=fund_request_id)
        if fund_request is None:
            logger.warning("stripe_fund_request_not_found fund_request_id=%s", fund_request_id)
            return {"processed": False, "reason": "fund_request_not_found"}
        if fund_request.get("status") == "paid":
            return {"processed": False, "reason": "already_processed"}

        client = self.stripe_client()
        try:
            expanded = client.retrieve_payment_intent(
                str(intent["id"]), expand=["latest_charge.balance_transaction"]
            )
        finally:
            client.close()
        fees = fee_breakdown(expanded)
        gross, fee, net = fees["gross_amount"], fees["stripe_fee"], fees["net_amount"]

        tenant_id = str(fund_request["tenant_id"])
        deal_room_id = str(metadata.get("deal_room_id") or fund_request.get("deal_room_id") or "")
        user_id = str(metadata.get("user_id") or fund_request.get("user_id") or "")
        rate = self.xdk_ledger_repository.latest_rate(base_currency="USD")
        xdk_amount = round(net * rate, 6)
        treasury = self.ensure_treasury(tenant_id=tenant_id, deal_room_id=deal_room_id)
        tx = self.xdk_ledger_repository.mint(
            tenant_id=tenant_id,
            to_address=str(treasury["xdk_address"]),
            amount=xdk_amount,
            tx_type="fund_contribution",
            from_address="stripe_payment",
            data={
                "fund_request_id": fund_request_id,
                "deal_room_id": deal_room_id,
                "user_id": user_id,
                "gross_amount": gross,
                "stripe_fee": fee,
                "net_amount": net,
                "exchange_rate": rate,
                "stripe_payment_intent_id": intent["id"],
            },
        )
        self.billing_repository.update_fund_request(
            fund_request_id=fund_request_id,
            changes={
                "status": "paid",
                "paid_at": self._utcnow_iso(),
                "gross_amount": gross,
                "stripe_fee": fee,
                "net_amount": net,
                "xdk_amount": xdk_amount,
                "xdk_tx_hash": tx["tx_hash"],
                "stripe_payment_intent_id": intent["id"],
            },
        )

        user_name = display_name(self.deal_rooms_repository.get_profile(tenant_id=None, user_id=user_id))
        fee_note = f" (Gross: ${gross:,.2f}, Fee: ${fee:.2f})" if fee > 0 else ""
        self.value_ledger_repository.append(
            entry={
                "tenant_id": tenant_id,
                "deal_room_id": deal_room_id,
                "entity_type": "user",
                "entity_id": user_id,
                "entry_type": "fund_contribution",
                "amount": net,
                "currency": "XDK",
                "gross_amount": gross,
                "processing_fee": fee,
                "narrative": f"{user_name} contributed ${net:,.2f} ({xdk_amount:.2f} XDK) to the treasury{fee_note}",
                "metadata": {
                    "fund_request_id": fund_request_id,
                    "purpose": fund_request.get("purpose"),
                    "exchange_rate": rate,
                    "stripe_payment_intent_id": intent["id"],
                    "tx_hash": tx["tx_hash"],
                },
            }
        )
        room = self.deal_rooms_repository.get(tenant_id=None, deal_room_id=deal_room_id) or {}
        if room.get("created_by"):
            self.notifications_repository.notify(
                tenant_id=tenant_id,
                user_id=str(room["created_by"]),
                type="fund_contribution_received",
                title="Fund Contribution Received",
                message=f"{user_name} contributed ${net:,.2f} to {room.get('name') or 'your deal room'} treasury",
                metadata={
                    "deal_room_id": deal_room_id,
                    "fund_request_id": fund_request_id,
                    "net_amount": net,
                    "xdk_amount": xdk_amount,
                    "contributor_id": user_id,
                },
            )
        logger.info("stripe_fund_contribution_processed fund_request_id=%s xdk=%s", fund_request_id, xdk_amount)
        return {"processed": True, "xdk_minted": xdk_amount, "tx_hash": tx["tx_hash"]}

    def _stripe_payment_intent_failed(self, intent: dict[str, Any]) -> dict[str, Any]:
        metadata = dict(intent.get("metadata") or {})
        if metadata.get("type") == "fund_contribution" and metadata.get("fund_request_id"):
            self.billing_repository.update_fund_request(
                fund_request_id=str(metadata["fund_request_id"]),
                changes={"status": "failed"},
            )
        return {"processed": True}

    def _is_platform_invoice(self, invoice: dict[str, Any]) -> bool:
        return (invoice.get("metadata") or {}).get("platform") == self.integrations.platform_invoice_tag

    def _stripe_invoice_paid(self, invoice: dict[str, Any]) -> dict[str, Any]:
        if not self._is_platform_invoice(invoice):
            return {"processed": False, "reason": "not_platform_invoice"}
        platform_invoice = self.billing_repository.find_invoice_by_stripe_id(stripe_invoice_id=str(invoice["id"]))
        if platform_invoice is None:
            logger.warning("stripe_platform_invoice_not_found stripe_invoice_id=%s", invoice["id"])
            return {"processed": False, "reason": "not_found"}
        if platform_invoice.get("status") == "paid" and platform_invoice.get("xdk_credited"):
            return {"processed": False, "reason": "already_processed"}

        metadata = dict(invoice.get("metadata") or {})
        tenant_id = str(platform_invoice["tenant_id"])
        invoice_id = str(platform_invoice["invoice_id"])
        amount = float(invoice.get("amount_paid") or 0) / 100
        creator_id = str(metadata.get("creator_id") or platform_invoice.get("creator_id") or "")
        wallet = metadata.get("xdk_recipient_wallet") or platform_invoice.get("xdk_recipient_wallet")
        rate = self.xdk_ledger_repository.latest_rate(base_currency="USD")
        xdk_amount = round(amount * rate, 6)
        mint_data = {
            "platform_invoice_id": invoice_id,
            "stripe_invoice_id": invoice["id"],
            "usd_amount": amount,
            "exchange_rate": rate,
            "client_id": platform_invoice.get("client_id"),
        }

        if wallet:
            if self.xdk_ledger_repository.get_account(tenant_id=None, address=str(wallet)) is None:
                self.xdk_ledger_repository.create_account(
                    account={"address": str(wallet), "tenant_id": tenant_id, "account_type": "external"}
                )
            tx = self.xdk_ledger_repository.mint(
                tenant_id=tenant_id,
                to_address=str(wallet),
                amount=xdk_amount,
                tx_type="mint_invoice_payment",
                data=mint_data,
            )
        else:
            tx = self.mint_to_user(
                tenant_id=tenant_id,
                user_id=creator_id,
                amount=xdk_amount,
                tx_type="mint_invoice_payment",
                data=mint_data,
            )

        treasury_tx = None
        deal_room_id = platform_invoice.get("deal_room_id")
        if platform_invoice.get("route_to_treasury") and deal_room_id:
            treasury = self.ensure_treasury(tenant_id=tenant_id, deal_room_id=str(deal_room_id))
            treasury_tx = self.xdk_ledger_repository.mint(
                tenant_id=tenant_id,
                to_address=str(treasury["xdk_address"]),
                amount=xdk_amount,
                tx_type="mint_treasury_routing",
                data={**mint_data, "routed_from_invoice": True},
            )

        self.billing_repository.update_invoice(
            invoice_id=invoice_id,
            changes={
                "status": "paid",
                "paid_at": self._utcnow_iso(),
                "xdk_credited": True,
                "xdk_amount": xdk_amount,
                "xdk_tx_hash": tx["tx_hash"],
                "treasury_credited": treasury_tx is not None,
                "treasury_xdk_amount": xdk_amount if treasury_tx is not None else None,
            },
        )
        self.notifications_repository.notify(
            tenant_id=tenant_id,
            user_id=creator_id,
            type="payment_received",
            title="Invoice Paid",
            message=f"Payment of ${amount:.2f} received. {xdk_amount:.2f} XDK credited to your wallet.",
            metadata={"invoice_id": invoice_id, "amount": amount, "xdk_amount": xdk_amount, "tx_hash": tx["tx_hash"]},
        )

        creator = self.deal_rooms_repository.get_profile(tenant_id=None, user_id=creator_id) or {}
        creator_name = str(creator.get("company") or creator.get("full_name") or "Creator")
        client_name = str(platform_invoice.get("client_name") or "Client")
        self.value_ledger_repository.append(
            entry={
                "tenant_id": tenant_id,
                "deal_room_id": deal_room_id,
                "source_entity_type": "company",
                "source_entity_name": client_name,
                "destination_user_id": creator_id,
                "destination_entity_type": "company" if creator.get("company") else "individual",
                "destination_entity_name": creator_name,
                "entry_type": "invoice_payment",
                "amount": amount,
                "currency": "USD",
                "xdk_amount": xdk_amount,
                "purpose": platform_invoice.get("description") or "Invoice payment",
                "reference_type": "platform_invoice",
                "reference_id": invoice_id,
                "contribution_credits": round(amount / 10),
                "credit_category": "funding",
                "verification_source": "stripe",
                "verification_id": invoice["id"],
                "xdk_tx_hash": tx["tx_hash"],
                "narrative": (
                    f"{client_name} paid ${amount:.2f} invoice to {creator_name} on {_stamp()}. "
                    f"{xdk_amount:.2f} XDK credited."
                ),
                "metadata": {
                    "invoice_number": platform_invoice.get("invoice_number"),
                    "client_id": platform_invoice.get("client_id"),
                },
            }
        )
        logger.info("stripe_invoice_paid invoice_id=%s xdk=%s", invoice_id, xdk_amount)
        return {"processed": True, "xdk_amount": xdk_amount, "tx_hash": tx["tx_hash"]}

    def _set_platform_invoice_status(self, invoice: dict[str, Any], status: str) -> dict[str, Any]:
        if self._is_platform_invoice(invoice):
            platform_invoice = self.billing_repository.find_invoice_by_stripe_id(stripe_invoice_id=str(invoice["id"]))
            if platform_invoice is not None:
                self.billing_repository.update_invoice(
                    invoice_id=str(platform_invoice["invoice_id"]),
                    changes={"status": status},
                )
        return {"processed": True}

    def _stripe_invoice_payment_failed(self, invoice: dict[str, Any]) -> dict[str, Any]:
        return self._set_platform_invoice_status(invoice, "open")

    def _stripe_invoice_voided(self, invoice: dict[str, Any]) -> dict[str, Any]:
        return self._set_platform_invoice_status(invoice, "void")

    def _stripe_charge_refunded(self, charge: dict[str, Any]) -> dict[str, Any]:
        logger.info("stripe_charge_refunded charge_id=%s amount=%s", charge.get("id"), charge.get("amount_refunded"))
        return {"processed": True, "action": "logged_for_review"}

    def _notify_platform_owner(self, *, type: str, title: str, message: str, metadata: dict[str, Any]) -> None:
        owner = self.deal_rooms_repository.platform_owner()
        if owner is None:
            logger.warning("stripe_platform_owner_missing notification=%s", type)
            return
        self.notifications_repository.notify(
            tenant_id=str(owner.get("tenant_id") or "platform"),
            user_id=str(owner["user_id"]),
            type=type,
            title=title,
            message=message,
            metadata=metadata,
        )

    def _stripe_dispute_created(self, dispute: dict[str, Any]) -> dict[str, Any]:
        amount = float(dispute.get("amount") or 0) / 100
        logger.warning("stripe_dispute_opened dispute_id=%s amount=%s", dispute.get("id"), amount)
        self._notify_platform_owner(
            type="dispute_opened",
            title="Chargeback Opened",
            message=f"A dispute for ${amount:.2f} has been opened. Reason: {dispute.get('reason')}",
            metadata={
                "dispute_id": dispute.get("id"),
                "amount": amount,
                "reason": dispute.get("reason"),
                "charge_id": dispute.get("charge"),
            },
        )
        return {"processed": True}

    def _stripe_dispute_closed(self, dispute: dict[str, Any]) -> dict[str, Any]:
        logger.info("stripe_dispute_closed dispute_id=%s status=%s", dispute.get("id"), dispute.get("status"))
        return {"processed": True}

    # money out

    def _withdrawal_for_transfer(self, transfer: dict[str, Any]) -> dict[str, Any] | None:
        withdrawal_id = (transfer.get("metadata") or {}).get("withdrawal_request_id")
        if withdrawal_id:
            return self.billing_repository.get_withdrawal(withdrawal_id=str(withdrawal_id))
        return self.billing_repository.find_withdrawal_by_payout(external_payout_id=str(transfer.get("id")))

    def _stripe_transfer_created(self, transfer: dict[str, Any]) -> dict[str, Any]:
        withdrawal = self._withdrawal_for_transfer(transfer)
        if withdrawal is not None:
            self.billing_repository.update_withdrawal(
                withdrawal_id=str(withdrawal["withdrawal_id"]),
                changes={"status": "processing", "external_payout_id": transfer.get("id")},
            )
        return {"processed": True, "matched": withdrawal is not None}

    def _fail_withdrawal(self, transfer: dict[str, Any], message: str) -> dict[str, Any]:
        withdrawal = self._withdrawal_for_transfer(transfer)
        if withdrawal is None:
            return {"processed": False, "matched": False}
        withdrawal_id = str(withdrawal["withdrawal_id"])
        if withdrawal.get("status") in _WITHDRAWAL_CLOSED_STATUSES:
            logger.info("stripe_withdrawal_already_failed withdrawal_id=%s", withdrawal_id)
            return {"processed": False, "matched": True, "reason": "already_processed"}
        tenant_id = str(withdrawal["tenant_id"])
        account = self.ensure_user_account(tenant_id=tenant_id, user_id=str(withdrawal["user_id"]))
        refund = self.xdk_ledger_repository.refund(
            tenant_id=tenant_id,
            to_address=str(account["address"]),
            amount=float(withdrawal.get("xdk_amount") or 0.0),
            withdrawal_request_id=withdrawal_id,
            reason=message,
        )
        self.billing_repository.update_withdrawal(
            withdrawal_id=withdrawal_id,
            changes={"status": "failed", "payout_error": message},
        )
        if refund is None:
            logger.info("stripe_withdrawal_refund_skipped withdrawal_id=%s", withdrawal_id)
        else:
            logger.warning("stripe_withdrawal_refunded withdrawal_id=%s reason=%s", withdrawal_id, message)
        return {"processed": True, "matched": True, "status": "failed"}

    def _stripe_transfer_failed(self, transfer: dict[str, Any]) -> dict[str, Any]:
        return self._fail_withdrawal(transfer, "Stripe transfer failed")

    def _stripe_transfer_reversed(self, transfer: dict[str, Any]) -> dict[str, Any]:
        return self._fail_withdrawal(transfer, "Stripe transfer was reversed")

    def _stripe_payout_paid(self, payout: dict[str, Any]) -> dict[str, Any]:
        logger.info("stripe_payout_paid payout_id=%s amount=%s", payout.get("id"), payout.get("amount"))
        return {"processed": True, "action": "bank_deposit_confirmed"}

    def _stripe_payout_failed(self, payout: dict[str, Any]) -> dict[str, Any]:
        amount = float(payout.get("amount") or 0) / 100
        self._notify_platform_owner(
            type="payout_failed",
            title="Bank Payout Failed",
            message=f"A payout of ${amount:.2f} failed to deposit. Review required.",
            metadata={
                "payout_id": payout.get("id"),
                "amount": amount,
                "failure_code": payout.get("failure_code"),
                "failure_message": payout.get("failure_message"),
            },
        )
        return {"processed": True}

    # connect

    def _stripe_account_updated(self, account: dict[str, Any]) -> dict[str, Any]:
        updated = self.deal_rooms_repository.update_connect_account(
            account_id=str(account.get("id")),
            changes={
                "stripe_connect_charges_enabled": bool(account.get("charges_enabled")),
                "stripe_connect_payouts_enabled": bool(account.get("payouts_enabled")),
                "stripe_connect_details_submitted": bool(account.get("details_submitted")),
            },
        )
        return {"processed": True, "profiles_updated": len(updated)}
