from __future__ import annotations

from typing import Any

from bizops.repositories.rows import RowStore, new_row_id, utcnow_iso


class BillingRepository:
    """Money-in and money-out requests that Stripe events settle.

    Webhook callers pass ``tenant_id=None``: the event itself carries no
    tenant, so rows are resolved first and written back under their own
    tenant afterwards.
    """

    def __init__(
        self,
        *,
        fund_requests: RowStore,
        invoices: RowStore,
        funding_requests: RowStore,
        withdrawals: RowStore,
    ) -> None:
        self._fund_requests = fund_requests
        self._invoices = invoices
        self._funding_requests = funding_requests
        self._withdrawals = withdrawals

    # fund contribution requests (deal-room treasury top-ups)
    def create_fund_request(self, *, request: dict[str, Any]) -> dict[str, Any]:
        item = {"fund_request_id": new_row_id("fr"), "status": "pending", "created_at": utcnow_iso(), **request}
        return self._fund_requests.insert(row=item)

    def get_fund_request(self, *, tenant_id: str | None, fund_request_id: str) -> dict[str, Any] | None:
        return self._fund_requests.get(tenant_id=tenant_id, key=fund_request_id)

    def update_fund_request(self, *, fund_request_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        return self._fund_requests.update(tenant_id=None, key=fund_request_id, changes=changes)

    # platform invoices
    def create_invoice(self, *, invoice: dict[str, Any]) -> dict[str, Any]:
        item = {
            "invoice_id": new_row_id("inv"),
            "status": "open",
            "xdk_credited": False,
            "created_at": utcnow_iso(),
            **invoice,
        }
        return self._invoices.insert(row=item)

    def find_invoice_by_stripe_id(self, *, stripe_invoice_id: str) -> dict[str, Any] | None:
        return self._invoices.find_one(tenant_id=None, filters={"stripe_invoice_id": stripe_invoice_id})

    def update_invoice(self, *, invoice_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        return self._invoices.update(tenant_id=None, key=invoice_id, changes=changes)

    # escrow funding requests (checkout sessions)
    def create_funding_request(self, *, request: dict[str, Any]) -> dict[str, Any]:
        item = {"funding_request_id": new_row_id("efr"), "status": "pending", "created_at": utcnow_iso(), **request}
        return self._funding_requests.insert(row=item)

    def get_funding_request(self, *, tenant_id: str | None, funding_request_id: str) -> dict[str, Any] | None:
        return self._funding_requests.get(tenant_id=tenant_id, key=funding_request_id)

    def find_funding_request(self, *, tenant_id: str | None, stripe_reference: str) -> dict[str, Any] | None:
        by_session = self._funding_requests.find_one(
            tenant_id=tenant_id, filters={"stripe_checkout_session_id": stripe_reference}
        )
        if by_session is not None:
            return by_session
        return self._funding_requests.find_one(
            tenant_id=tenant_id, filters={"stripe_payment_intent_id": stripe_reference}
        )

    def update_funding_request(self, *, funding_request_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        return self._funding_requests.update(tenant_id=None, key=funding_request_id, changes=changes)

    # XDK withdrawals paid out through Stripe Connect transfers
    def create_withdrawal(self, *, withdrawal: dict[str, Any]) -> dict[str, Any]:
        item = {"withdrawal_id": new_row_id("wd"), "status": "pending", "created_at": utcnow_iso(), **withdrawal}
        return self._withdrawals.insert(row=item)

    def get_withdrawal(self, *, withdrawal_id: str) -> dict[str, Any] | None:
        return self._withdrawals.get(tenant_id=None, key=withdrawal_id)

    def find_withdrawal_by_payout(self, *, external_payout_id: str) -> dict[str, Any] | None:
        return self._withdrawals.find_one(tenant_id=None, filters={"external_payout_id": external_payout_id})

    def update_withdrawal(self, *, withdrawal_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        return self._withdrawals.update(tenant_id=None, key=withdrawal_id, changes=changes)
