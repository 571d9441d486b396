from __future__ import annotations

import logging
from typing import Any

from bizops.errors import ApiError, bad_request, not_found
from bizops.repositories.escrow import available_balance

logger = logging.getLogger(__name__)


def compute_payout(contract: dict[str, Any], trigger_event: dict[str, Any]) -> float:
    """Payout for one trigger: a fixed amount, or a percentage of ``trigger_event.amount``."""
    logic = contract.get("distribution_logic") or {}
    kind = logic.get("type")
    if kind == "fixed":
        amount = float(logic.get("amount") or 0.0)
    elif kind == "percentage":
        base = float(trigger_event.get("amount") or 0.0)
        amount = base * float(logic.get("percentage") or 0.0) / 100
    else:
        raise bad_request("SETTLEMENT_DISTRIBUTION_INVALID", f"unsupported distribution type: {kind!r}")
    return round(amount, 2)


class StoreSettlementsMixin:
    def execute_settlement(
        self,
        *,
        contract_id: str,
        trigger_event: dict[str, Any],
        force: bool = False,
        external_confirmed: bool = False,
    ) -> dict[str, Any]:
        contract = self.settlements_repository.get_contract(tenant_id=None, contract_id=contract_id)
        if contract is None:
            raise not_found("SETTLEMENT_CONTRACT_NOT_FOUND", f"settlement contract not found: {contract_id}")
        if not contract.get("is_active") and not force:
            raise ApiError(
                code="SETTLEMENT_CONTRACT_INACTIVE",
                message=f"settlement contract {contract_id} is not active",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )

        amount = compute_payout(contract, trigger_event)
        if amount <= 0:
            raise bad_request("SETTLEMENT_AMOUNT_INVALID", "settlement payout must be positive")
        deal_room_id = str(contract.get("deal_room_id") or "")
        escrow = self.escrow_repository.get_for_deal_room(tenant_id=None, deal_room_id=deal_room_id)
        if escrow is None:
            raise not_found("ESCROW_NOT_FOUND", f"no escrow for deal room {deal_room_id}")

        logger.info("settlement_execution_started contract_id=%s amount=%s", contract_id, amount)
        release = self.release_escrow_funds(
            escrow=escrow,
            amount=amount,
            fields={
                "purpose": f"Settlement: {contract.get('name') or contract_id}",
                "contract_id": contract_id,
                "recipient_user_id": contract.get("payee_user_id"),
                "trigger_event": dict(trigger_event),
            },
            force=force,
        )
        tenant_id = str(contract["tenant_id"])
        execution = self.settlements_repository.record_execution(
            execution={
                "tenant_id": tenant_id,
                "contract_id": contract_id,
                "deal_room_id": deal_room_id,
                "amount": amount,
                "trigger_event": dict(trigger_event),
                "external_confirmed": external_confirmed,
                "escrow_transaction_id": release["transaction"]["transaction_id"],
                "status": "completed",
            }
        )
        self.value_ledger_repository.append(
            entry={
                "tenant_id": tenant_id,
                "deal_room_id": deal_room_id,
                "source_entity_type": "deal_room",
                "destination_user_id": contract.get("payee_user_id"),
                "destination_entity_type": "individual",
                "entry_type": "settlement_payout",
                "amount": amount,
                "currency": escrow.get("currency", "USD"),
                "purpose": contract.get("name") or "Settlement payout",
                "reference_type": "settlement_execution",
                "reference_id": execution["execution_id"],
                "contribution_credits": 0,
                "credit_category": "settlement",
                "verification_source": str(trigger_event.get("source") or "internal"),
                "narrative": f"Settlement of ${amount:.2f} released under {contract.get('name') or contract_id}.",
                "metadata": {"trigger_event": dict(trigger_event)},
            }
        )
        self._append_audit_log(
            log={
                "tenant_id": tenant_id,
                "action": "settlement_executed",
                "contract_id": contract_id,
                "execution_id": execution["execution_id"],
                "amount": amount,
                "forced": force,
            }
        )
        updated = release["escrow"]
        logger.info("settlement_execution_completed execution_id=%s", execution["execution_id"])
        return {
            "execution_id": execution["execution_id"],
            "contract_id": contract_id,
            "amount": amount,
            "escrow_transaction_id": release["transaction"]["transaction_id"],
            "new_balance": available_balance(updated),
            "workflows_paused": bool(updated.get("workflows_paused")),
        }
