from __future__ import annotations

from typing import Any

from bizops.repositories.rows import RowStore, new_row_id, utcnow_iso


class SettlementsRepository:
    def __init__(self, *, contracts: RowStore, confirmations: RowStore, executions: RowStore) -> None:
        self._contracts = contracts
        self._confirmations = confirmations
        self._executions = executions

    def create_contract(self, *, contract: dict[str, Any]) -> dict[str, Any]:
        item = {
            "contract_id": new_row_id("sc"),
            "is_active": True,
            "external_confirmation_required": False,
            "external_confirmation_source": None,
            "revenue_source_type": None,
            "trigger_type": None,
            "trigger_conditions": {},
            "distribution_logic": {},
            "created_at": utcnow_iso(),
            **contract,
        }
        return self._contracts.insert(row=item)

    def get_contract(self, *, tenant_id: str | None, contract_id: str) -> dict[str, Any] | None:
        return self._contracts.get(tenant_id=tenant_id, key=contract_id)

    def active_contracts(self, *, source: str, revenue_source_type: str | None = None) -> list[dict[str, Any]]:
        filters: dict[str, Any] = {
            "external_confirmation_source": source,
            "external_confirmation_required": True,
            "is_active": True,
        }
        if revenue_source_type is not None:
            filters["revenue_source_type"] = revenue_source_type
        return self._contracts.find(tenant_id=None, filters=filters, order_by="created_at")

    def create_confirmation(self, *, contract: dict[str, Any], source: str, trigger_event: dict[str, Any]) -> dict[str, Any]:
        return self._confirmations.insert(
            row={
                "confirmation_id": new_row_id("spc"),
                "tenant_id": contract["tenant_id"],
                "contract_id": contract["contract_id"],
                "confirmation_source": source,
                "trigger_event": dict(trigger_event),
                "status": "pending",
                "created_at": utcnow_iso(),
            }
        )

    def pending_confirmations(self, *, source: str) -> list[dict[str, Any]]:
        return self._confirmations.find(
            tenant_id=None,
            filters={"confirmation_source": source, "status": "pending"},
            order_by="created_at",
        )

    def confirm(self, *, confirmation_id: str, confirmation_data: dict[str, Any]) -> dict[str, Any] | None:
        return self._confirmations.update(
            tenant_id=None,
            key=confirmation_id,
            changes={
                "status": "confirmed",
                "confirmed_at": utcnow_iso(),
                "confirmation_data": dict(confirmation_data),
            },
        )

    def record_execution(self, *, execution: dict[str, Any]) -> dict[str, Any]:
        item = {"execution_id": new_row_id("sx"), "executed_at": utcnow_iso(), **execution}
        return self._executions.insert(row=item)

    def list_executions(self, *, tenant_id: str | None, contract_id: str) -> list[dict[str, Any]]:
        return self._executions.find(
            tenant_id=tenant_id,
            filters={"contract_id": contract_id},
            order_by="executed_at",
            descending=True,
        )
