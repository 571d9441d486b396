from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from bizops.repositories.rows import RowStore, new_row_id, utcnow_iso


def _today() -> str:
    return datetime.now(UTC).date().isoformat()


class GatewayUsageRepository:
    """Per-call cost rows, daily per-model aggregates, and agent spending caps."""

    def __init__(self, *, usage: RowStore, model_daily: RowStore, agent_limits: RowStore) -> None:
        self._usage = usage
        self._model_daily = model_daily
        self._agent_limits = agent_limits

    def record_usage(
        self,
        *,
        tenant_id: str,
        workspace_id: str | None,
        provider: str,
        model: str,
        task_type: str,
        tokens_used: int,
        cost_usd: float,
        agent_id: str | None = None,
        run_id: str | None = None,
    ) -> dict[str, Any]:
        usage_date = _today()
        daily_key = f"{tenant_id}:{usage_date}:{provider}:{model}"
        daily = self._model_daily.get(tenant_id=tenant_id, key=daily_key)
        if daily is None:
            self._model_daily.insert(
                row={
                    "daily_key": daily_key,
                    "tenant_id": tenant_id,
                    "usage_date": usage_date,
                    "model_provider": provider,
                    "model_name": model,
                    "requests_count": 1,
                    "tokens_input": tokens_used,
                    "total_cost": cost_usd,
                    "metadata": {"task_type": task_type},
                }
            )
        else:
            self._model_daily.update(
                tenant_id=tenant_id,
                key=daily_key,
                changes={
                    "requests_count": int(daily.get("requests_count") or 0) + 1,
                    "tokens_input": int(daily.get("tokens_input") or 0) + tokens_used,
                    "total_cost": float(daily.get("total_cost") or 0.0) + cost_usd,
                },
            )
        return self._usage.insert(
            row={
                "usage_id": new_row_id("gu"),
                "tenant_id": tenant_id,
                "workspace_id": workspace_id,
                "agent_id": agent_id,
                "run_id": run_id,
                "provider": provider,
                "model_used": model,
                "task_type": task_type,
                "tokens_used": tokens_used,
                "cost_usd": cost_usd,
                "status": "completed",
                "usage_date": usage_date,
                "created_at": utcnow_iso(),
            }
        )

    def daily_model_usage(self, *, tenant_id: str, usage_date: str | None = None) -> list[dict[str, Any]]:
        return self._model_daily.find(tenant_id=tenant_id, filters={"usage_date": usage_date or _today()})

    def set_agent_limits(
        self,
        *,
        tenant_id: str,
        agent_id: str,
        daily_run_cap: int | None,
        daily_cost_cap_usd: float | None,
    ) -> dict[str, Any]:
        return self._agent_limits.insert(
            row={
                "agent_id": agent_id,
                "tenant_id": tenant_id,
                "daily_run_cap": daily_run_cap,
                "daily_cost_cap_usd": daily_cost_cap_usd,
                "updated_at": utcnow_iso(),
            }
        )

    def check_agent_limits(self, *, tenant_id: str, agent_id: str) -> dict[str, Any]:
        limits = self._agent_limits.get(tenant_id=tenant_id, key=agent_id) or {}
        runs = self._usage.find(
            tenant_id=tenant_id,
            filters={"agent_id": agent_id, "usage_date": _today(), "status": "completed"},
        )
        run_count = len(runs)
        total_cost = round(sum(float(r.get("cost_usd") or 0.0) for r in runs), 6)
        run_cap = limits.get("daily_run_cap")
        cost_cap = limits.get("daily_cost_cap_usd")
        reason = None
        if run_cap is not None and run_count >= int(run_cap):
            reason = f"Daily run cap reached ({run_count}/{run_cap})"
        elif cost_cap is not None and total_cost >= float(cost_cap):
            reason = f"Daily cost cap reached (${total_cost:.4f}/${float(cost_cap):.2f})"
        return {
            "blocked": reason is not None,
            "reason": reason,
            "run_count": run_count,
            "total_cost": total_cost,
            "daily_run_cap": run_cap,
            "daily_cost_cap_usd": cost_cap,
        }

    def record_blocked_run(self, *, tenant_id: str, agent_id: str, reason: str) -> dict[str, Any]:
        return self._usage.insert(
            row={
                "usage_id": new_row_id("gu"),
                "tenant_id": tenant_id,
                "agent_id": agent_id,
                "status": "blocked",
                "blocked_reason": reason,
                "cost_usd": 0.0,
                "tokens_used": 0,
                "usage_date": _today(),
                "created_at": utcnow_iso(),
            }
        )
