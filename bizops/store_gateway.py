from __future__ import annotations

import logging
from typing import Any

from bizops.errors import ApiError
from bizops.model_gateway import ModelGateway

logger = logging.getLogger(__name__)


class StoreGatewayMixin:
    def model_gateway(self) -> ModelGateway:
        return ModelGateway(self.gateway_config, client_factory=self.gateway_client_factory)

    def run_completion(self, *, tenant_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Route one completion through the provider chain and meter it.

        Agent runs are checked against the daily caps first; a blocked run is
        recorded and answered 429 without calling any provider.
        """
        task_type = str(payload.get("task_type") or "general")
        agent_id = payload.get("agent_id")
        workspace_id = payload.get("workspace_id")
        if agent_id:
            limits = self.gateway_usage_repository.check_agent_limits(tenant_id=tenant_id, agent_id=str(agent_id))
            if limits["blocked"]:
                self.gateway_usage_repository.record_blocked_run(
                    tenant_id=tenant_id,
                    agent_id=str(agent_id),
                    reason=str(limits["reason"]),
                )
                logger.warning("gateway_agent_blocked agent_id=%s reason=%s", agent_id, limits["reason"])
                raise ApiError(
                    code="GATEWAY_LIMIT_BLOCKED",
                    message=str(limits["reason"]),
                    error_class="business_rule",
                    retryable=False,
                    http_status=429,
                    details=limits,
                )

        result = self.model_gateway().complete(
            task_type=task_type,
            params={
                "prompt": payload["prompt"],
                "system_prompt": payload.get("system_prompt"),
                "max_tokens": payload.get("max_tokens"),
                "temperature": payload.get("temperature"),
                "tools": payload.get("tools"),
            },
            preferred=payload.get("preferred_provider"),
            fallbacks=payload.get("fallback_providers"),
        )
        # agent runs count toward the daily caps with or without a workspace
        if workspace_id or agent_id:
            self.gateway_usage_repository.record_usage(
                tenant_id=tenant_id,
                workspace_id=str(workspace_id) if workspace_id else None,
                provider=result.provider,
                model=result.model,
                task_type=task_type,
                tokens_used=result.total_tokens,
                cost_usd=result.cost_usd,
                agent_id=str(agent_id) if agent_id else None,
                run_id=payload.get("run_id"),
            )
        return result.to_dict()
