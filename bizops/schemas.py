from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class TreasuryTransferRequest(BaseModel):
    deal_room_id: str = Field(min_length=1)
    amount: float = Field(gt=0)
    destination_type: Literal["personal", "user", "wallet"]
    destination_wallet_address: str | None = None
    destination_user_id: str | None = None
    purpose: str | None = None
    category_id: str | None = None


class VerifyFundingRequest(BaseModel):
    session_id: str | None = None
    payment_intent_id: str | None = None
    deal_room_id: str | None = None
    xdk_conversion: bool | None = None


class EscrowReleaseRequest(BaseModel):
    amount: float = Field(gt=0)
    purpose: str = Field(min_length=1)
    recipient_user_id: str | None = None
    force: bool = False


class CompletionRequest(BaseModel):
    prompt: str = Field(min_length=1)
    task_type: str = "general"
    system_prompt: str | None = None
    preferred_provider: Literal["perplexity", "gemini", "openai", "claude"] | None = None
    fallback_providers: list[Literal["perplexity", "gemini", "openai", "claude"]] | None = None
    max_tokens: int | None = Field(default=None, ge=1, le=32000)
    temperature: float | None = Field(default=None, ge=0, le=2)
    tools: list[dict[str, Any]] | None = None
    workspace_id: str | None = None
    agent_id: str | None = None
    run_id: str | None = None


class DnsRecord(BaseModel):
    type: Literal["A", "AAAA", "CNAME", "MX", "TXT", "NS", "SRV", "CAA"]
    name: str = Field(min_length=1)
    value: str = Field(min_length=1)
    ttl: int | None = Field(default=None, ge=60, le=86400)


class DnsConfigureRequest(BaseModel):
    registrar: Literal["cloudflare", "godaddy", "namecheap"]
    records: list[DnsRecord] = Field(min_length=1)


class SettlementExecuteRequest(BaseModel):
    contract_id: str = Field(min_length=1)
    trigger_event: dict[str, Any] = Field(default_factory=dict)
    force: bool = False


class AgentLimitsRequest(BaseModel):
    agent_id: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)
    daily_run_cap: int | None = Field(default=None, ge=0)
    daily_cost_cap_usd: float | None = Field(default=None, ge=0)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
