"""
Unified model gateway: route a completion request to the provider that
suits its task type, falling back along a provider chain.

Routing:
  - research tasks            -> perplexity (``sonar``)
  - everything else           -> gemini via the AI gateway, tier by task
  - openai                    -> optional, through the AI gateway unless
                                 OPENAI_BASE_URL points elsewhere
  - claude                    -> not configured, always fails over

All providers speak the OpenAI chat-completions protocol, so each call goes
through an ``openai.OpenAI`` client pointed at the provider's base URL.

Configuration via environment variables:
  LOVABLE_API_KEY      key for the AI gateway (gemini, openai models)
  AI_GATEWAY_BASE_URL  default https://ai.gateway.lovable.dev/v1
  PERPLEXITY_API_KEY   key for perplexity
  PERPLEXITY_BASE_URL  default https://api.perplexity.ai
  OPENAI_API_KEY       direct OpenAI key (used with OPENAI_BASE_URL)
  OPENAI_BASE_URL      direct OpenAI-compatible endpoint
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from bizops.errors import ApiError

logger = logging.getLogger(__name__)

PROVIDERS = ("perplexity", "gemini", "openai", "claude")

RESEARCH_TASKS = frozenset(
    {
        "web_research",
        "prospect_intelligence",
        "company_research",
        "market_research",
        "real_time_search",
        "competitor_analysis",
        "news_search",
    }
)

TASK_PROVIDER_MAP: dict[str, str] = {
    **{task: "perplexity" for task in RESEARCH_TASKS},
    "complex_reasoning": "gemini",
    "tool_calling": "gemini",
    "multi_step_workflow": "gemini",
    "document_analysis": "gemini",
    "code_generation": "gemini",
    "general_qa": "gemini",
    "summary": "gemini",
    "classification": "gemini",
    "extraction": "gemini",
    "translation": "gemini",
    "content_generation": "gemini",
    "email_drafting": "gemini",
    "proposal_writing": "gemini",
}

GEMINI_MODELS: dict[str, str] = {
    "nano": "google/gemini-2.5-flash-lite",
    "fast": "google/gemini-2.5-flash",
    "pro": "google/gemini-2.5-pro",
    "premium": "google/gemini-3-pro-preview",
}

TASK_GEMINI_TIER: dict[str, str] = {
    "general_qa": "fast",
    "summary": "fast",
    "classification": "nano",
    "extraction": "nano",
    "translation": "fast",
    "complex_reasoning": "pro",
    "tool_calling": "pro",
    "multi_step_workflow": "pro",
    "document_analysis": "pro",
    "code_generation": "pro",
    "content_generation": "fast",
    "email_drafting": "fast",
    "proposal_writing": "pro",
    "web_research": "pro",
    "prospect_intelligence": "pro",
    "company_research": "pro",
    "market_research": "pro",
    "real_time_search": "pro",
    "competitor_analysis": "pro",
    "news_search": "fast",
}

# USD per 1K tokens
MODEL_COSTS: dict[str, float] = {
    "sonar": 0.001,
    "sonar-pro": 0.003,
    "google/gemini-2.5-flash-lite": 0.0001,
    "google/gemini-2.5-flash": 0.0003,
    "google/gemini-2.5-pro": 0.003,
    "google/gemini-3-pro-preview": 0.006,
    "openai/gpt-5": 0.003,
    "openai/gpt-5-mini": 0.003,
}

OPENAI_COMPLEX_TASKS = frozenset({"complex_reasoning", "multi_step_workflow", "document_analysis"})

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."
RESEARCH_SYSTEM_PROMPT = (
    "You are a helpful research assistant. Provide accurate, up-to-date information with citations."
)


class ProviderError(Exception):
    """A single provider failed; the gateway moves on to the next one."""


@dataclass(frozen=True)
class GatewayConfig:
    lovable_api_key: str = ""
    ai_gateway_base_url: str = "https://ai.gateway.lovable.dev/v1"
    perplexity_api_key: str = ""
    perplexity_base_url: str = "https://api.perplexity.ai"
    openai_api_key: str = ""
    openai_base_url: str = ""
    timeout_s: float = 60.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GatewayConfig":
        env = os.environ if environ is None else environ
        return cls(
            lovable_api_key=env.get("LOVABLE_API_KEY", "").strip(),
            ai_gateway_base_url=env.get("AI_GATEWAY_BASE_URL", "").strip() or cls.ai_gateway_base_url,
            perplexity_api_key=env.get("PERPLEXITY_API_KEY", "").strip(),
            perplexity_base_url=env.get("PERPLEXITY_BASE_URL", "").strip() or cls.perplexity_base_url,
            openai_api_key=env.get("OPENAI_API_KEY", "").strip(),
            openai_base_url=env.get("OPENAI_BASE_URL", "").strip(),
        )


@dataclass
class GatewayResult:
    content: str
    provider: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0
    latency_ms: float = 0.0
    citations: list[str] = field(default_factory=list)
    tool_calls: list[dict[str, Any]] | None = None
    attempts: list[dict[str, str]] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "provider": self.provider,
            "model": self.model,
            "citations": list(self.citations),
            "tool_calls": self.tool_calls,
            "usage": {
                "prompt_tokens": self.prompt_tokens,
                "completion_tokens": self.completion_tokens,
                "total_tokens": self.total_tokens,
            },
            "cost_usd": round(self.cost_usd, 8),
            "latency_ms": self.latency_ms,
            "attempts": list(self.attempts),
        }


ClientFactory = Callable[[str, str, float], Any]


def _create_client(api_key: str, base_url: str, timeout_s: float) -> Any:
    try:
        import openai
    except ImportError:
        raise RuntimeError("openai package is required for the model gateway; install openai")
    return openai.OpenAI(api_key=api_key, base_url=base_url, timeout=timeout_s)


def primary_provider(task_type: str, preferred: str | None = None) -> str:
    return preferred or TASK_PROVIDER_MAP.get(task_type, "gemini")


def build_provider_chain(task_type: str, preferred: str | None, fallbacks: list[str] | None) -> list[str]:
    """Primary provider first, then fallbacks in order without duplicates."""
    chain = [primary_provider(task_type, preferred)]
    for provider in fallbacks if fallbacks is not None else ["gemini"]:
        if provider not in chain:
            chain.append(provider)
    return chain


def select_model(provider: str, task_type: str) -> str:
    if provider == "perplexity":
        return "sonar"
    if provider == "openai":
        return "openai/gpt-5" if task_type in OPENAI_COMPLEX_TASKS else "openai/gpt-5-mini"
    return GEMINI_MODELS[TASK_GEMINI_TIER.get(task_type, "fast")]


def estimate_cost(model: str, total_tokens: int) -> float:
    return (total_tokens / 1000) * MODEL_COSTS.get(model, 0.001)


class ModelGateway:
    def __init__(self, cfg: GatewayConfig, *, client_factory: ClientFactory | None = None) -> None:
        self._cfg = cfg
        self._client_factory = client_factory or _create_client

    def _endpoint(self, provider: str) -> tuple[str, str]:
        cfg = self._cfg
        if provider == "perplexity":
            if not cfg.perplexity_api_key:
                raise ProviderError("PERPLEXITY_API_KEY not configured")
            return cfg.perplexity_api_key, cfg.perplexity_base_url
        if provider == "gemini":
            if not cfg.lovable_api_key:
                raise ProviderError("LOVABLE_API_KEY not configured")
            return cfg.lovable_api_key, cfg.ai_gateway_base_url
        if provider == "openai":
            if cfg.openai_base_url and cfg.openai_api_key:
                return cfg.openai_api_key, cfg.openai_base_url
            if not cfg.lovable_api_key:
                raise ProviderError("OPENAI_API_KEY not configured")
            return cfg.lovable_api_key, cfg.ai_gateway_base_url
        if provider == "claude":
            raise ProviderError("Claude integration not yet configured. Please provide ANTHROPIC_API_KEY.")
        raise ProviderError(f"Unknown provider: {provider}")

    def call_provider(self, provider: str, task_type: str, params: dict[str, Any]) -> GatewayResult:
        api_key, base_url = self._endpoint(provider)
        model = select_model(provider, task_type)
        default_prompt = RESEARCH_SYSTEM_PROMPT if provider == "perplexity" else DEFAULT_SYSTEM_PROMPT
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": params.get("system_prompt") or default_prompt},
                {"role": "user", "content": params["prompt"]},
            ],
            "max_tokens": int(params.get("max_tokens") or 4000),
            "temperature": float(0.7 if params.get("temperature") is None else params["temperature"]),
        }
        if params.get("tools") and provider != "perplexity":
            kwargs["tools"] = params["tools"]

        client = self._client_factory(api_key, base_url, self._cfg.timeout_s)
        t0 = time.monotonic()
        try:
            response = client.chat.completions.create(**kwargs)
        except Exception as exc:
            raise ProviderError(f"{provider} API error: {type(exc).__name__}: {exc}") from exc
        elapsed_ms = round((time.monotonic() - t0) * 1000, 1)

        message = response.choices[0].message
        usage = getattr(response, "usage", None)
        prompt_tokens = int(getattr(usage, "prompt_tokens", 0) or 0) if usage else 0
        completion_tokens = int(getattr(usage, "completion_tokens", 0) or 0) if usage else 0
        tool_calls = getattr(message, "tool_calls", None)
        if tool_calls:
            tool_calls = [tc.model_dump() if hasattr(tc, "model_dump") else dict(tc) for tc in tool_calls]
        return GatewayResult(
            content=getattr(message, "content", None) or "",
            provider=provider,
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost_usd=estimate_cost(model, prompt_tokens + completion_tokens),
            latency_ms=elapsed_ms,
            citations=list(getattr(response, "citations", None) or []),
            tool_calls=tool_calls or None,
        )

    def complete(self, *, task_type: str, params: dict[str, Any], preferred: str | None = None, fallbacks: list[str] | None = None) -> GatewayResult:
        attempts: list[dict[str, str]] = []
        for provider in build_provider_chain(task_type, preferred, fallbacks):
            logger.info("gateway_provider_attempt provider=%s task_type=%s", provider, task_type)
            try:
                result = self.call_provider(provider, task_type, params)
            except ProviderError as exc:
                logger.warning("gateway_provider_failed provider=%s error=%s", provider, exc)
                attempts.append({"provider": provider, "error": str(exc)})
                continue
            result.attempts = attempts
            logger.info("gateway_provider_succeeded provider=%s model=%s", provider, result.model)
            return result
        last_error = attempts[-1]["error"] if attempts else "All providers failed"
        raise ApiError(
            code="GATEWAY_ALL_PROVIDERS_FAILED",
            message=last_error,
            error_class="transient",
            retryable=True,
            http_status=502,
        )
