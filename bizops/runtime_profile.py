from __future__ import annotations

import os
from collections.abc import Mapping


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    """Production profile: refuse to fall back to the in-memory store."""
    env = os.environ if environ is None else environ
    return _as_bool(env.get("BIZOPS_REQUIRE_TRUESTACK", "false"))


def store_backend_name(environ: Mapping[str, str] | None = None) -> str:
    env = os.environ if environ is None else environ
    return env.get("BIZOPS_STORE_BACKEND", "memory").strip().lower() or "memory"
