from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


def validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction with tenant session injection.

    ``tenant_id=None`` opens a service-role session: the RLS policies admit
    every row while ``app.service_role`` is on. Webhook handlers use it because
    the caller is a third party, not a tenant user.
    """

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def run_in_tx(
        self,
        *,
        tenant_id: str | None,
        fn: Callable[[Any], Any],
    ) -> Any:
        if tenant_id is not None and not tenant_id.strip():
            raise ValueError("tenant_id must not be empty")

        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                if tenant_id is None:
                    cur.execute("SELECT set_config('app.service_role', 'on', true)")
                else:
                    cur.execute("SELECT set_config('app.current_tenant', %s, true)", (tenant_id,))
            try:
                result = fn(conn)
            except Exception:
                conn.rollback()
                raise
            conn.commit()
            return result
