from __future__ import annotations

from typing import Any

from bizops.db.postgres import _import_psycopg, validate_identifier
from bizops.db.schema import ROW_STORE_TABLES


class PostgresRlsManager:
    """Apply RLS tenant policies on PostgreSQL tables."""

    # xdk_exchange_rates is platform-wide reference data and stays unscoped.
    DEFAULT_TABLES: tuple[str, ...] = (
        "xdk_accounts",
        "xdk_transactions",
        "xdk_treasuries",
        "deal_room_escrow",
        "escrow_transactions",
        "audit_logs",
        *ROW_STORE_TABLES,
    )

    def __init__(self, dsn: str, *, tables: list[str] | tuple[str, ...] | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        target_tables = list(self.DEFAULT_TABLES if tables is None else tables)
        if not target_tables:
            raise ValueError("tables must not be empty")
        self._tables = [validate_identifier(name) for name in target_tables]

    @staticmethod
    def _policy_predicate(table: str) -> str:
        return (
            f"({table}.tenant_id = current_setting('app.current_tenant', true)"
            " OR current_setting('app.service_role', true) = 'on')"
        )

    def apply(self) -> list[str]:
        psycopg: Any = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for table in self._tables:
                    policy = f"{table}_tenant_isolation"
                    predicate = self._policy_predicate(table)
                    cur.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
                    cur.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
                    cur.execute(f"DROP POLICY IF EXISTS {policy} ON {table}")
                    cur.execute(
                        f"""
                        CREATE POLICY {policy} ON {table}
                        USING {predicate}
                        WITH CHECK {predicate}
                        """
                    )
            conn.commit()
        return list(self._tables)
