from __future__ import annotations

import json
from typing import Any

from bizops.db.postgres import PostgresTxRunner, validate_identifier


class InMemoryAuditLogsRepository:
    def __init__(self, audit_logs: list[dict[str, Any]]) -> None:
        self._audit_logs = audit_logs

    def last_hash(self) -> str:
        if not self._audit_logs:
            return ""
        return str(self._audit_logs[-1].get("audit_hash") or "")

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        self._audit_logs.append(item)
        return item

    def list(self, *, tenant_id: str | None = None, action: str | None = None) -> list[dict[str, Any]]:
        return [
            dict(x)
            for x in self._audit_logs
            if (tenant_id is None or x.get("tenant_id") == tenant_id) and (action is None or x.get("action") == action)
        ]


class PostgresAuditLogsRepository:
    """Append-only audit rows; ``seq`` keeps the hash chain order stable across sessions."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "audit_logs") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def last_hash(self) -> str:
        sql = f"SELECT audit_hash FROM {self._table_name} ORDER BY seq DESC LIMIT 1"

        def _op(conn: Any) -> str:
            with conn.cursor() as cur:
                cur.execute(sql)
                row = cur.fetchone()
            return str(row[0]) if row and row[0] else ""

        return self._tx_runner.run_in_tx(tenant_id=None, fn=_op)

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        tenant_id = str(item.get("tenant_id") or "platform")
        sql = f"""
            INSERT INTO {self._table_name} (
                audit_id, tenant_id, action, occurred_at, audit_hash, payload
            ) VALUES (%s, %s, %s, %s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["audit_id"],
                        tenant_id,
                        item.get("action"),
                        item.get("occurred_at"),
                        item.get("audit_hash"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True, default=str),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(tenant_id=None, fn=_op)

    def list(self, *, tenant_id: str | None = None, action: str | None = None) -> list[dict[str, Any]]:
        sql = f"SELECT payload FROM {self._table_name} WHERE TRUE"
        params: list[Any] = []
        if tenant_id is not None:
            sql += " AND tenant_id = %s"
            params.append(tenant_id)
        if action is not None:
            sql += " AND action = %s"
            params.append(action)
        sql += " ORDER BY seq ASC"

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            return [dict(row[0]) for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
