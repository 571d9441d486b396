from __future__ import annotations

import json
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from bizops.db.postgres import PostgresTxRunner, validate_identifier


def new_row_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _matches(row: dict[str, Any], filters: dict[str, Any]) -> bool:
    return all(row.get(key) == value for key, value in filters.items())


def _tenant_visible(row: dict[str, Any], tenant_id: str | None) -> bool:
    return tenant_id is None or row.get("tenant_id") == tenant_id


class InMemoryRowStore:
    """Keyed rows for one table; ``tenant_id=None`` reads across tenants (service role)."""

    def __init__(self, rows: dict[str, dict[str, Any]], *, key_field: str) -> None:
        self._rows = rows
        self._key_field = key_field

    def insert(self, *, row: dict[str, Any]) -> dict[str, Any]:
        item = dict(row)
        self._rows[str(item[self._key_field])] = item
        return dict(item)

    def get(self, *, tenant_id: str | None, key: str) -> dict[str, Any] | None:
        row = self._rows.get(str(key))
        if row is None or not _tenant_visible(row, tenant_id):
            return None
        return dict(row)

    def update(self, *, tenant_id: str | None, key: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        row = self._rows.get(str(key))
        if row is None or not _tenant_visible(row, tenant_id):
            return None
        row.update(changes)
        return dict(row)

    def find(
        self,
        *,
        tenant_id: str | None,
        filters: dict[str, Any] | None = None,
        predicate: Callable[[dict[str, Any]], bool] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        wanted = filters or {}
        rows = [
            dict(row)
            for row in self._rows.values()
            if _tenant_visible(row, tenant_id) and _matches(row, wanted) and (predicate is None or predicate(row))
        ]
        if order_by:
            rows.sort(key=lambda r: str(r.get(order_by) or ""), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    def find_one(self, *, tenant_id: str | None, filters: dict[str, Any]) -> dict[str, Any] | None:
        rows = self.find(tenant_id=tenant_id, filters=filters, limit=1)
        return rows[0] if rows else None


class PostgresRowStore:
    """JSONB-backed table: ``(key, tenant_id, data, created_at)``; filters use ``data @> filter``."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str, key_field: str) -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)
        self._key_field = key_field

    @staticmethod
    def _dump(value: dict[str, Any]) -> str:
        return json.dumps(value, ensure_ascii=True, sort_keys=True, default=str)

    def insert(self, *, row: dict[str, Any]) -> dict[str, Any]:
        item = dict(row)
        tenant_id = str(item.get("tenant_id") or "")
        sql = f"""
            INSERT INTO {self._table_name} (row_key, tenant_id, data)
            VALUES (%s, %s, %s::jsonb)
            ON CONFLICT (row_key) DO UPDATE
            SET data = EXCLUDED.data
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, (str(item[self._key_field]), tenant_id, self._dump(item)))
            return item

        return self._tx_runner.run_in_tx(tenant_id=tenant_id or None, fn=_op)

    def get(self, *, tenant_id: str | None, key: str) -> dict[str, Any] | None:
        sql = f"SELECT data FROM {self._table_name} WHERE row_key = %s"
        params: list[Any] = [str(key)]
        if tenant_id is not None:
            sql += " AND tenant_id = %s"
            params.append(tenant_id)
        sql += " LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return dict(row[0])

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def update(self, *, tenant_id: str | None, key: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        sql = f"UPDATE {self._table_name} SET data = data || %s::jsonb WHERE row_key = %s"
        params: list[Any] = [self._dump(changes), str(key)]
        if tenant_id is not None:
            sql += " AND tenant_id = %s"
            params.append(tenant_id)
        sql += " RETURNING data"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return dict(row[0])

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def find(
        self,
        *,
        tenant_id: str | None,
        filters: dict[str, Any] | None = None,
        predicate: Callable[[dict[str, Any]], bool] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        sql = f"SELECT data FROM {self._table_name} WHERE data @> %s::jsonb"
        params: list[Any] = [self._dump(filters or {})]
        if tenant_id is not None:
            sql += " AND tenant_id = %s"
            params.append(tenant_id)
        if order_by:
            direction = "DESC" if descending else "ASC"
            sql += f" ORDER BY data->>'{validate_identifier(order_by)}' {direction}"
        if limit is not None and predicate is None:
            sql += " LIMIT %s"
            params.append(int(limit))

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                fetched = cur.fetchall() or []
            return [dict(r[0]) for r in fetched if isinstance(r[0], dict)]

        rows = self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
        if predicate is not None:
            rows = [r for r in rows if predicate(r)]
            if limit is not None:
                rows = rows[:limit]
        return rows

    def find_one(self, *, tenant_id: str | None, filters: dict[str, Any]) -> dict[str, Any] | None:
        rows = self.find(tenant_id=tenant_id, filters=filters, limit=1)
        return rows[0] if rows else None


RowStore = InMemoryRowStore | PostgresRowStore
