from __future__ import annotations

import json
import threading
import uuid
from datetime import UTC, datetime
from typing import Any

from bizops.db.postgres import PostgresTxRunner, validate_identifier
from bizops.errors import ApiError

ESCROW_COLUMNS = (
    "escrow_id",
    "tenant_id",
    "deal_room_id",
    "currency",
    "total_deposited",
    "total_released",
    "minimum_balance_threshold",
    "workflows_paused",
    "paused_at",
    "paused_reason",
    "version",
)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def available_balance(escrow: dict[str, Any]) -> float:
    return round(float(escrow.get("total_deposited") or 0.0) - float(escrow.get("total_released") or 0.0), 2)


def evaluate_kill_switch(escrow: dict[str, Any]) -> dict[str, Any]:
    """Decide whether workflows funded by this escrow must stop.

    The switch trips once the available balance falls below the
    configured ``minimum_balance_threshold``; an escrow that is already
    paused stays paused until the next deposit.
    """
    available = available_balance(escrow)
    threshold = float(escrow.get("minimum_balance_threshold") or 0.0)
    should_pause = available < threshold
    reason = None
    if should_pause:
        reason = f"Escrow balance ({available:.2f}) below minimum threshold ({threshold:.2f})"
    return {
        "available": available,
        "threshold": threshold,
        "should_pause": should_pause,
        "already_paused": bool(escrow.get("workflows_paused")),
        "reason": reason,
    }


def _escrow_missing(escrow_id: str) -> ApiError:
    return ApiError(
        code="ESCROW_NOT_FOUND",
        message=f"escrow not found: {escrow_id}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def _insufficient(available: float, requested: float) -> ApiError:
    return ApiError(
        code="ESCROW_INSUFFICIENT_BALANCE",
        message=f"Insufficient escrow balance. Available: {available:.2f}, Requested: {requested:.2f}",
        error_class="business_rule",
        retryable=False,
        http_status=400,
    )


def _paused(escrow: dict[str, Any]) -> ApiError:
    return ApiError(
        code="ESCROW_WORKFLOWS_PAUSED",
        message=str(escrow.get("paused_reason") or "escrow workflows are paused"),
        error_class="business_rule",
        retryable=False,
        http_status=409,
    )


def _build_transaction(*, escrow: dict[str, Any], transaction_type: str, amount: float, fields: dict[str, Any]) -> dict[str, Any]:
    return {
        "transaction_id": f"etx_{uuid.uuid4().hex[:12]}",
        "tenant_id": escrow["tenant_id"],
        "escrow_id": escrow["escrow_id"],
        "deal_room_id": escrow.get("deal_room_id"),
        "transaction_type": transaction_type,
        "amount": round(float(amount), 2),
        "currency": escrow.get("currency", "USD"),
        "status": "completed",
        "created_at": _now_iso(),
        **fields,
    }


class InMemoryEscrowRepository:
    def __init__(
        self,
        *,
        escrows: dict[str, dict[str, Any]],
        transactions: dict[str, dict[str, Any]],
        lock: threading.RLock | None = None,
    ) -> None:
        self._escrows = escrows
        self._transactions = transactions
        self._lock = lock or threading.RLock()

    def get(self, *, tenant_id: str | None, escrow_id: str) -> dict[str, Any] | None:
        row = self._escrows.get(escrow_id)
        if row is None or (tenant_id is not None and row.get("tenant_id") != tenant_id):
            return None
        return dict(row)

    def get_for_deal_room(self, *, tenant_id: str | None, deal_room_id: str) -> dict[str, Any] | None:
        for row in self._escrows.values():
            if row.get("deal_room_id") != deal_room_id:
                continue
            if tenant_id is not None and row.get("tenant_id") != tenant_id:
                continue
            return dict(row)
        return None

    def create(self, *, escrow: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            existing = self.get_for_deal_room(tenant_id=None, deal_room_id=str(escrow["deal_room_id"]))
            if existing is not None:
                return existing
            item = {
                "escrow_id": f"esc_{uuid.uuid4().hex[:12]}",
                "currency": "USD",
                "total_deposited": 0.0,
                "total_released": 0.0,
                "minimum_balance_threshold": 0.0,
                "workflows_paused": False,
                "paused_at": None,
                "paused_reason": None,
                "version": 0,
                "created_at": _now_iso(),
                **escrow,
            }
            self._escrows[item["escrow_id"]] = item
        return dict(item)

    def find_transaction_by_payment_intent(self, *, payment_intent_id: str) -> dict[str, Any] | None:
        for tx in self._transactions.values():
            if tx.get("stripe_payment_intent_id") == payment_intent_id:
                return dict(tx)
        return None

    def list_transactions(self, *, tenant_id: str | None, escrow_id: str, limit: int = 50) -> list[dict[str, Any]]:
        rows = [
            dict(tx)
            for tx in self._transactions.values()
            if tx.get("escrow_id") == escrow_id and (tenant_id is None or tx.get("tenant_id") == tenant_id)
        ]
        rows.sort(key=lambda tx: str(tx.get("created_at") or ""), reverse=True)
        return rows[:limit]

    def deposit(self, *, escrow_id: str, amount: float, fields: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            escrow = self._escrows.get(escrow_id)
            if escrow is None:
                raise _escrow_missing(escrow_id)
            tx = _build_transaction(escrow=escrow, transaction_type="deposit", amount=amount, fields=fields)
            escrow["total_deposited"] = round(float(escrow.get("total_deposited") or 0.0) + amount, 2)
            escrow["workflows_paused"] = False
            escrow["paused_at"] = None
            escrow["paused_reason"] = None
            escrow["version"] = int(escrow.get("version", 0)) + 1
            self._transactions[tx["transaction_id"]] = tx
            return {"escrow": dict(escrow), "transaction": dict(tx)}

    def release(
        self,
        *,
        escrow_id: str,
        amount: float,
        fields: dict[str, Any],
        allow_paused: bool = False,
    ) -> dict[str, Any]:
        with self._lock:
            escrow = self._escrows.get(escrow_id)
            if escrow is None:
                raise _escrow_missing(escrow_id)
            available = available_balance(escrow)
            if amount > available:
                raise _insufficient(available, amount)
            if escrow.get("workflows_paused") and not allow_paused:
                raise _paused(escrow)
            tx = _build_transaction(escrow=escrow, transaction_type="release", amount=amount, fields=fields)
            escrow["total_released"] = round(float(escrow.get("total_released") or 0.0) + amount, 2)
            escrow["version"] = int(escrow.get("version", 0)) + 1
            decision = evaluate_kill_switch(escrow)
            if decision["should_pause"] and not escrow.get("workflows_paused"):
                escrow["workflows_paused"] = True
                escrow["paused_at"] = _now_iso()
                escrow["paused_reason"] = decision["reason"]
            self._transactions[tx["transaction_id"]] = tx
            return {"escrow": dict(escrow), "transaction": dict(tx), "kill_switch": decision}

    def set_paused(self, *, tenant_id: str | None, escrow_id: str, paused: bool, reason: str | None = None) -> dict[str, Any]:
        with self._lock:
            escrow = self._escrows.get(escrow_id)
            if escrow is None or (tenant_id is not None and escrow.get("tenant_id") != tenant_id):
                raise _escrow_missing(escrow_id)
            escrow["workflows_paused"] = paused
            escrow["paused_at"] = _now_iso() if paused else None
            escrow["paused_reason"] = reason if paused else None
            escrow["version"] = int(escrow.get("version", 0)) + 1
            return dict(escrow)


class PostgresEscrowRepository:
    """Escrow on PostgreSQL; balance changes lock the escrow row for the whole transaction."""

    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        escrow_table: str = "deal_room_escrow",
        transactions_table: str = "escrow_transactions",
    ) -> None:
        self._tx_runner = tx_runner
        self._escrow_table = validate_identifier(escrow_table)
        self._transactions_table = validate_identifier(transactions_table)

    @staticmethod
    def _escrow_from_row(row: Any) -> dict[str, Any]:
        item = dict(zip(ESCROW_COLUMNS, row))
        for key in ("total_deposited", "total_released", "minimum_balance_threshold"):
            item[key] = float(item[key] or 0.0)
        item["workflows_paused"] = bool(item["workflows_paused"])
        item["version"] = int(item["version"] or 0)
        if item["paused_at"] is not None:
            item["paused_at"] = str(item["paused_at"])
        return item

    def _select(self, where: str, *, for_update: bool = False) -> str:
        sql = f"SELECT {', '.join(ESCROW_COLUMNS)} FROM {self._escrow_table} WHERE {where} LIMIT 1"
        if for_update:
            sql += " FOR UPDATE"
        return sql

    def _fetch_one(self, *, tenant_id: str | None, where: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        sql = self._select(where)

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            return None if row is None else self._escrow_from_row(row)

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def get(self, *, tenant_id: str | None, escrow_id: str) -> dict[str, Any] | None:
        return self._fetch_one(tenant_id=tenant_id, where="escrow_id = %s", params=(escrow_id,))

    def get_for_deal_room(self, *, tenant_id: str | None, deal_room_id: str) -> dict[str, Any] | None:
        return self._fetch_one(tenant_id=tenant_id, where="deal_room_id = %s", params=(deal_room_id,))

    def create(self, *, escrow: dict[str, Any]) -> dict[str, Any]:
        tenant_id = str(escrow["tenant_id"])
        escrow_id = str(escrow.get("escrow_id") or f"esc_{uuid.uuid4().hex[:12]}")
        sql = f"""
            INSERT INTO {self._escrow_table} (
                escrow_id, tenant_id, deal_room_id, currency, total_deposited, total_released,
                minimum_balance_threshold, workflows_paused, version
            ) VALUES (%s, %s, %s, %s, 0, 0, %s, FALSE, 0)
            ON CONFLICT (deal_room_id) DO NOTHING
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        escrow_id,
                        tenant_id,
                        escrow["deal_room_id"],
                        escrow.get("currency", "USD"),
                        float(escrow.get("minimum_balance_threshold") or 0.0),
                    ),
                )

        self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
        return self.get_for_deal_room(tenant_id=tenant_id, deal_room_id=str(escrow["deal_room_id"])) or {}

    def _tx_from_data(self, data: Any) -> dict[str, Any] | None:
        return dict(data) if isinstance(data, dict) else None

    def find_transaction_by_payment_intent(self, *, payment_intent_id: str) -> dict[str, Any] | None:
        sql = f"SELECT data FROM {self._transactions_table} WHERE stripe_payment_intent_id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (payment_intent_id,))
                row = cur.fetchone()
            return None if row is None else self._tx_from_data(row[0])

        return self._tx_runner.run_in_tx(tenant_id=None, fn=_op)

    def list_transactions(self, *, tenant_id: str | None, escrow_id: str, limit: int = 50) -> list[dict[str, Any]]:
        sql = f"""
            SELECT data FROM {self._transactions_table}
            WHERE escrow_id = %s
            ORDER BY created_at DESC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (escrow_id, int(limit)))
                rows = cur.fetchall() or []
            return [tx for tx in (self._tx_from_data(r[0]) for r in rows) if tx is not None]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def _insert_transaction(self, cur: Any, tx: dict[str, Any]) -> None:
        cur.execute(
            f"""
            INSERT INTO {self._transactions_table} (
                transaction_id, tenant_id, escrow_id, transaction_type, amount,
                stripe_payment_intent_id, data, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, %s)
            """,
            (
                tx["transaction_id"],
                tx["tenant_id"],
                tx["escrow_id"],
                tx["transaction_type"],
                tx["amount"],
                tx.get("stripe_payment_intent_id"),
                json.dumps(tx, ensure_ascii=True, sort_keys=True, default=str),
                tx["created_at"],
            ),
        )

    def _lock_escrow(self, cur: Any, escrow_id: str) -> dict[str, Any]:
        cur.execute(self._select("escrow_id = %s", for_update=True), (escrow_id,))
        row = cur.fetchone()
        if row is None:
            raise _escrow_missing(escrow_id)
        return self._escrow_from_row(row)

    def _write_escrow(self, cur: Any, escrow: dict[str, Any], *, expected_version: int) -> None:
        cur.execute(
            f"""
            UPDATE {self._escrow_table}
            SET total_deposited = %s, total_released = %s, workflows_paused = %s,
                paused_at = %s, paused_reason = %s, version = version + 1
            WHERE escrow_id = %s AND version = %s
            """,
            (
                escrow["total_deposited"],
                escrow["total_released"],
                escrow["workflows_paused"],
                escrow["paused_at"],
                escrow["paused_reason"],
                escrow["escrow_id"],
                expected_version,
            ),
        )
        if cur.rowcount != 1:
            raise ApiError(
                code="ESCROW_CONCURRENT_UPDATE",
                message=f"concurrent escrow update on {escrow['escrow_id']}",
                error_class="transient",
                retryable=True,
                http_status=409,
            )
        escrow["version"] = expected_version + 1

    def deposit(self, *, escrow_id: str, amount: float, fields: dict[str, Any]) -> dict[str, Any]:
        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                escrow = self._lock_escrow(cur, escrow_id)
                version = escrow["version"]
                tx = _build_transaction(escrow=escrow, transaction_type="deposit", amount=amount, fields=fields)
                escrow["total_deposited"] = round(escrow["total_deposited"] + amount, 2)
                escrow["workflows_paused"] = False
                escrow["paused_at"] = None
                escrow["paused_reason"] = None
                self._insert_transaction(cur, tx)
                self._write_escrow(cur, escrow, expected_version=version)
            return {"escrow": escrow, "transaction": tx}

        return self._tx_runner.run_in_tx(tenant_id=None, fn=_op)

    def release(
        self,
        *,
        escrow_id: str,
        amount: float,
        fields: dict[str, Any],
        allow_paused: bool = False,
    ) -> dict[str, Any]:
        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                escrow = self._lock_escrow(cur, escrow_id)
                available = available_balance(escrow)
                if amount > available:
                    raise _insufficient(available, amount)
                if escrow["workflows_paused"] and not allow_paused:
                    raise _paused(escrow)
                version = escrow["version"]
                tx = _build_transaction(escrow=escrow, transaction_type="release", amount=amount, fields=fields)
                escrow["total_released"] = round(escrow["total_released"] + amount, 2)
                decision = evaluate_kill_switch(escrow)
                if decision["should_pause"] and not escrow["workflows_paused"]:
                    escrow["workflows_paused"] = True
                    escrow["paused_at"] = _now_iso()
                    escrow["paused_reason"] = decision["reason"]
                self._insert_transaction(cur, tx)
                self._write_escrow(cur, escrow, expected_version=version)
            return {"escrow": escrow, "transaction": tx, "kill_switch": decision}

        return self._tx_runner.run_in_tx(tenant_id=None, fn=_op)

    def set_paused(self, *, tenant_id: str | None, escrow_id: str, paused: bool, reason: str | None = None) -> dict[str, Any]:
        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                escrow = self._lock_escrow(cur, escrow_id)
                version = escrow["version"]
                escrow["workflows_paused"] = paused
                escrow["paused_at"] = _now_iso() if paused else None
                escrow["paused_reason"] = reason if paused else None
                self._write_escrow(cur, escrow, expected_version=version)
            return escrow

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
