from __future__ import annotations

import json
import threading
import uuid
from datetime import UTC, datetime
from typing import Any

from bizops.db.postgres import PostgresTxRunner, validate_identifier
from bizops.errors import ApiError

SYSTEM_MINT_ADDRESS = "xdk1treasury000000000000000000000000000000"
XDK_PRECISION = 6
REFUND_TX_TYPE = "withdrawal_refund"


def new_tx_hash() -> str:
    return f"0x{uuid.uuid4().hex}"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def insufficient_balance(available: float, requested: float) -> ApiError:
    return ApiError(
        code="XDK_INSUFFICIENT_BALANCE",
        message=f"Insufficient treasury balance. Available: {available:.2f} XDK, Requested: {requested:.2f} XDK",
        error_class="business_rule",
        retryable=False,
        http_status=400,
    )


def _account_missing(address: str) -> ApiError:
    return ApiError(
        code="XDK_ACCOUNT_NOT_FOUND",
        message=f"xdk account not found: {address}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def _build_tx(
    *,
    tenant_id: str,
    from_address: str,
    to_address: str,
    amount: float,
    tx_type: str,
    data: dict[str, Any] | None,
    signature: str | None,
) -> dict[str, Any]:
    return {
        "tx_hash": new_tx_hash(),
        "tenant_id": tenant_id,
        "from_address": from_address,
        "to_address": to_address,
        "amount": round(float(amount), XDK_PRECISION),
        "tx_type": tx_type,
        "status": "confirmed",
        "signature": signature,
        "data": dict(data or {}),
        "created_at": _now_iso(),
    }


class InMemoryXdkLedgerRepository:
    """Ledger over plain dicts; every balance mutation happens under one lock."""

    def __init__(
        self,
        *,
        accounts: dict[str, dict[str, Any]],
        transactions: dict[str, dict[str, Any]],
        treasuries: dict[str, dict[str, Any]],
        exchange_rates: dict[str, dict[str, Any]],
        lock: threading.RLock | None = None,
    ) -> None:
        self._accounts = accounts
        self._transactions = transactions
        self._treasuries = treasuries
        self._rates = exchange_rates
        self._lock = lock or threading.RLock()

    @staticmethod
    def _visible(row: dict[str, Any] | None, tenant_id: str | None) -> dict[str, Any] | None:
        if row is None:
            return None
        if tenant_id is not None and row.get("tenant_id") != tenant_id:
            return None
        return dict(row)

    def get_account(self, *, tenant_id: str | None, address: str) -> dict[str, Any] | None:
        return self._visible(self._accounts.get(address), tenant_id)

    def find_user_account(self, *, tenant_id: str | None, user_id: str) -> dict[str, Any] | None:
        for row in self._accounts.values():
            if row.get("user_id") == user_id and row.get("account_type") == "user":
                found = self._visible(row, tenant_id)
                if found is not None:
                    return found
        return None

    def create_account(self, *, account: dict[str, Any]) -> dict[str, Any]:
        item = {"balance": 0.0, "version": 0, "metadata": {}, "created_at": _now_iso(), **account}
        with self._lock:
            existing = self._accounts.get(item["address"])
            if existing is not None:
                return dict(existing)
            self._accounts[item["address"]] = item
        return dict(item)

    def get_treasury(self, *, tenant_id: str | None, deal_room_id: str) -> dict[str, Any] | None:
        treasury = self._visible(self._treasuries.get(deal_room_id), tenant_id)
        if treasury is None:
            return None
        account = self._accounts.get(str(treasury["xdk_address"])) or {}
        treasury["balance"] = float(account.get("balance", 0.0))
        return treasury

    def create_treasury(self, *, tenant_id: str, deal_room_id: str, address: str) -> dict[str, Any]:
        with self._lock:
            existing = self._treasuries.get(deal_room_id)
            if existing is None:
                self.create_account(
                    account={
                        "address": address,
                        "tenant_id": tenant_id,
                        "deal_room_id": deal_room_id,
                        "account_type": "treasury",
                        "metadata": {"deal_room_id": deal_room_id, "type": "deal_room_treasury"},
                    }
                )
                self._treasuries[deal_room_id] = {
                    "deal_room_id": deal_room_id,
                    "tenant_id": tenant_id,
                    "xdk_address": address,
                    "is_active": True,
                    "created_at": _now_iso(),
                }
        return self.get_treasury(tenant_id=None, deal_room_id=deal_room_id) or {}

    def latest_rate(self, *, base_currency: str = "USD") -> float:
        candidates = [r for r in self._rates.values() if r.get("base_currency") == base_currency]
        if not candidates:
            return 1.0
        latest = max(candidates, key=lambda r: str(r.get("effective_from") or ""))
        return float(latest.get("xdk_rate") or 1.0)

    def add_rate(self, *, rate: dict[str, Any]) -> dict[str, Any]:
        item = {"rate_id": f"rate_{uuid.uuid4().hex[:12]}", "effective_from": _now_iso(), **rate}
        self._rates[item["rate_id"]] = item
        return dict(item)

    def list_transactions(self, *, tenant_id: str | None, address: str, limit: int = 50) -> list[dict[str, Any]]:
        rows = [
            dict(tx)
            for tx in self._transactions.values()
            if (tx.get("from_address") == address or tx.get("to_address") == address)
            and (tenant_id is None or tx.get("tenant_id") == tenant_id)
        ]
        rows.sort(key=lambda tx: str(tx.get("created_at") or ""), reverse=True)
        return rows[:limit]

    def transfer(
        self,
        *,
        tenant_id: str,
        from_address: str,
        to_address: str,
        amount: float,
        tx_type: str = "transfer",
        data: dict[str, Any] | None = None,
        signature: str | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            source = self._accounts.get(from_address)
            target = self._accounts.get(to_address)
            if source is None:
                raise _account_missing(from_address)
            if target is None:
                raise _account_missing(to_address)
            available = float(source.get("balance", 0.0))
            if available < amount:
                raise insufficient_balance(available, amount)
            tx = _build_tx(
                tenant_id=tenant_id,
                from_address=from_address,
                to_address=to_address,
                amount=amount,
                tx_type=tx_type,
                data=data,
                signature=signature,
            )
            source["balance"] = round(available - amount, XDK_PRECISION)
            source["version"] = int(source.get("version", 0)) + 1
            target["balance"] = round(float(target.get("balance", 0.0)) + amount, XDK_PRECISION)
            target["version"] = int(target.get("version", 0)) + 1
            self._transactions[tx["tx_hash"]] = tx
        return dict(tx)

    def mint(
        self,
        *,
        tenant_id: str,
        to_address: str,
        amount: float,
        tx_type: str,
        data: dict[str, Any] | None = None,
        from_address: str = SYSTEM_MINT_ADDRESS,
    ) -> dict[str, Any]:
        with self._lock:
            target = self._accounts.get(to_address)
            if target is None:
                raise _account_missing(to_address)
            tx = _build_tx(
                tenant_id=tenant_id,
                from_address=from_address,
                to_address=to_address,
                amount=amount,
                tx_type=tx_type,
                data=data,
                signature=None,
            )
            target["balance"] = round(float(target.get("balance", 0.0)) + amount, XDK_PRECISION)
            target["version"] = int(target.get("version", 0)) + 1
            self._transactions[tx["tx_hash"]] = tx
        return dict(tx)

    def refund(
        self,
        *,
        tenant_id: str,
        to_address: str,
        amount: float,
        withdrawal_request_id: str,
        reason: str,
    ) -> dict[str, Any] | None:
        """Void a failed withdrawal's ledger entries and credit the amount back.

        Returns ``None`` when the withdrawal was already refunded.
        """
        with self._lock:
            if to_address not in self._accounts:
                raise _account_missing(to_address)
            related = [
                tx
                for tx in self._transactions.values()
                if (tx.get("data") or {}).get("withdrawal_request_id") == withdrawal_request_id
            ]
            if any(tx.get("tx_type") == REFUND_TX_TYPE for tx in related):
                return None
            for tx in related:
                tx["status"] = "failed"
            return self.mint(
                tenant_id=tenant_id,
                to_address=to_address,
                amount=amount,
                tx_type=REFUND_TX_TYPE,
                data={"withdrawal_request_id": withdrawal_request_id, "reason": reason},
            )


class PostgresXdkLedgerRepository:
    """Ledger on PostgreSQL: paired balance updates share one transaction with row locks."""

    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        accounts_table: str = "xdk_accounts",
        transactions_table: str = "xdk_transactions",
        treasuries_table: str = "xdk_treasuries",
        rates_table: str = "xdk_exchange_rates",
    ) -> None:
        self._tx_runner = tx_runner
        self._accounts = validate_identifier(accounts_table)
        self._transactions = validate_identifier(transactions_table)
        self._treasuries = validate_identifier(treasuries_table)
        self._rates = validate_identifier(rates_table)

    @staticmethod
    def _account_from_row(row: Any) -> dict[str, Any]:
        return {
            "address": row[0],
            "tenant_id": row[1],
            "user_id": row[2],
            "deal_room_id": row[3],
            "account_type": row[4],
            "balance": float(row[5]),
            "version": int(row[6]),
            "metadata": row[7] if isinstance(row[7], dict) else {},
        }

    def _select_account(self, where: str) -> str:
        return f"""
            SELECT address, tenant_id, user_id, deal_room_id, account_type, balance, version, metadata
            FROM {self._accounts}
            WHERE {where}
        """

    def get_account(self, *, tenant_id: str | None, address: str) -> dict[str, Any] | None:
        sql = self._select_account("address = %s") + " LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (address,))
                row = cur.fetchone()
            return None if row is None else self._account_from_row(row)

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def find_user_account(self, *, tenant_id: str | None, user_id: str) -> dict[str, Any] | None:
        sql = self._select_account("user_id = %s AND account_type = 'user'") + " LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (user_id,))
                row = cur.fetchone()
            return None if row is None else self._account_from_row(row)

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def _insert_account_sql(self) -> str:
        return f"""
            INSERT INTO {self._accounts} (
                address, tenant_id, user_id, deal_room_id, account_type, balance, version, metadata
            ) VALUES (%s, %s, %s, %s, %s, %s, 0, %s::jsonb)
            ON CONFLICT (address) DO NOTHING
        """

    def create_account(self, *, account: dict[str, Any]) -> dict[str, Any]:
        tenant_id = str(account["tenant_id"])
        sql = self._insert_account_sql()

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        account["address"],
                        tenant_id,
                        account.get("user_id"),
                        account.get("deal_room_id"),
                        account.get("account_type", "user"),
                        float(account.get("balance", 0.0)),
                        json.dumps(account.get("metadata") or {}, ensure_ascii=True, sort_keys=True),
                    ),
                )

        self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
        return self.get_account(tenant_id=tenant_id, address=str(account["address"])) or dict(account)

    def get_treasury(self, *, tenant_id: str | None, deal_room_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT t.deal_room_id, t.tenant_id, t.xdk_address, t.is_active, COALESCE(a.balance, 0)
            FROM {self._treasuries} t
            LEFT JOIN {self._accounts} a ON a.address = t.xdk_address
            WHERE t.deal_room_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (deal_room_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return {
                "deal_room_id": row[0],
                "tenant_id": row[1],
                "xdk_address": row[2],
                "is_active": bool(row[3]),
                "balance": float(row[4]),
            }

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def create_treasury(self, *, tenant_id: str, deal_room_id: str, address: str) -> dict[str, Any]:
        account_sql = self._insert_account_sql()
        treasury_sql = f"""
            INSERT INTO {self._treasuries} (deal_room_id, tenant_id, xdk_address, is_active)
            VALUES (%s, %s, %s, TRUE)
            ON CONFLICT (deal_room_id) DO NOTHING
        """
        metadata = json.dumps({"deal_room_id": deal_room_id, "type": "deal_room_treasury"}, sort_keys=True)

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(account_sql, (address, tenant_id, None, deal_room_id, "treasury", 0.0, metadata))
                cur.execute(treasury_sql, (deal_room_id, tenant_id, address))

        self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
        return self.get_treasury(tenant_id=tenant_id, deal_room_id=deal_room_id) or {}

    def latest_rate(self, *, base_currency: str = "USD") -> float:
        sql = f"""
            SELECT xdk_rate FROM {self._rates}
            WHERE base_currency = %s
            ORDER BY effective_from DESC
            LIMIT 1
        """

        def _op(conn: Any) -> float:
            with conn.cursor() as cur:
                cur.execute(sql, (base_currency,))
                row = cur.fetchone()
            return float(row[0]) if row and row[0] else 1.0

        return self._tx_runner.run_in_tx(tenant_id=None, fn=_op)

    def add_rate(self, *, rate: dict[str, Any]) -> dict[str, Any]:
        item = {"rate_id": f"rate_{uuid.uuid4().hex[:12]}", "effective_from": _now_iso(), **rate}
        sql = f"""
            INSERT INTO {self._rates} (rate_id, base_currency, xdk_rate, effective_from)
            VALUES (%s, %s, %s, %s)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (item["rate_id"], item.get("base_currency", "USD"), float(item["xdk_rate"]), item["effective_from"]),
                )
            return item

        return self._tx_runner.run_in_tx(tenant_id=None, fn=_op)

    def list_transactions(self, *, tenant_id: str | None, address: str, limit: int = 50) -> list[dict[str, Any]]:
        sql = f"""
            SELECT tx_hash, tenant_id, from_address, to_address, amount, tx_type, status, signature, data, created_at
            FROM {self._transactions}
            WHERE from_address = %s OR to_address = %s
            ORDER BY created_at DESC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (address, address, int(limit)))
                rows = cur.fetchall() or []
            return [
                {
                    "tx_hash": r[0],
                    "tenant_id": r[1],
                    "from_address": r[2],
                    "to_address": r[3],
                    "amount": float(r[4]),
                    "tx_type": r[5],
                    "status": r[6],
                    "signature": r[7],
                    "data": r[8] if isinstance(r[8], dict) else {},
                    "created_at": str(r[9]),
                }
                for r in rows
            ]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def _insert_tx(self, cur: Any, tx: dict[str, Any]) -> None:
        cur.execute(
            f"""
            INSERT INTO {self._transactions} (
                tx_hash, tenant_id, from_address, to_address, amount, tx_type, status, signature, data, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s)
            """,
            (
                tx["tx_hash"],
                tx["tenant_id"],
                tx["from_address"],
                tx["to_address"],
                tx["amount"],
                tx["tx_type"],
                tx["status"],
                tx["signature"],
                json.dumps(tx["data"], ensure_ascii=True, sort_keys=True, default=str),
                tx["created_at"],
            ),
        )

    def _bump_balance(self, cur: Any, *, address: str, delta: float, expected_version: int) -> None:
        cur.execute(
            f"""
            UPDATE {self._accounts}
            SET balance = balance + %s, version = version + 1
            WHERE address = %s AND version = %s
            """,
            (delta, address, expected_version),
        )
        if cur.rowcount != 1:
            raise ApiError(
                code="XDK_CONCURRENT_UPDATE",
                message=f"concurrent balance update on {address}",
                error_class="transient",
                retryable=True,
                http_status=409,
            )

    def transfer(
        self,
        *,
        tenant_id: str,
        from_address: str,
        to_address: str,
        amount: float,
        tx_type: str = "transfer",
        data: dict[str, Any] | None = None,
        signature: str | None = None,
    ) -> dict[str, Any]:
        tx = _build_tx(
            tenant_id=tenant_id,
            from_address=from_address,
            to_address=to_address,
            amount=amount,
            tx_type=tx_type,
            data=data,
            signature=signature,
        )
        lock_sql = f"""
            SELECT address, balance, version FROM {self._accounts}
            WHERE address = ANY(%s)
            ORDER BY address
            FOR UPDATE
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(lock_sql, ([from_address, to_address],))
                locked = {r[0]: (float(r[1]), int(r[2])) for r in cur.fetchall() or []}
                if from_address not in locked:
                    raise _account_missing(from_address)
                if to_address not in locked:
                    raise _account_missing(to_address)
                available, source_version = locked[from_address]
                if available < amount:
                    raise insufficient_balance(available, amount)
                self._insert_tx(cur, tx)
                self._bump_balance(cur, address=from_address, delta=-amount, expected_version=source_version)
                self._bump_balance(cur, address=to_address, delta=amount, expected_version=locked[to_address][1])
            return tx

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def mint(
        self,
        *,
        tenant_id: str,
        to_address: str,
        amount: float,
        tx_type: str,
        data: dict[str, Any] | None = None,
        from_address: str = SYSTEM_MINT_ADDRESS,
    ) -> dict[str, Any]:
        tx = _build_tx(
            tenant_id=tenant_id,
            from_address=from_address,
            to_address=to_address,
            amount=amount,
            tx_type=tx_type,
            data=data,
            signature=None,
        )
        lock_sql = f"SELECT version FROM {self._accounts} WHERE address = %s FOR UPDATE"

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(lock_sql, (to_address,))
                row = cur.fetchone()
                if row is None:
                    raise _account_missing(to_address)
                self._insert_tx(cur, tx)
                self._bump_balance(cur, address=to_address, delta=amount, expected_version=int(row[0]))
            return tx

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def refund(
        self,
        *,
        tenant_id: str,
        to_address: str,
        amount: float,
        withdrawal_request_id: str,
        reason: str,
    ) -> dict[str, Any] | None:
        tx = _build_tx(
            tenant_id=tenant_id,
            from_address=SYSTEM_MINT_ADDRESS,
            to_address=to_address,
            amount=amount,
            tx_type=REFUND_TX_TYPE,
            data={"withdrawal_request_id": withdrawal_request_id, "reason": reason},
            signature=None,
        )
        lock_sql = f"SELECT version FROM {self._accounts} WHERE address = %s FOR UPDATE"
        refunded_sql = f"""
            SELECT tx_hash FROM {self._transactions}
            WHERE data->>'withdrawal_request_id' = %s AND tx_type = %s
            LIMIT 1
        """
        void_sql = f"""
            UPDATE {self._transactions}
            SET status = 'failed'
            WHERE data->>'withdrawal_request_id' = %s AND tx_type <> %s
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(lock_sql, (to_address,))
                row = cur.fetchone()
                if row is None:
                    raise _account_missing(to_address)
                cur.execute(refunded_sql, (withdrawal_request_id, REFUND_TX_TYPE))
                if cur.fetchone() is not None:
                    return None
                cur.execute(void_sql, (withdrawal_request_id, REFUND_TX_TYPE))
                self._insert_tx(cur, tx)
                self._bump_balance(cur, address=to_address, delta=amount, expected_version=int(row[0]))
            return tx

        return self._tx_runner.run_in_tx(tenant_id=None, fn=_op)
