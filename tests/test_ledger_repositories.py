from __future__ import annotations

import threading

import pytest

from bizops.errors import ApiError
from bizops.repositories.escrow import InMemoryEscrowRepository, PostgresEscrowRepository
from bizops.repositories.xdk_ledger import InMemoryXdkLedgerRepository, PostgresXdkLedgerRepository


class ScriptedCursor:
    def __init__(self, conn: "ScriptedConnection"):
        self._conn = conn
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        statement = " ".join(query.strip().split())
        self._conn.executed.append((statement, params))
        if statement.startswith("UPDATE"):
            self.rowcount = self._conn.update_rowcounts.pop(0) if self._conn.update_rowcounts else 1

    def fetchone(self):
        return self._conn.fetchone_rows.pop(0) if self._conn.fetchone_rows else None

    def fetchall(self):
        return self._conn.fetchall_rows


class ScriptedConnection:
    def __init__(self, *, fetchall_rows=None, fetchone_rows=None, update_rowcounts=None):
        self.executed: list[tuple[str, object]] = []
        self.fetchall_rows = list(fetchall_rows or [])
        self.fetchone_rows = list(fetchone_rows or [])
        self.update_rowcounts = list(update_rowcounts or [])

    def cursor(self):
        return ScriptedCursor(self)

    def statements(self, prefix: str) -> list[tuple[str, object]]:
        return [item for item in self.executed if item[0].startswith(prefix)]


class FakeTxRunner:
    def __init__(self, conn: ScriptedConnection):
        self.conn = conn
        self.tenants: list[str | None] = []

    def run_in_tx(self, *, tenant_id, fn):
        self.tenants.append(tenant_id)
        return fn(self.conn)


@pytest.fixture
def ledger():
    repo = InMemoryXdkLedgerRepository(accounts={}, transactions={}, treasuries={}, exchange_rates={})
    for address, tenant in (("xdk1alice", "tenant_a"), ("xdk1bob", "tenant_a")):
        repo.create_account(account={"address": address, "tenant_id": tenant, "account_type": "user"})
    repo.mint(tenant_id="tenant_a", to_address="xdk1alice", amount=100.0, tx_type="mint_funding")
    return repo


def test_in_memory_transfer_moves_balance_and_bumps_versions(ledger):
    tx = ledger.transfer(tenant_id="tenant_a", from_address="xdk1alice", to_address="xdk1bob", amount=40.25)
    alice = ledger.get_account(tenant_id="tenant_a", address="xdk1alice")
    bob = ledger.get_account(tenant_id="tenant_a", address="xdk1bob")
    assert alice["balance"] == 59.75
    assert bob["balance"] == 40.25
    assert alice["version"] == 2
    assert bob["version"] == 1
    assert tx["tx_hash"].startswith("0x")
    assert tx["status"] == "confirmed"
    assert [t["tx_type"] for t in ledger.list_transactions(tenant_id=None, address="xdk1bob")] == ["transfer"]


def test_in_memory_transfer_rejects_overdraft_without_writes(ledger):
    with pytest.raises(ApiError) as exc:
        ledger.transfer(tenant_id="tenant_a", from_address="xdk1alice", to_address="xdk1bob", amount=100.01)
    assert exc.value.code == "XDK_INSUFFICIENT_BALANCE"
    assert exc.value.message == "Insufficient treasury balance. Available: 100.00 XDK, Requested: 100.01 XDK"
    assert ledger.get_account(tenant_id=None, address="xdk1alice")["balance"] == 100.0
    assert ledger.list_transactions(tenant_id=None, address="xdk1bob") == []

    with pytest.raises(ApiError) as missing:
        ledger.transfer(tenant_id="tenant_a", from_address="xdk1alice", to_address="xdk1nobody", amount=1)
    assert missing.value.code == "XDK_ACCOUNT_NOT_FOUND"


def test_in_memory_concurrent_transfers_never_overdraw(ledger):
    failures: list[str] = []

    def _spend():
        try:
            ledger.transfer(tenant_id="tenant_a", from_address="xdk1alice", to_address="xdk1bob", amount=30.0)
        except ApiError as exc:
            failures.append(exc.code)

    threads = [threading.Thread(target=_spend) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert ledger.get_account(tenant_id=None, address="xdk1alice")["balance"] == 10.0
    assert ledger.get_account(tenant_id=None, address="xdk1bob")["balance"] == 90.0
    assert failures == ["XDK_INSUFFICIENT_BALANCE", "XDK_INSUFFICIENT_BALANCE"]


def test_in_memory_tenant_scoping_and_idempotent_account_creation(ledger):
    assert ledger.get_account(tenant_id="tenant_b", address="xdk1alice") is None
    again = ledger.create_account(account={"address": "xdk1alice", "tenant_id": "tenant_a", "balance": 999})
    assert again["balance"] == 100.0


def test_in_memory_refund_voids_withdrawal_transactions(ledger):
    ledger.create_account(account={"address": "xdk1payouts", "tenant_id": "tenant_a", "account_type": "system"})
    debit = ledger.transfer(
        tenant_id="tenant_a",
        from_address="xdk1alice",
        to_address="xdk1payouts",
        amount=60.0,
        tx_type="withdrawal",
        data={"withdrawal_request_id": "wd_1"},
    )
    refund = ledger.refund(
        tenant_id="tenant_a",
        to_address="xdk1alice",
        amount=60.0,
        withdrawal_request_id="wd_1",
        reason="Stripe transfer failed",
    )
    assert refund["tx_type"] == "withdrawal_refund"
    assert refund["status"] == "confirmed"
    assert ledger.get_account(tenant_id=None, address="xdk1alice")["balance"] == 100.0
    statuses = {tx["tx_hash"]: tx["status"] for tx in ledger.list_transactions(tenant_id=None, address="xdk1alice")}
    assert statuses[debit["tx_hash"]] == "failed"
    second = ledger.refund(
        tenant_id="tenant_a",
        to_address="xdk1alice",
        amount=60.0,
        withdrawal_request_id="wd_1",
        reason="Stripe transfer was reversed",
    )
    assert second is None
    assert ledger.get_account(tenant_id=None, address="xdk1alice")["balance"] == 100.0
    assert statuses[refund["tx_hash"]] == "confirmed"


def test_exchange_rate_defaults_to_parity():
    repo = InMemoryXdkLedgerRepository(accounts={}, transactions={}, treasuries={}, exchange_rates={})
    assert repo.latest_rate() == 1.0
    repo.add_rate(rate={"base_currency": "USD", "xdk_rate": 2.5})
    assert repo.latest_rate(base_currency="USD") == 2.5


def test_postgres_transfer_locks_rows_then_writes_tx_and_both_balances():
    conn = ScriptedConnection(fetchall_rows=[("xdk1alice", 100.0, 3), ("xdk1bob", 5.0, 7)])
    runner = FakeTxRunner(conn)
    repo = PostgresXdkLedgerRepository(tx_runner=runner)

    tx = repo.transfer(tenant_id="tenant_a", from_address="xdk1alice", to_address="xdk1bob", amount=25.0)

    assert runner.tenants == ["tenant_a"]
    lock_sql, lock_params = conn.executed[0]
    assert lock_sql.endswith("ORDER BY address FOR UPDATE")
    assert lock_params == (["xdk1alice", "xdk1bob"],)
    assert conn.executed[1][0].startswith("INSERT INTO xdk_transactions")
    assert conn.executed[1][1][0] == tx["tx_hash"]
    updates = conn.statements("UPDATE xdk_accounts")
    assert [u[1] for u in updates] == [(-25.0, "xdk1alice", 3), (25.0, "xdk1bob", 7)]


def test_postgres_transfer_overdraft_writes_nothing():
    conn = ScriptedConnection(fetchall_rows=[("xdk1alice", 10.0, 1), ("xdk1bob", 0.0, 0)])
    repo = PostgresXdkLedgerRepository(tx_runner=FakeTxRunner(conn))
    with pytest.raises(ApiError) as exc:
        repo.transfer(tenant_id="tenant_a", from_address="xdk1alice", to_address="xdk1bob", amount=10.5)
    assert exc.value.code == "XDK_INSUFFICIENT_BALANCE"
    assert len(conn.executed) == 1


def test_postgres_transfer_detects_lost_update():
    conn = ScriptedConnection(
        fetchall_rows=[("xdk1alice", 100.0, 1), ("xdk1bob", 0.0, 0)],
        update_rowcounts=[1, 0],
    )
    repo = PostgresXdkLedgerRepository(tx_runner=FakeTxRunner(conn))
    with pytest.raises(ApiError) as exc:
        repo.transfer(tenant_id="tenant_a", from_address="xdk1alice", to_address="xdk1bob", amount=1.0)
    assert exc.value.code == "XDK_CONCURRENT_UPDATE"
    assert exc.value.retryable is True


def test_postgres_mint_requires_account():
    conn = ScriptedConnection(fetchone_rows=[])
    repo = PostgresXdkLedgerRepository(tx_runner=FakeTxRunner(conn))
    with pytest.raises(ApiError) as exc:
        repo.mint(tenant_id="tenant_a", to_address="xdk1ghost", amount=5.0, tx_type="mint_funding")
    assert exc.value.code == "XDK_ACCOUNT_NOT_FOUND"
    assert conn.statements("INSERT") == []


def test_in_memory_escrow_release_trips_kill_switch_once():
    repo = InMemoryEscrowRepository(escrows={}, transactions={})
    escrow = repo.create(escrow={"tenant_id": "tenant_a", "deal_room_id": "dr_1", "minimum_balance_threshold": 50.0})
    assert repo.create(escrow={"tenant_id": "tenant_a", "deal_room_id": "dr_1"})["escrow_id"] == escrow["escrow_id"]
    repo.deposit(escrow_id=escrow["escrow_id"], amount=100.0, fields={})

    first = repo.release(escrow_id=escrow["escrow_id"], amount=60.0, fields={"purpose": "vendor"})
    assert first["kill_switch"]["should_pause"] is True
    assert first["kill_switch"]["already_paused"] is False
    assert first["escrow"]["workflows_paused"] is True

    with pytest.raises(ApiError) as exc:
        repo.release(escrow_id=escrow["escrow_id"], amount=1.0, fields={})
    assert exc.value.code == "ESCROW_WORKFLOWS_PAUSED"

    forced = repo.release(escrow_id=escrow["escrow_id"], amount=1.0, fields={}, allow_paused=True)
    assert forced["kill_switch"]["already_paused"] is True
    assert forced["escrow"]["total_released"] == 61.0


def test_postgres_escrow_release_locks_row_and_checks_version():
    row = ("esc_1", "tenant_a", "dr_1", "USD", 500.0, 100.0, 0.0, False, None, None, 4)
    conn = ScriptedConnection(fetchone_rows=[row])
    runner = FakeTxRunner(conn)
    repo = PostgresEscrowRepository(tx_runner=runner)

    result = repo.release(escrow_id="esc_1", amount=150.0, fields={"purpose": "Settlement: referral"})

    assert runner.tenants == [None]
    assert conn.executed[0][0].endswith("LIMIT 1 FOR UPDATE")
    assert conn.executed[1][0].startswith("INSERT INTO escrow_transactions")
    update_sql, update_params = conn.statements("UPDATE deal_room_escrow")[0]
    assert update_sql.endswith("WHERE escrow_id = %s AND version = %s")
    assert update_params[1] == 250.0
    assert update_params[-2:] == ("esc_1", 4)
    assert result["escrow"]["version"] == 5
    assert result["transaction"]["purpose"] == "Settlement: referral"


def test_postgres_escrow_release_overdraft_writes_nothing():
    row = ("esc_1", "tenant_a", "dr_1", "USD", 100.0, 90.0, 0.0, False, None, None, 1)
    conn = ScriptedConnection(fetchone_rows=[row])
    repo = PostgresEscrowRepository(tx_runner=FakeTxRunner(conn))
    with pytest.raises(ApiError) as exc:
        repo.release(escrow_id="esc_1", amount=10.01, fields={})
    assert exc.value.code == "ESCROW_INSUFFICIENT_BALANCE"
    assert len(conn.executed) == 1


def test_postgres_escrow_release_checks_balance_before_pause():
    row = ("esc_1", "tenant_a", "dr_1", "USD", 100.0, 90.0, 50.0, True, "2026-01-01T00:00:00+00:00", "low", 2)
    conn = ScriptedConnection(fetchone_rows=[row])
    repo = PostgresEscrowRepository(tx_runner=FakeTxRunner(conn))
    with pytest.raises(ApiError) as exc:
        repo.release(escrow_id="esc_1", amount=500.0, fields={})
    assert exc.value.code == "ESCROW_INSUFFICIENT_BALANCE"
    assert exc.value.http_status == 400
    assert conn.statements("INSERT") == []


def test_in_memory_refund_to_missing_account_voids_nothing(ledger):
    debit = ledger.transfer(
        tenant_id="tenant_a",
        from_address="xdk1alice",
        to_address="xdk1bob",
        amount=25.0,
        tx_type="withdrawal",
        data={"withdrawal_request_id": "wd_2"},
    )
    with pytest.raises(ApiError) as exc:
        ledger.refund(
            tenant_id="tenant_a",
            to_address="xdk1ghost",
            amount=25.0,
            withdrawal_request_id="wd_2",
            reason="Stripe transfer failed",
        )
    assert exc.value.code == "XDK_ACCOUNT_NOT_FOUND"
    assert ledger.list_transactions(tenant_id=None, address="xdk1bob")[0]["tx_hash"] == debit["tx_hash"]
    assert ledger.list_transactions(tenant_id=None, address="xdk1bob")[0]["status"] == "confirmed"


def test_postgres_refund_voids_and_credits_in_one_transaction():
    conn = ScriptedConnection(fetchone_rows=[(3,), None])
    runner = FakeTxRunner(conn)
    repo = PostgresXdkLedgerRepository(tx_runner=runner)
    tx = repo.refund(
        tenant_id="tenant_a",
        to_address="xdk1alice",
        amount=60.0,
        withdrawal_request_id="wd_1",
        reason="Stripe transfer failed",
    )
    assert runner.tenants == [None]
    statements = [sql for sql, _ in conn.executed]
    assert statements[0].endswith("FOR UPDATE")
    assert statements[1].startswith("SELECT tx_hash FROM xdk_transactions")
    assert statements[2].startswith("UPDATE xdk_transactions SET status = 'failed'")
    assert statements[3].startswith("INSERT INTO xdk_transactions")
    assert statements[4].startswith("UPDATE xdk_accounts")
    assert conn.executed[2][1] == ("wd_1", "withdrawal_refund")
    assert conn.executed[4][1] == (60.0, "xdk1alice", 3)
    assert tx["tx_type"] == "withdrawal_refund"


def test_postgres_refund_skips_when_already_refunded():
    conn = ScriptedConnection(fetchone_rows=[(3,), ("0xrefund",)])
    repo = PostgresXdkLedgerRepository(tx_runner=FakeTxRunner(conn))
    result = repo.refund(
        tenant_id="tenant_a",
        to_address="xdk1alice",
        amount=60.0,
        withdrawal_request_id="wd_1",
        reason="Stripe transfer was reversed",
    )
    assert result is None
    assert conn.statements("UPDATE") == []
    assert conn.statements("INSERT") == []


def test_postgres_refund_missing_account_writes_nothing():
    conn = ScriptedConnection(fetchone_rows=[])
    repo = PostgresXdkLedgerRepository(tx_runner=FakeTxRunner(conn))
    with pytest.raises(ApiError) as exc:
        repo.refund(
            tenant_id="tenant_a",
            to_address="xdk1ghost",
            amount=60.0,
            withdrawal_request_id="wd_1",
            reason="Stripe transfer failed",
        )
    assert exc.value.code == "XDK_ACCOUNT_NOT_FOUND"
    assert len(conn.executed) == 1
