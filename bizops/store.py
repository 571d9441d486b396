from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx

from bizops.db.postgres import PostgresTxRunner
from bizops.db.rls import PostgresRlsManager
from bizops.db.schema import ROW_STORE_TABLES, initialize_schema
from bizops.dns_registrars import RegistrarConfig
from bizops.errors import ApiError
from bizops.model_gateway import ClientFactory, GatewayConfig
from bizops.repositories import (
    BillingRepository,
    DealRoomsRepository,
    DomainsRepository,
    GatewayUsageRepository,
    InMemoryAuditLogsRepository,
    InMemoryEscrowRepository,
    InMemoryRowStore,
    InMemoryXdkLedgerRepository,
    NotificationsRepository,
    PostgresAuditLogsRepository,
    PostgresEscrowRepository,
    PostgresRowStore,
    PostgresXdkLedgerRepository,
    SettlementsRepository,
    ValueLedgerRepository,
    WebhookEventsRepository,
)
from bizops.runtime_profile import store_backend_name, true_stack_required
from bizops.settings import IntegrationConfig
from bizops.store_domains import StoreDomainsMixin
from bizops.store_escrow import StoreEscrowMixin
from bizops.store_gateway import StoreGatewayMixin
from bizops.store_hubspot import StoreHubspotMixin
from bizops.store_ledger import StoreLedgerMixin
from bizops.store_settlements import StoreSettlementsMixin
from bizops.store_stripe import StoreStripeMixin
from bizops.stripe_client import StripeClient

logger = logging.getLogger(__name__)


@dataclass
class IdempotencyRecord:
    fingerprint: str
    data: dict[str, Any]


class InMemoryStore(
    StoreLedgerMixin,
    StoreEscrowMixin,
    StoreStripeMixin,
    StoreHubspotMixin,
    StoreSettlementsMixin,
    StoreGatewayMixin,
    StoreDomainsMixin,
):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.idempotency_records: dict[tuple[str, str], IdempotencyRecord] = {}
        self._idempotency_locks: dict[tuple[str, str], threading.Lock] = {}
        self.audit_logs: list[dict[str, Any]] = []
        self.tables: dict[str, dict[str, dict[str, Any]]] = {name: {} for name in ROW_STORE_TABLES}
        self.xdk_accounts: dict[str, dict[str, Any]] = {}
        self.xdk_transactions: dict[str, dict[str, Any]] = {}
        self.xdk_treasuries: dict[str, dict[str, Any]] = {}
        self.xdk_exchange_rates: dict[str, dict[str, Any]] = {}
        self.escrows: dict[str, dict[str, Any]] = {}
        self.escrow_transactions: dict[str, dict[str, Any]] = {}
        self._load_integrations()
        self._bind_repositories()

    def _load_integrations(self) -> None:
        self.integrations = IntegrationConfig.from_env()
        self.gateway_config = GatewayConfig.from_env()
        self.registrar_config = RegistrarConfig.from_env()
        # tests swap these for httpx.MockTransport / fake OpenAI clients
        self.stripe_transport: httpx.BaseTransport | None = None
        self.gateway_client_factory: ClientFactory | None = None
        self.registrar_transport: httpx.BaseTransport | None = None

    def _row_store(self, table: str) -> Any:
        return InMemoryRowStore(self.tables[table], key_field=ROW_STORE_TABLES[table])

    def _bind_repositories(self) -> None:
        self.xdk_ledger_repository = InMemoryXdkLedgerRepository(
            accounts=self.xdk_accounts,
            transactions=self.xdk_transactions,
            treasuries=self.xdk_treasuries,
            exchange_rates=self.xdk_exchange_rates,
            lock=self._lock,
        )
        self.escrow_repository = InMemoryEscrowRepository(
            escrows=self.escrows,
            transactions=self.escrow_transactions,
            lock=self._lock,
        )
        self.audit_repository = InMemoryAuditLogsRepository(self.audit_logs)
        self._bind_row_repositories()

    def _bind_row_repositories(self) -> None:
        rows = self._row_store
        self.deal_rooms_repository = DealRoomsRepository(
            rooms=rows("deal_rooms"),
            participants=rows("deal_room_participants"),
            profiles=rows("profiles"),
        )
        self.value_ledger_repository = ValueLedgerRepository(entries=rows("value_ledger_entries"))
        self.billing_repository = BillingRepository(
            fund_requests=rows("fund_contribution_requests"),
            invoices=rows("platform_invoices"),
            funding_requests=rows("escrow_funding_requests"),
            withdrawals=rows("xdk_withdrawal_requests"),
        )
        self.settlements_repository = SettlementsRepository(
            contracts=rows("settlement_contracts"),
            confirmations=rows("settlement_pending_confirmations"),
            executions=rows("settlement_executions"),
        )
        self.webhook_events_repository = WebhookEventsRepository(
            events=rows("webhook_events"),
            crm_links=rows("crm_links"),
        )
        self.notifications_repository = NotificationsRepository(notifications=rows("notifications"))
        self.gateway_usage_repository = GatewayUsageRepository(
            usage=rows("gateway_usage"),
            model_daily=rows("gateway_model_usage_daily"),
            agent_limits=rows("agent_limits"),
        )
        self.domains_repository = DomainsRepository(domains=rows("domains"))

    def reset(self) -> None:
        with self._lock:
            self.idempotency_records.clear()
            self._idempotency_locks.clear()
            self.audit_logs.clear()
            for table in self.tables.values():
                table.clear()
            self.xdk_accounts.clear()
            self.xdk_transactions.clear()
            self.xdk_treasuries.clear()
            self.xdk_exchange_rates.clear()
            self.escrows.clear()
            self.escrow_transactions.clear()
            self._load_integrations()

    def stripe_client(self) -> StripeClient:
        return StripeClient.from_config(self.integrations, transport=self.stripe_transport)

    @staticmethod
    def _fingerprint(payload: dict[str, Any]) -> str:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)

    @staticmethod
    def _assert_tenant_scope(entity_tenant_id: str, tenant_id: str) -> None:
        if entity_tenant_id != tenant_id:
            raise ApiError(
                code="TENANT_SCOPE_VIOLATION",
                message="tenant mismatch",
                error_class="security_sensitive",
                retryable=False,
                http_status=403,
            )

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    @staticmethod
    def _compute_audit_hash(*, log: dict[str, Any], prev_hash: str) -> str:
        material = {key: value for key, value in log.items() if key not in {"audit_hash", "prev_hash"}}
        material["prev_hash"] = prev_hash
        blob = json.dumps(material, sort_keys=True, ensure_ascii=True, separators=(",", ":"), default=str)
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()

    def _append_audit_log(self, *, log: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            entry = dict(log)
            if not entry.get("audit_id"):
                entry["audit_id"] = f"audit_{uuid.uuid4().hex[:12]}"
            if not entry.get("occurred_at"):
                entry["occurred_at"] = self._utcnow_iso()
            prev_hash = self.audit_repository.last_hash()
            entry["prev_hash"] = prev_hash
            entry["audit_hash"] = self._compute_audit_hash(log=entry, prev_hash=prev_hash)
            return self.audit_repository.append(log=entry)

    def list_audit_logs(self, *, tenant_id: str | None = None, action: str | None = None) -> list[dict[str, Any]]:
        return self.audit_repository.list(tenant_id=tenant_id, action=action)

    def verify_audit_integrity(self) -> dict[str, Any]:
        """Walk the whole chain; the hash links rows across tenants, so it is never filtered."""
        rows = self.audit_repository.list()
        prev_hash = ""
        for idx, row in enumerate(rows):
            stored_prev = str(row.get("prev_hash") or "")
            if stored_prev != prev_hash:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "prev_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            expected = self._compute_audit_hash(log=row, prev_hash=stored_prev)
            actual = str(row.get("audit_hash") or "")
            if actual != expected:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "audit_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            prev_hash = actual
        return {
            "valid": True,
            "checked_count": len(rows),
            "last_hash": prev_hash,
        }

    def run_idempotent(
        self,
        *,
        endpoint: str,
        tenant_id: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: Callable[[], dict[str, Any]],
    ) -> dict[str, Any]:
        key = (f"{tenant_id}:{endpoint}", idempotency_key)
        current_fingerprint = self._fingerprint(payload)
        with self._lock:
            key_lock = self._idempotency_locks.setdefault(key, threading.Lock())
        # a second request with the same key waits here and then replays the stored result
        with key_lock:
            with self._lock:
                record = self.idempotency_records.get(key)
            if record is not None:
                if record.fingerprint != current_fingerprint:
                    raise ApiError(
                        code="IDEMPOTENCY_CONFLICT",
                        message="same key with different payload",
                        error_class="validation",
                        retryable=False,
                        http_status=409,
                    )
                return record.data

            data = execute()
            with self._lock:
                self.idempotency_records[key] = IdempotencyRecord(
                    fingerprint=current_fingerprint,
                    data=data,
                )
            return data


class PostgresBackedStore(InMemoryStore):
    """Store whose repositories run every statement in a tenant-scoped PostgreSQL transaction."""

    def __init__(self, *, dsn: str, apply_rls: bool = False) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self._dsn = dsn.strip()
        super().__init__()
        self._tables = initialize_schema(self._dsn)
        if apply_rls:
            applied = PostgresRlsManager(self._dsn).apply()
            logger.info("postgres_rls_applied tables=%s", len(applied))

    def reset(self) -> None:
        tables = ", ".join(self._tables)

        def _truncate(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(f"TRUNCATE TABLE {tables}")

        with self._lock:
            self._tx_runner.run_in_tx(tenant_id=None, fn=_truncate)
            super().reset()

    def _row_store(self, table: str) -> Any:
        return PostgresRowStore(tx_runner=self._tx_runner, table_name=table, key_field=ROW_STORE_TABLES[table])

    def _bind_repositories(self) -> None:
        self._tx_runner = PostgresTxRunner(self._dsn)
        self.xdk_ledger_repository = PostgresXdkLedgerRepository(tx_runner=self._tx_runner)
        self.escrow_repository = PostgresEscrowRepository(tx_runner=self._tx_runner)
        self.audit_repository = PostgresAuditLogsRepository(tx_runner=self._tx_runner)
        self._bind_row_repositories()


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    backend = store_backend_name(env)
    if true_stack_required(env) and backend != "postgres":
        raise RuntimeError("BIZOPS_STORE_BACKEND must be postgres when BIZOPS_REQUIRE_TRUESTACK=true")
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when BIZOPS_STORE_BACKEND=postgres")
        apply_rls = env.get("POSTGRES_APPLY_RLS", "false").strip().lower() in {"1", "true", "yes", "on"}
        return PostgresBackedStore(dsn=dsn, apply_rls=apply_rls)
    if backend != "memory":
        raise ValueError(f"unsupported BIZOPS_STORE_BACKEND: {backend}")
    return InMemoryStore()


store = create_store_from_env()
