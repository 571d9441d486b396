from __future__ import annotations

from typing import Any

from bizops.db.postgres import _import_psycopg, validate_identifier

# table name -> field of the row dict used as ``row_key``
ROW_STORE_TABLES: dict[str, str] = {
    "deal_rooms": "deal_room_id",
    "deal_room_participants": "participant_id",
    "profiles": "user_id",
    "value_ledger_entries": "entry_id",
    "fund_contribution_requests": "fund_request_id",
    "platform_invoices": "invoice_id",
    "escrow_funding_requests": "funding_request_id",
    "xdk_withdrawal_requests": "withdrawal_id",
    "settlement_contracts": "contract_id",
    "settlement_pending_confirmations": "confirmation_id",
    "settlement_executions": "execution_id",
    "webhook_events": "event_key",
    "crm_links": "link_id",
    "notifications": "notification_id",
    "gateway_usage": "usage_id",
    "gateway_model_usage_daily": "daily_key",
    "agent_limits": "agent_id",
    "domains": "domain_key",
}

LEDGER_DDL: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS xdk_accounts (
      address TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      user_id TEXT,
      deal_room_id TEXT,
      account_type TEXT NOT NULL,
      balance NUMERIC(24, 6) NOT NULL DEFAULT 0 CHECK (balance >= 0),
      version INTEGER NOT NULL DEFAULT 0,
      metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS xdk_transactions (
      tx_hash TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      from_address TEXT NOT NULL,
      to_address TEXT NOT NULL,
      amount NUMERIC(24, 6) NOT NULL,
      tx_type TEXT NOT NULL,
      status TEXT NOT NULL,
      signature TEXT,
      data JSONB NOT NULL DEFAULT '{}'::jsonb,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS xdk_treasuries (
      deal_room_id TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      xdk_address TEXT NOT NULL REFERENCES xdk_accounts(address),
      is_active BOOLEAN NOT NULL DEFAULT TRUE,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS xdk_exchange_rates (
      rate_id TEXT PRIMARY KEY,
      base_currency TEXT NOT NULL,
      xdk_rate NUMERIC(18, 8) NOT NULL,
      effective_from TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deal_room_escrow (
      escrow_id TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      deal_room_id TEXT NOT NULL UNIQUE,
      currency TEXT NOT NULL DEFAULT 'USD',
      total_deposited NUMERIC(18, 2) NOT NULL DEFAULT 0,
      total_released NUMERIC(18, 2) NOT NULL DEFAULT 0,
      minimum_balance_threshold NUMERIC(18, 2) NOT NULL DEFAULT 0,
      workflows_paused BOOLEAN NOT NULL DEFAULT FALSE,
      paused_at TIMESTAMPTZ,
      paused_reason TEXT,
      version INTEGER NOT NULL DEFAULT 0,
      CHECK (total_released <= total_deposited)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS escrow_transactions (
      transaction_id TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      escrow_id TEXT NOT NULL REFERENCES deal_room_escrow(escrow_id),
      transaction_type TEXT NOT NULL,
      amount NUMERIC(18, 2) NOT NULL,
      stripe_payment_intent_id TEXT UNIQUE,
      data JSONB NOT NULL,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
      seq BIGSERIAL,
      audit_id TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      action TEXT,
      occurred_at TEXT,
      audit_hash TEXT,
      payload JSONB NOT NULL
    )
    """,
)


def row_store_ddl(table: str) -> str:
    name = validate_identifier(table)
    return f"""
    CREATE TABLE IF NOT EXISTS {name} (
      row_key TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      data JSONB NOT NULL,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """


def initialize_schema(dsn: str) -> list[str]:
    """Create every table the Postgres-backed store needs; returns the table names."""
    psycopg: Any = _import_psycopg()
    created: list[str] = []
    with psycopg.connect(dsn) as conn:
        with conn.cursor() as cur:
            for ddl in LEDGER_DDL:
                cur.execute(ddl)
            for table in ROW_STORE_TABLES:
                cur.execute(row_store_ddl(table))
                created.append(table)
        conn.commit()
    return [
        "xdk_accounts",
        "xdk_transactions",
        "xdk_treasuries",
        "xdk_exchange_rates",
        "deal_room_escrow",
        "escrow_transactions",
        "audit_logs",
        *created,
    ]
