from bizops.repositories.audit_logs import InMemoryAuditLogsRepository, PostgresAuditLogsRepository
from bizops.repositories.billing import BillingRepository
from bizops.repositories.deal_rooms import DealRoomsRepository
from bizops.repositories.domains import DomainsRepository
from bizops.repositories.escrow import InMemoryEscrowRepository, PostgresEscrowRepository
from bizops.repositories.gateway_usage import GatewayUsageRepository
from bizops.repositories.notifications import NotificationsRepository
from bizops.repositories.rows import InMemoryRowStore, PostgresRowStore
from bizops.repositories.settlements import SettlementsRepository
from bizops.repositories.value_ledger import ValueLedgerRepository
from bizops.repositories.webhook_events import WebhookEventsRepository
from bizops.repositories.xdk_ledger import InMemoryXdkLedgerRepository, PostgresXdkLedgerRepository

__all__ = [
    "InMemoryAuditLogsRepository",
    "PostgresAuditLogsRepository",
    "BillingRepository",
    "DealRoomsRepository",
    "DomainsRepository",
    "InMemoryEscrowRepository",
    "PostgresEscrowRepository",
    "GatewayUsageRepository",
    "NotificationsRepository",
    "InMemoryRowStore",
    "PostgresRowStore",
    "SettlementsRepository",
    "ValueLedgerRepository",
    "WebhookEventsRepository",
    "InMemoryXdkLedgerRepository",
    "PostgresXdkLedgerRepository",
]
