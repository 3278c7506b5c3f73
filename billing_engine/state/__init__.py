"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from billing_engine.state.database import get_engine, get_session_factory, transaction
from billing_engine.state.repository import (
    CustomerRepository,
    DiscrepancyRepository,
    InvoiceRepository,
    JobLeaseRepository,
    LicenseKeyRepository,
    SubscriptionRepository,
    WebhookEventRepository,
)

__all__ = [
    "CustomerRepository",
    "DiscrepancyRepository",
    "InvoiceRepository",
    "JobLeaseRepository",
    "LicenseKeyRepository",
    "SubscriptionRepository",
    "WebhookEventRepository",
    "get_engine",
    "get_session_factory",
    "transaction",
]
