"""Billing engine services: event store, ledger, webhook processing,
reconciliation and subject data."""

from billing_engine.services.billing_service import BillingService
from billing_engine.services.event_store import EventStore
from billing_engine.services.reconciliation_scheduler import ReconciliationScheduler, compute_next_run
from billing_engine.services.reconciliation_service import ReconciliationService
from billing_engine.services.subject_data_service import SubjectDataService
from billing_engine.services.webhook_processor import WebhookEventProcessor

__all__ = [
    "BillingService",
    "EventStore",
    "ReconciliationScheduler",
    "ReconciliationService",
    "SubjectDataService",
    "WebhookEventProcessor",
    "compute_next_run",
]
