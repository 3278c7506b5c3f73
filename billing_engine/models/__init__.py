"""Domain models for the billing engine."""

from billing_engine.models.billing import (
    ALLOWED_TRANSITIONS,
    GRANTING_STATUSES,
    REVOKING_STATUSES,
    InvoiceStatus,
    SubscriptionChange,
    SubscriptionSnapshot,
    SubscriptionStatus,
    is_expected_transition,
)
from billing_engine.models.events import (
    SUPPORTED_EVENT_TYPES,
    CheckoutCompletedEvent,
    InvoiceEvent,
    SubscriptionEvent,
    SubscriptionObject,
)
from billing_engine.models.outcomes import (
    DeletionCounts,
    DiscrepancyAction,
    DiscrepancyType,
    ExportDocument,
    IssuedCredential,
    LicenseValidation,
    OutcomeKind,
    ProcessingOutcome,
    ProcessingStatus,
    ReconciliationMode,
    ReconciliationSummary,
    RejectionReason,
    RunStatus,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "CheckoutCompletedEvent",
    "DeletionCounts",
    "DiscrepancyAction",
    "DiscrepancyType",
    "ExportDocument",
    "GRANTING_STATUSES",
    "InvoiceEvent",
    "InvoiceStatus",
    "IssuedCredential",
    "LicenseValidation",
    "OutcomeKind",
    "ProcessingOutcome",
    "ProcessingStatus",
    "REVOKING_STATUSES",
    "ReconciliationMode",
    "ReconciliationSummary",
    "RejectionReason",
    "RunStatus",
    "SUPPORTED_EVENT_TYPES",
    "SubscriptionChange",
    "SubscriptionEvent",
    "SubscriptionObject",
    "SubscriptionSnapshot",
    "SubscriptionStatus",
    "is_expected_transition",
]
