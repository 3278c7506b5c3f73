"""Result types returned by the processor, license manager, reconciliation
job, and subject-data service.

Outcomes that are not failures (an already-processed delivery, a skipped
reconciliation run) are modelled here as explicit values rather than
exceptions.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from billing_engine.license.feature_flags import Feature, LicenseTier
from billing_engine.models.billing import SubscriptionChange

# ---------------------------------------------------------------------------
# Webhook processing
# ---------------------------------------------------------------------------


class OutcomeKind(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    FAILED = "failed"


class RejectionReason(str, Enum):
    SIGNATURE_INVALID = "signature_invalid"
    MALFORMED_PAYLOAD = "malformed_payload"
    UNSUPPORTED_EVENT_TYPE = "unsupported_event_type"


class ProcessingStatus(str, Enum):
    """Persisted status of a webhook event record."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class IssuedCredential(BaseModel):
    """A freshly issued license credential.

    ``credential`` is the only copy of the raw secret that ever leaves the
    license manager.  It is excluded from ``repr`` so it does not end up in
    log lines by accident.
    """

    key_id: str
    subscription_id: str
    organization_id: str
    tier: LicenseTier
    key_prefix: str
    expires_at: datetime
    credential: str = Field(..., repr=False)


class ProcessingOutcome(BaseModel):
    """Result of processing a single webhook delivery."""

    kind: OutcomeKind
    event_id: str | None = None
    event_type: str | None = None
    reason: RejectionReason | None = None
    error: str | None = None
    retryable: bool = False
    transitions: list[SubscriptionChange] = Field(default_factory=list)
    issued_credentials: list[IssuedCredential] = Field(default_factory=list)

    @classmethod
    def applied(
        cls,
        event_id: str,
        event_type: str,
        transitions: list[SubscriptionChange],
        issued: list[IssuedCredential],
    ) -> ProcessingOutcome:
        return cls(
            kind=OutcomeKind.APPLIED,
            event_id=event_id,
            event_type=event_type,
            transitions=transitions,
            issued_credentials=issued,
        )

    @classmethod
    def duplicate(cls, event_id: str, event_type: str | None = None) -> ProcessingOutcome:
        return cls(kind=OutcomeKind.DUPLICATE, event_id=event_id, event_type=event_type)

    @classmethod
    def rejected(
        cls,
        reason: RejectionReason,
        error: str | None = None,
        *,
        event_id: str | None = None,
        event_type: str | None = None,
    ) -> ProcessingOutcome:
        return cls(
            kind=OutcomeKind.REJECTED,
            reason=reason,
            error=error,
            event_id=event_id,
            event_type=event_type,
        )

    @classmethod
    def failed(
        cls,
        error: str,
        *,
        event_id: str | None = None,
        event_type: str | None = None,
        retryable: bool = False,
    ) -> ProcessingOutcome:
        return cls(
            kind=OutcomeKind.FAILED,
            error=error,
            event_id=event_id,
            event_type=event_type,
            retryable=retryable,
        )

    def summary(self) -> dict[str, Any]:
        """Transport-safe view: no raw credentials, no transition details."""
        body: dict[str, Any] = {"outcome": self.kind.value}
        if self.event_id:
            body["event_id"] = self.event_id
        if self.reason is not None:
            body["reason"] = self.reason.value
        if self.error:
            body["error"] = self.error
        if self.kind == OutcomeKind.APPLIED:
            body["transitions"] = len(self.transitions)
            body["keys_issued"] = len(self.issued_credentials)
        return body


# ---------------------------------------------------------------------------
# License validation
# ---------------------------------------------------------------------------


class InvalidReason(str, Enum):
    MALFORMED = "malformed"
    UNKNOWN = "unknown"
    REVOKED = "revoked"
    EXPIRED = "expired"
    BAD_SIGNATURE = "bad_signature"


class LicenseValidation(BaseModel):
    valid: bool
    tier: LicenseTier | None = None
    subscription_id: str | None = None
    organization_id: str | None = None
    expires_at: datetime | None = None
    reason: InvalidReason | None = None
    features: list[Feature] = Field(default_factory=list)

    @classmethod
    def invalid(cls, reason: InvalidReason) -> LicenseValidation:
        return cls(valid=False, reason=reason)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class ReconciliationMode(str, Enum):
    REPORT = "report"
    AUTO_FIX = "auto_fix"


class DiscrepancyType(str, Enum):
    MISSING_LOCALLY = "missing_locally"
    STATUS_MISMATCH = "status_mismatch"
    TIER_MISMATCH = "tier_mismatch"
    ORPHANED_LOCALLY = "orphaned_locally"


class DiscrepancyAction(str, Enum):
    REPORTED = "reported"
    CORRECTED = "corrected"
    SKIPPED_STALE = "skipped_stale"
    UNRESOLVABLE = "unresolvable"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    SKIPPED_LOCKED = "skipped_locked"


class ReconciliationSummary(BaseModel):
    run_id: str
    mode: ReconciliationMode
    status: RunStatus
    started_at: datetime
    finished_at: datetime | None = None
    remote_seen: int = 0
    in_sync: int = 0
    discrepancies: dict[str, int] = Field(default_factory=dict)
    corrected: int = 0
    keys_issued: int = 0
    skipped_stale: int = 0
    unresolvable: int = 0
    orphan_scan_skipped: bool = False
    error: str | None = None

    @property
    def total_discrepancies(self) -> int:
        return sum(self.discrepancies.values())


# ---------------------------------------------------------------------------
# Subject data
# ---------------------------------------------------------------------------

EXPORT_SCHEMA_VERSION = 1


class ExportDocument(BaseModel):
    """Versioned, credential-free export of everything held for an organization."""

    schema_version: int = EXPORT_SCHEMA_VERSION
    organization_id: str
    generated_at: datetime
    customers: list[dict[str, Any]] = Field(default_factory=list)
    subscriptions: list[dict[str, Any]] = Field(default_factory=list)
    invoices: list[dict[str, Any]] = Field(default_factory=list)
    license_keys: list[dict[str, Any]] = Field(default_factory=list)


class DeletionCounts(BaseModel):
    organization_id: str
    dry_run: bool
    license_keys: int = 0
    invoices: int = 0
    subscriptions: int = 0
    customers: int = 0

    @property
    def total(self) -> int:
        return self.license_keys + self.invoices + self.subscriptions + self.customers

    def counts(self) -> dict[str, int]:
        return {
            "license_keys": self.license_keys,
            "invoices": self.invoices,
            "subscriptions": self.subscriptions,
            "customers": self.customers,
        }
