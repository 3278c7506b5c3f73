"""Ledger domain models: subscription lifecycle, invoices, and transitions.

The provider is authoritative for subscription status.  The local state
machine below is used only to *classify* a transition (expected vs.
anomalous) for operator review; no reported status is ever rejected.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from billing_engine.license.feature_flags import LicenseTier


class SubscriptionStatus(str, Enum):
    """Provider subscription status, stored using the provider's spelling."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"

    @classmethod
    def from_provider(cls, value: str) -> SubscriptionStatus:
        """Map a provider status string onto the enum.

        Raises
        ------
        ValueError
            If the provider reports a status this ledger does not know.
        """
        normalised = value.strip().lower().replace("-", "_")
        # Some provider APIs spell it with a double "l".
        if normalised == "cancelled":
            normalised = "canceled"
        return cls(normalised)


# Statuses in which a license key may be live.
GRANTING_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}
)

# Terminal statuses that revoke any live key.
REVOKING_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {
        SubscriptionStatus.CANCELED,
        SubscriptionStatus.INCOMPLETE_EXPIRED,
        SubscriptionStatus.UNPAID,
    }
)

TERMINAL_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE_EXPIRED}
)

# Expected forward transitions.  Anything else reported by the provider is
# applied but flagged as an anomaly.
ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.INCOMPLETE: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.INCOMPLETE_EXPIRED}
    ),
    SubscriptionStatus.TRIALING: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED}),
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED, SubscriptionStatus.UNPAID}
    ),
    SubscriptionStatus.PAST_DUE: frozenset(
        {SubscriptionStatus.CANCELED, SubscriptionStatus.ACTIVE, SubscriptionStatus.UNPAID}
    ),
    SubscriptionStatus.UNPAID: frozenset({SubscriptionStatus.CANCELED}),
    SubscriptionStatus.CANCELED: frozenset(),
    SubscriptionStatus.INCOMPLETE_EXPIRED: frozenset(),
}


def is_expected_transition(previous: SubscriptionStatus | None, new: SubscriptionStatus) -> bool:
    """Return ``True`` if moving from *previous* to *new* follows the state machine.

    A first sighting (``previous is None``) and a no-op (same status) are
    always expected.
    """
    if previous is None or previous == new:
        return True
    return new in ALLOWED_TRANSITIONS.get(previous, frozenset())


class InvoiceStatus(str, Enum):
    """Local invoice lifecycle."""

    OPEN = "open"
    PAID = "paid"
    FAILED = "failed"
    VOIDED = "voided"


class SubscriptionSnapshot(BaseModel):
    """Provider-neutral view of a remote subscription used by ledger upserts.

    Both webhook handlers and the reconciliation job reduce their input to
    this shape so that a single upsert path applies every correction.
    """

    external_subscription_id: str = Field(..., min_length=1)
    external_customer_id: str = Field(..., min_length=1)
    status: SubscriptionStatus
    tier: LicenseTier = LicenseTier.COMMUNITY
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    organization_id: str | None = None
    customer_email: str | None = None


class SubscriptionChange(BaseModel):
    """Result of a ledger mutation on a single subscription.

    The license manager consumes these to decide whether to issue, rotate,
    extend, or revoke a key.  ``previous_*`` fields are ``None`` when the
    row was created by this mutation.
    """

    subscription_id: str
    external_subscription_id: str
    organization_id: str
    created: bool = False
    previous_status: SubscriptionStatus | None = None
    status: SubscriptionStatus
    previous_tier: LicenseTier | None = None
    tier: LicenseTier
    previous_period_end: datetime | None = None
    current_period_end: datetime | None = None
    anomalous: bool = False

    @property
    def tier_upgraded(self) -> bool:
        return self.previous_tier is not None and self.tier.ordinal > self.previous_tier.ordinal

    @property
    def period_moved(self) -> bool:
        return self.previous_period_end != self.current_period_end
