"""SQLAlchemy 2.0 ORM table definitions for the billing state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.

Ownership of writes is split by component: the event store alone writes
``webhook_events``; the ledger alone mutates ``customers``,
``subscriptions`` and ``invoices``; the license manager alone mutates
``license_keys``.  ``license_keys`` references ``subscriptions`` and never
the other way round.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC.

    SQLite stores datetimes without an offset and hands back naive values;
    this coerces them to UTC-aware on the way out and normalises aware
    values to UTC on the way in, so comparisons behave the same on both
    backends.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing tables."""


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class CustomerTable(Base):
    """Local mirror of a provider customer, linked to an organization."""

    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    external_customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_customers_external_customer_id", "external_customer_id", unique=True),
        Index("ix_customers_organization", "organization_id"),
    )


class SubscriptionTable(Base):
    """Canonical local state of a provider subscription.

    ``updated_at`` doubles as the optimistic-concurrency token used by the
    reconciliation job: every ledger write sets it explicitly.
    """

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    customer_id: Mapped[str] = mapped_column(String(32), ForeignKey("customers.id"), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    external_subscription_id: Mapped[str] = mapped_column(String(255), nullable=False)
    tier: Mapped[str] = mapped_column(String(32), nullable=False, default="community")
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    canceled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "tier IN ('community','individual','team','enterprise')",
            name="ck_subscriptions_tier",
        ),
        CheckConstraint(
            "status IN ('trialing','active','past_due','canceled','incomplete','incomplete_expired','unpaid')",
            name="ck_subscriptions_status",
        ),
        Index("ix_subscriptions_external_subscription_id", "external_subscription_id", unique=True),
        Index("ix_subscriptions_organization", "organization_id"),
        Index("ix_subscriptions_customer", "customer_id"),
    )


class InvoiceTable(Base):
    """Provider invoice mirror.  Append-mostly; updated only on status change."""

    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    subscription_id: Mapped[str] = mapped_column(String(32), ForeignKey("subscriptions.id"), nullable=False)
    external_invoice_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('open','paid','failed','voided')",
            name="ck_invoices_status",
        ),
        Index("ix_invoices_external_invoice_id", "external_invoice_id", unique=True),
        Index("ix_invoices_subscription", "subscription_id"),
    )


# ---------------------------------------------------------------------------
# License keys
# ---------------------------------------------------------------------------


class LicenseKeyTable(Base):
    """Issued license credentials.

    The raw credential is never stored in the clear: ``key_hash`` is its
    SHA-256 digest for lookup, ``encrypted_material`` its Fernet token.
    """

    __tablename__ = "license_keys"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    subscription_id: Mapped[str] = mapped_column(String(32), ForeignKey("subscriptions.id"), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    tier: Mapped[str] = mapped_column(String(32), nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(16), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    encrypted_material: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    revocation_reason: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_license_keys_key_hash", "key_hash", unique=True),
        Index("ix_license_keys_subscription_active", "subscription_id", "revoked_at"),
        Index("ix_license_keys_organization", "organization_id"),
    )


# ---------------------------------------------------------------------------
# Event store
# ---------------------------------------------------------------------------


class WebhookEventTable(Base):
    """Append-only record of every accepted provider event.

    The unique index on ``external_event_id`` is the idempotency anchor:
    a second insert of the same provider event id always fails.
    """

    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload_snapshot: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    processing_status: Mapped[str] = mapped_column(String(16), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "processing_status IN ('succeeded','failed')",
            name="ck_webhook_events_processing_status",
        ),
        Index("ix_webhook_events_external_event_id", "external_event_id", unique=True),
        Index("ix_webhook_events_status", "processing_status", "processed_at"),
    )


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class ReconciliationDiscrepancyTable(Base):
    """Operator-visible record of a drift detected between ledger and provider."""

    __tablename__ = "reconciliation_discrepancies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(32), nullable=False)
    external_subscription_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    discrepancy_type: Mapped[str] = mapped_column(String(32), nullable=False)
    mode: Mapped[str] = mapped_column(String(16), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    local_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    remote_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolved_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_reconciliation_discrepancies_run", "run_id"),
        Index("ix_reconciliation_discrepancies_unresolved", "resolved"),
        Index("ix_reconciliation_discrepancies_detected_at", "detected_at"),
    )


class JobLeaseTable(Base):
    """Fleet-wide mutual exclusion lease for a named background job."""

    __tablename__ = "job_leases"

    job_name: Mapped[str] = mapped_column(String(128), primary_key=True)
    holder: Mapped[str] = mapped_column(String(256), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
