"""Initial billing schema.

Creates the ledger (``customers``, ``subscriptions``, ``invoices``), the
``license_keys`` store, the ``webhook_events`` idempotency ledger, and the
reconciliation support tables (``reconciliation_discrepancies``,
``job_leases``).

Revision ID: 001
Revises:
Create Date: 2026-03-02 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    json_type = JSONB().with_variant(sa.JSON(), "sqlite")

    op.create_table(
        "customers",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("external_customer_id", sa.String(255), nullable=False),
        sa.Column("organization_id", sa.String(128), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "ix_customers_external_customer_id",
        "customers",
        ["external_customer_id"],
        unique=True,
    )
    op.create_index("ix_customers_organization", "customers", ["organization_id"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("customer_id", sa.String(32), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("organization_id", sa.String(128), nullable=False),
        sa.Column("external_subscription_id", sa.String(255), nullable=False),
        sa.Column("tier", sa.String(32), nullable=False, server_default="community"),
        sa.Column("status", sa.String(32), nullable=False),
        _timestamp("current_period_end", nullable=True),
        sa.Column(
            "cancel_at_period_end",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        _timestamp("canceled_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "tier IN ('community','individual','team','enterprise')",
            name="ck_subscriptions_tier",
        ),
        sa.CheckConstraint(
            "status IN ('trialing','active','past_due','canceled','incomplete','incomplete_expired','unpaid')",
            name="ck_subscriptions_status",
        ),
    )
    op.create_index(
        "ix_subscriptions_external_subscription_id",
        "subscriptions",
        ["external_subscription_id"],
        unique=True,
    )
    op.create_index("ix_subscriptions_organization", "subscriptions", ["organization_id"])
    op.create_index("ix_subscriptions_customer", "subscriptions", ["customer_id"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.String(32),
            sa.ForeignKey("subscriptions.id"),
            nullable=False,
        ),
        sa.Column("external_invoice_id", sa.String(255), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "status IN ('open','paid','failed','voided')",
            name="ck_invoices_status",
        ),
    )
    op.create_index(
        "ix_invoices_external_invoice_id",
        "invoices",
        ["external_invoice_id"],
        unique=True,
    )
    op.create_index("ix_invoices_subscription", "invoices", ["subscription_id"])

    op.create_table(
        "license_keys",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.String(32),
            sa.ForeignKey("subscriptions.id"),
            nullable=False,
        ),
        sa.Column("organization_id", sa.String(128), nullable=False),
        sa.Column("tier", sa.String(32), nullable=False),
        sa.Column("key_prefix", sa.String(16), nullable=False),
        sa.Column("key_hash", sa.String(64), nullable=False),
        sa.Column("encrypted_material", sa.Text(), nullable=False),
        _timestamp("expires_at"),
        _timestamp("revoked_at", nullable=True),
        sa.Column("revocation_reason", sa.String(128), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_license_keys_key_hash", "license_keys", ["key_hash"], unique=True)
    op.create_index(
        "ix_license_keys_subscription_active",
        "license_keys",
        ["subscription_id", "revoked_at"],
    )
    op.create_index("ix_license_keys_organization", "license_keys", ["organization_id"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("external_event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("payload_snapshot", json_type, nullable=False),
        sa.Column("processing_status", sa.String(16), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        _timestamp("processed_at"),
        sa.CheckConstraint(
            "processing_status IN ('succeeded','failed')",
            name="ck_webhook_events_processing_status",
        ),
    )
    op.create_index(
        "ix_webhook_events_external_event_id",
        "webhook_events",
        ["external_event_id"],
        unique=True,
    )
    op.create_index(
        "ix_webhook_events_status",
        "webhook_events",
        ["processing_status", "processed_at"],
    )

    op.create_table(
        "reconciliation_discrepancies",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("run_id", sa.String(32), nullable=False),
        sa.Column("external_subscription_id", sa.String(255), nullable=False),
        sa.Column("subscription_id", sa.String(32), nullable=True),
        sa.Column("discrepancy_type", sa.String(32), nullable=False),
        sa.Column("mode", sa.String(16), nullable=False),
        sa.Column("action", sa.String(16), nullable=False),
        sa.Column("local_status", sa.String(32), nullable=True),
        sa.Column("remote_status", sa.String(32), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolved_by", sa.String(256), nullable=True),
        _timestamp("resolved_at", nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        _timestamp("detected_at"),
    )
    op.create_index("ix_reconciliation_discrepancies_run", "reconciliation_discrepancies", ["run_id"])
    op.create_index(
        "ix_reconciliation_discrepancies_unresolved",
        "reconciliation_discrepancies",
        ["resolved"],
    )
    op.create_index(
        "ix_reconciliation_discrepancies_detected_at",
        "reconciliation_discrepancies",
        ["detected_at"],
    )

    op.create_table(
        "job_leases",
        sa.Column("job_name", sa.String(128), primary_key=True),
        sa.Column("holder", sa.String(256), nullable=False),
        _timestamp("acquired_at"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("job_leases")
    op.drop_index("ix_reconciliation_discrepancies_detected_at", table_name="reconciliation_discrepancies")
    op.drop_index("ix_reconciliation_discrepancies_unresolved", table_name="reconciliation_discrepancies")
    op.drop_index("ix_reconciliation_discrepancies_run", table_name="reconciliation_discrepancies")
    op.drop_table("reconciliation_discrepancies")
    op.drop_index("ix_webhook_events_status", table_name="webhook_events")
    op.drop_index("ix_webhook_events_external_event_id", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_index("ix_license_keys_organization", table_name="license_keys")
    op.drop_index("ix_license_keys_subscription_active", table_name="license_keys")
    op.drop_index("ix_license_keys_key_hash", table_name="license_keys")
    op.drop_table("license_keys")
    op.drop_index("ix_invoices_subscription", table_name="invoices")
    op.drop_index("ix_invoices_external_invoice_id", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_subscriptions_customer", table_name="subscriptions")
    op.drop_index("ix_subscriptions_organization", table_name="subscriptions")
    op.drop_index("ix_subscriptions_external_subscription_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_customers_organization", table_name="customers")
    op.drop_index("ix_customers_external_customer_id", table_name="customers")
    op.drop_table("customers")
