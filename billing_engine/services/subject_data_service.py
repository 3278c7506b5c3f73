"""Data-subject export and deletion for one organization.

Exports are versioned and never carry credential material: license keys
appear as metadata only (prefix, tier, lifecycle timestamps).  Deletion
removes license keys, invoices, subscriptions and customers, children
first, in a single transaction.  A dry run performs the same counts and
deletes nothing.

Webhook event records are retained; they are the idempotency ledger and
deleting them would let a redelivered event recreate the data.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.license.validation_cache import ValidationCache
from billing_engine.models.outcomes import DeletionCounts, ExportDocument
from billing_engine.state.database import transaction
from billing_engine.state.repository import (
    CustomerRepository,
    InvoiceRepository,
    LicenseKeyRepository,
    SubscriptionRepository,
)
from billing_engine.state.tables import (
    CustomerTable,
    InvoiceTable,
    LicenseKeyTable,
    SubscriptionTable,
)

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _customer(row: CustomerTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "external_customer_id": row.external_customer_id,
        "organization_id": row.organization_id,
        "email": row.email,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def _subscription(row: SubscriptionTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "customer_id": row.customer_id,
        "external_subscription_id": row.external_subscription_id,
        "tier": row.tier,
        "status": row.status,
        "current_period_end": _iso(row.current_period_end),
        "cancel_at_period_end": row.cancel_at_period_end,
        "canceled_at": _iso(row.canceled_at),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def _invoice(row: InvoiceTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "subscription_id": row.subscription_id,
        "external_invoice_id": row.external_invoice_id,
        "amount": row.amount,
        "status": row.status,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def _license_key(row: LicenseKeyTable) -> dict[str, Any]:
    # No key_hash or encrypted_material.
    return {
        "id": row.id,
        "subscription_id": row.subscription_id,
        "tier": row.tier,
        "key_prefix": row.key_prefix,
        "expires_at": _iso(row.expires_at),
        "revoked_at": _iso(row.revoked_at),
        "revocation_reason": row.revocation_reason,
        "created_at": _iso(row.created_at),
    }


class SubjectDataService:
    """Export and erase everything held for an organization.

    Parameters
    ----------
    session_factory:
        Factory for the export and deletion units of work.
    cache:
        Validation cache to purge of deleted keys, if one is in use.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: ValidationCache | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache

    async def export_subject_data(self, organization_id: str) -> ExportDocument:
        """Return a versioned export of the organization's billing data."""
        async with transaction(self._session_factory) as session:
            customers = await CustomerRepository(session).list_by_organization(organization_id)
            subscriptions = await SubscriptionRepository(session).list_subscriptions(organization_id)
            invoices = await InvoiceRepository(session).list_by_organization(organization_id)
            keys = await LicenseKeyRepository(session).list_by_organization(organization_id)

            document = ExportDocument(
                organization_id=organization_id,
                generated_at=datetime.now(UTC),
                customers=[_customer(row) for row in customers],
                subscriptions=[_subscription(row) for row in subscriptions],
                invoices=[_invoice(row) for row in invoices],
                license_keys=[_license_key(row) for row in keys],
            )

        logger.info(
            "Exported subject data for %s: %d customer(s), %d subscription(s), %d invoice(s), %d key(s)",
            organization_id,
            len(document.customers),
            len(document.subscriptions),
            len(document.invoices),
            len(document.license_keys),
        )
        return document

    async def delete_subject_data(self, organization_id: str, dry_run: bool = True) -> DeletionCounts:
        """Delete, or with *dry_run* just count, the organization's rows.

        Both modes report the same counts for the same state.  On any
        failure the transaction rolls back and nothing is deleted.
        """
        async with transaction(self._session_factory) as session:
            customers = CustomerRepository(session)
            subscriptions = SubscriptionRepository(session)
            invoices = InvoiceRepository(session)
            keys = LicenseKeyRepository(session)

            counts = DeletionCounts(
                organization_id=organization_id,
                dry_run=dry_run,
                license_keys=await keys.count_by_organization(organization_id),
                invoices=await invoices.count_by_organization(organization_id),
                subscriptions=await subscriptions.count_by_organization(organization_id),
                customers=await customers.count_by_organization(organization_id),
            )
            if dry_run:
                logger.info("Dry-run deletion for %s: %s", organization_id, counts.counts())
                return counts

            deleted_hashes = await keys.delete_by_organization(organization_id)
            await invoices.delete_by_organization(organization_id)
            await subscriptions.delete_by_organization(organization_id)
            await customers.delete_by_organization(organization_id)

        if self._cache is not None:
            self._cache.invalidate(deleted_hashes)
        logger.warning("Deleted subject data for %s: %s", organization_id, counts.counts())
        return counts
