"""Subscription ledger: canonical local state for customers, subscriptions
and invoices.

The provider is authoritative for status.  Every reported status is
applied; transitions outside the expected state machine are flagged as
anomalies and logged for operator review, never rejected.  Tier is
monotonically non-decreasing: upserts ignore a lower incoming tier and
:meth:`BillingService.change_tier` refuses anything but an upgrade.

The ledger never touches license keys.  Callers hand the returned
:class:`SubscriptionChange` to the license manager inside the same
transaction.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config import BillingSettings
from billing_engine.errors import (
    DowngradeNotAllowedError,
    HandlerFailureError,
    StaleRecordError,
    SubscriptionNotFoundError,
)
from billing_engine.license.feature_flags import LicenseTier
from billing_engine.models.billing import (
    InvoiceStatus,
    SubscriptionChange,
    SubscriptionSnapshot,
    SubscriptionStatus,
    is_expected_transition,
)
from billing_engine.models.events import InvoiceObject
from billing_engine.state.repository import (
    CustomerRepository,
    InvoiceRepository,
    SubscriptionRepository,
)
from billing_engine.state.tables import CustomerTable, InvoiceTable, SubscriptionTable

logger = logging.getLogger(__name__)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Sentinel for "no optimistic guard".  ``None`` means "expect no row".
UNSET: Any = _Unset()


class BillingService:
    """Ledger operations within one unit of work.

    Parameters
    ----------
    session:
        Active database session.  All writes flush into the caller's
        transaction; nothing here commits.
    settings:
        Billing settings (price-to-tier mapping).
    """

    def __init__(self, session: AsyncSession, settings: BillingSettings) -> None:
        self._session = session
        self._settings = settings
        self._customers = CustomerRepository(session)
        self._subscriptions = SubscriptionRepository(session)
        self._invoices = InvoiceRepository(session)

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    async def ensure_customer(
        self,
        external_customer_id: str,
        organization_id: str | None,
        email: str | None = None,
    ) -> CustomerTable:
        """Return the local customer, creating it on first reference.

        Raises
        ------
        HandlerFailureError
            If the customer is unknown and no organization was supplied.
        """
        row = await self._customers.get_by_external_id(external_customer_id)
        if row is None:
            if not organization_id:
                raise HandlerFailureError(
                    f"Cannot resolve organization for unknown customer {external_customer_id}"
                )
            if await self._customers.insert_if_absent(external_customer_id, organization_id, email):
                logger.info("Linked customer %s to organization %s", external_customer_id, organization_id)
            else:
                logger.info("Customer %s was created by a concurrent delivery", external_customer_id)
            row = await self._customers.get_by_external_id(external_customer_id)
            if row is None:
                raise HandlerFailureError(f"Customer {external_customer_id} vanished while being created")

        if organization_id and organization_id != row.organization_id:
            logger.warning(
                "Customer %s is linked to organization %s; ignoring conflicting organization %s",
                external_customer_id,
                row.organization_id,
                organization_id,
            )
        if email and email != row.email:
            await self._customers.update_email(row, email)
        return row

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def upsert_subscription(
        self,
        snapshot: SubscriptionSnapshot,
        *,
        expected_updated_at: datetime | None = UNSET,
    ) -> SubscriptionChange:
        """Mirror the provider's view of a subscription into the ledger.

        Parameters
        ----------
        snapshot:
            Provider-reported state.
        expected_updated_at:
            Optimistic guard.  ``UNSET`` skips the check; ``None`` requires
            the subscription to still be absent; a datetime requires the
            row's ``updated_at`` to be unchanged.

        Raises
        ------
        StaleRecordError
            If the guard detects a write since the caller's read.
        HandlerFailureError
            If a new subscription's organization cannot be resolved.
        """
        reference = snapshot.external_subscription_id
        row = await self._subscriptions.get_by_external_id(reference, for_update=True)
        self._check_guard(row, expected_updated_at, reference)

        if row is None:
            change = await self._insert_subscription(snapshot)
            if change is not None:
                return change
            # Lost the insert race; the winner's row is now visible and locked.
            if expected_updated_at is None:
                raise StaleRecordError(f"Subscription {reference} was created since it was read")
            row = await self._subscriptions.get_by_external_id(reference, for_update=True)
            if row is None:
                raise StaleRecordError(f"Subscription {reference} was removed while being created")
            logger.info("Subscription %s was created by a concurrent delivery; applying as an update", reference)

        return await self._update_subscription(row, snapshot)

    async def _update_subscription(
        self,
        row: SubscriptionTable,
        snapshot: SubscriptionSnapshot,
    ) -> SubscriptionChange:
        previous_status = SubscriptionStatus(row.status)
        previous_tier = LicenseTier.parse(row.tier)
        previous_period_end = row.current_period_end

        tier = previous_tier
        if snapshot.tier.ordinal > previous_tier.ordinal:
            tier = snapshot.tier
        elif snapshot.tier.ordinal < previous_tier.ordinal:
            logger.info(
                "Ignoring lower tier %s for subscription %s (current %s)",
                snapshot.tier.value,
                row.id,
                previous_tier.value,
            )

        anomalous = not is_expected_transition(previous_status, snapshot.status)
        if anomalous:
            logger.warning(
                "Anomalous status transition for subscription %s (%s): %s -> %s",
                row.id,
                row.external_subscription_id,
                previous_status.value,
                snapshot.status.value,
            )

        updates: dict[str, Any] = {}
        if row.status != snapshot.status.value:
            updates["status"] = snapshot.status.value
        if row.tier != tier.value:
            updates["tier"] = tier.value
        if row.current_period_end != snapshot.current_period_end:
            updates["current_period_end"] = snapshot.current_period_end
        if row.cancel_at_period_end != snapshot.cancel_at_period_end:
            updates["cancel_at_period_end"] = snapshot.cancel_at_period_end
        if row.canceled_at != snapshot.canceled_at:
            updates["canceled_at"] = snapshot.canceled_at
        if updates:
            await self._subscriptions.apply(row, **updates)

        return SubscriptionChange(
            subscription_id=row.id,
            external_subscription_id=row.external_subscription_id,
            organization_id=row.organization_id,
            created=False,
            previous_status=previous_status,
            status=snapshot.status,
            previous_tier=previous_tier,
            tier=tier,
            previous_period_end=previous_period_end,
            current_period_end=row.current_period_end,
            anomalous=anomalous,
        )

    async def _insert_subscription(self, snapshot: SubscriptionSnapshot) -> SubscriptionChange | None:
        """Insert a new subscription; ``None`` if a concurrent insert won."""
        customer = await self.ensure_customer(
            snapshot.external_customer_id,
            snapshot.organization_id,
            snapshot.customer_email,
        )
        # Subscriptions never cross organizations with their customer.
        organization_id = customer.organization_id
        if snapshot.organization_id and snapshot.organization_id != organization_id:
            logger.warning(
                "Subscription %s names organization %s but customer %s belongs to %s; keeping the customer's",
                snapshot.external_subscription_id,
                snapshot.organization_id,
                customer.external_customer_id,
                organization_id,
            )
        subscription_id = await self._subscriptions.insert_if_absent(
            customer_id=customer.id,
            organization_id=organization_id,
            external_subscription_id=snapshot.external_subscription_id,
            tier=snapshot.tier.value,
            status=snapshot.status.value,
            current_period_end=snapshot.current_period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end,
            canceled_at=snapshot.canceled_at,
        )
        if subscription_id is None:
            return None
        logger.info(
            "Created subscription %s (%s) org=%s status=%s tier=%s",
            subscription_id,
            snapshot.external_subscription_id,
            organization_id,
            snapshot.status.value,
            snapshot.tier.value,
        )
        return SubscriptionChange(
            subscription_id=subscription_id,
            external_subscription_id=snapshot.external_subscription_id,
            organization_id=organization_id,
            created=True,
            status=snapshot.status,
            tier=snapshot.tier,
            current_period_end=snapshot.current_period_end,
        )

    @staticmethod
    def _check_guard(
        row: SubscriptionTable | None,
        expected_updated_at: datetime | None,
        reference: str,
    ) -> None:
        if expected_updated_at is UNSET:
            return
        if expected_updated_at is None:
            if row is not None:
                raise StaleRecordError(f"Subscription {reference} was created since it was read")
            return
        if row is None:
            raise StaleRecordError(f"Subscription {reference} was removed since it was read")
        if row.updated_at != expected_updated_at:
            raise StaleRecordError(
                f"Subscription {reference} changed since it was read "
                f"(expected {expected_updated_at.isoformat()}, found {row.updated_at.isoformat()})"
            )

    async def change_tier(self, subscription_id: str, new_tier: LicenseTier) -> SubscriptionChange:
        """Upgrade a subscription's tier.

        Raises
        ------
        SubscriptionNotFoundError
            If no such subscription exists.
        DowngradeNotAllowedError
            If *new_tier* is not strictly above the current tier.
        """
        row = await self._subscriptions.get(subscription_id, for_update=True)
        if row is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")

        current = LicenseTier.parse(row.tier)
        if new_tier.ordinal <= current.ordinal:
            raise DowngradeNotAllowedError(
                f"Cannot change subscription {subscription_id} from {current.value} to {new_tier.value}; "
                "only upgrades are supported"
            )

        await self._subscriptions.apply(row, tier=new_tier.value)
        status = SubscriptionStatus(row.status)
        logger.info("Upgraded subscription %s tier %s -> %s", subscription_id, current.value, new_tier.value)
        return SubscriptionChange(
            subscription_id=row.id,
            external_subscription_id=row.external_subscription_id,
            organization_id=row.organization_id,
            previous_status=status,
            status=status,
            previous_tier=current,
            tier=new_tier,
            previous_period_end=row.current_period_end,
            current_period_end=row.current_period_end,
        )

    async def cancel_subscription(
        self,
        subscription_id: str,
        *,
        expected_updated_at: datetime | None = UNSET,
        reason: str = "canceled",
    ) -> SubscriptionChange:
        """Mark a subscription canceled locally.

        Raises
        ------
        SubscriptionNotFoundError
            If no such subscription exists.
        StaleRecordError
            If the optimistic guard fails.
        """
        row = await self._subscriptions.get(subscription_id, for_update=True)
        if row is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        self._check_guard(row, expected_updated_at, row.external_subscription_id)

        previous_status = SubscriptionStatus(row.status)
        tier = LicenseTier.parse(row.tier)
        if previous_status != SubscriptionStatus.CANCELED:
            await self._subscriptions.apply(
                row,
                status=SubscriptionStatus.CANCELED.value,
                canceled_at=datetime.now(UTC),
            )
            logger.info(
                "Canceled subscription %s (%s) locally: %s",
                row.id,
                row.external_subscription_id,
                reason,
            )
        return SubscriptionChange(
            subscription_id=row.id,
            external_subscription_id=row.external_subscription_id,
            organization_id=row.organization_id,
            previous_status=previous_status,
            status=SubscriptionStatus.CANCELED,
            previous_tier=tier,
            tier=tier,
            previous_period_end=row.current_period_end,
            current_period_end=row.current_period_end,
            anomalous=not is_expected_transition(previous_status, SubscriptionStatus.CANCELED),
        )

    async def get_subscription(self, subscription_id: str) -> SubscriptionTable | None:
        return await self._subscriptions.get(subscription_id)

    async def get_by_external_id(self, external_subscription_id: str) -> SubscriptionTable | None:
        return await self._subscriptions.get_by_external_id(external_subscription_id)

    async def list_subscriptions(
        self,
        organization_id: str | None = None,
        statuses: list[SubscriptionStatus] | None = None,
    ) -> list[SubscriptionTable]:
        return await self._subscriptions.list_subscriptions(
            organization_id,
            [status.value for status in statuses] if statuses is not None else None,
        )

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    async def record_invoice(self, invoice: InvoiceObject, status: InvoiceStatus) -> InvoiceTable:
        """Insert or update an invoice by its provider id.

        An existing row is written only when its status changes.

        Raises
        ------
        SubscriptionNotFoundError
            If the invoice's subscription is not in the ledger.
        """
        if not invoice.subscription:
            raise SubscriptionNotFoundError(f"Invoice {invoice.id} carries no subscription")
        subscription = await self._subscriptions.get_by_external_id(invoice.subscription)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Invoice {invoice.id} references unknown subscription {invoice.subscription}"
            )

        amount = invoice.amount_for(paid=status == InvoiceStatus.PAID)
        row = await self._invoices.get_by_external_id(invoice.id)
        if row is None:
            row = await self._invoices.create(subscription.id, invoice.id, amount, status.value)
            logger.info("Recorded invoice %s (%s) amount=%d", invoice.id, status.value, amount)
            return row

        if row.status != status.value:
            previous = row.status
            await self._invoices.update_status(row, status.value, amount)
            logger.info("Invoice %s status %s -> %s", invoice.id, previous, status.value)
        return row
