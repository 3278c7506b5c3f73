"""Repository classes providing access to the billing state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
committing (normally via :func:`billing_engine.state.database.transaction`).
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.state.tables import (
    CustomerTable,
    InvoiceTable,
    JobLeaseTable,
    LicenseKeyTable,
    ReconciliationDiscrepancyTable,
    SubscriptionTable,
    WebhookEventTable,
)

logger = logging.getLogger(__name__)


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique index used for conflict detection.

    Returns
    -------
    The execution result from ``session.execute()``.  ``rowcount`` is 0 when
    the conflicting row already existed.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# CustomerRepository
# ---------------------------------------------------------------------------


class CustomerRepository:
    """CRUD operations for the ``customers`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, customer_id: str) -> CustomerTable | None:
        return await self._session.get(CustomerTable, customer_id)

    async def get_by_external_id(self, external_customer_id: str) -> CustomerTable | None:
        stmt = select(CustomerTable).where(CustomerTable.external_customer_id == external_customer_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        external_customer_id: str,
        organization_id: str,
        email: str | None = None,
    ) -> CustomerTable:
        now = datetime.now(UTC)
        row = CustomerTable(
            external_customer_id=external_customer_id,
            organization_id=organization_id,
            email=email,
            created_at=now,
            updated_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def insert_if_absent(
        self,
        external_customer_id: str,
        organization_id: str,
        email: str | None = None,
    ) -> bool:
        """Insert the customer unless its external id is already taken.

        Returns ``False`` when another transaction inserted it first; the
        caller re-reads the winner's row.
        """
        now = datetime.now(UTC)
        result = await _dialect_upsert_nothing(
            self._session,
            CustomerTable,
            values={
                "id": uuid.uuid4().hex,
                "external_customer_id": external_customer_id,
                "organization_id": organization_id,
                "email": email,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["external_customer_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def update_email(self, row: CustomerTable, email: str) -> None:
        row.email = email
        row.updated_at = datetime.now(UTC)
        await self._session.flush()

    async def list_by_organization(self, organization_id: str) -> list[CustomerTable]:
        stmt = (
            select(CustomerTable)
            .where(CustomerTable.organization_id == organization_id)
            .order_by(CustomerTable.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_organization(self, organization_id: str) -> int:
        stmt = select(func.count()).where(CustomerTable.organization_id == organization_id)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def delete_by_organization(self, organization_id: str) -> int:
        stmt = delete(CustomerTable).where(CustomerTable.organization_id == organization_id)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """CRUD operations for the ``subscriptions`` table.

    Reads taken with ``for_update=True`` lock the row until the enclosing
    transaction ends (``SELECT ... FOR UPDATE`` on PostgreSQL; SQLite
    serialises writers at the database level and ignores the clause).
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, subscription_id: str, *, for_update: bool = False) -> SubscriptionTable | None:
        stmt = select(SubscriptionTable).where(SubscriptionTable.id == subscription_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_external_id(
        self,
        external_subscription_id: str,
        *,
        for_update: bool = False,
    ) -> SubscriptionTable | None:
        stmt = select(SubscriptionTable).where(
            SubscriptionTable.external_subscription_id == external_subscription_id
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, **values: Any) -> SubscriptionTable:
        now = datetime.now(UTC)
        values.setdefault("created_at", now)
        values.setdefault("updated_at", now)
        row = SubscriptionTable(**values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def insert_if_absent(self, **values: Any) -> str | None:
        """Insert a subscription unless its external id is already taken.

        Returns the new row's id, or ``None`` when a concurrent transaction
        inserted the same external subscription first.
        """
        now = datetime.now(UTC)
        values.setdefault("id", uuid.uuid4().hex)
        values.setdefault("created_at", now)
        values.setdefault("updated_at", now)
        result = await _dialect_upsert_nothing(
            self._session,
            SubscriptionTable,
            values=values,
            index_elements=["external_subscription_id"],
        )
        await self._session.flush()
        if not result.rowcount:  # type: ignore[attr-defined]
            return None
        return values["id"]

    async def apply(self, row: SubscriptionTable, **values: Any) -> SubscriptionTable:
        """Overwrite *values* on *row* and bump its concurrency token."""
        for column, value in values.items():
            setattr(row, column, value)
        row.updated_at = datetime.now(UTC)
        await self._session.flush()
        return row

    async def list_subscriptions(
        self,
        organization_id: str | None = None,
        statuses: Iterable[str] | None = None,
        *,
        exclude_statuses: Iterable[str] | None = None,
    ) -> list[SubscriptionTable]:
        stmt = select(SubscriptionTable)
        if organization_id is not None:
            stmt = stmt.where(SubscriptionTable.organization_id == organization_id)
        if statuses is not None:
            stmt = stmt.where(SubscriptionTable.status.in_(list(statuses)))
        if exclude_statuses is not None:
            stmt = stmt.where(SubscriptionTable.status.not_in(list(exclude_statuses)))
        stmt = stmt.order_by(SubscriptionTable.created_at, SubscriptionTable.id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_organization(self, organization_id: str) -> int:
        stmt = select(func.count()).where(SubscriptionTable.organization_id == organization_id)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def delete_by_organization(self, organization_id: str) -> int:
        stmt = delete(SubscriptionTable).where(SubscriptionTable.organization_id == organization_id)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# InvoiceRepository
# ---------------------------------------------------------------------------


class InvoiceRepository:
    """CRUD operations for the ``invoices`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_external_id(self, external_invoice_id: str) -> InvoiceTable | None:
        stmt = select(InvoiceTable).where(InvoiceTable.external_invoice_id == external_invoice_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        subscription_id: str,
        external_invoice_id: str,
        amount: int,
        status: str,
    ) -> InvoiceTable:
        now = datetime.now(UTC)
        row = InvoiceTable(
            subscription_id=subscription_id,
            external_invoice_id=external_invoice_id,
            amount=amount,
            status=status,
            created_at=now,
            updated_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def update_status(self, row: InvoiceTable, status: str, amount: int | None = None) -> None:
        row.status = status
        if amount is not None:
            row.amount = amount
        row.updated_at = datetime.now(UTC)
        await self._session.flush()

    def _organization_filter(self, organization_id: str) -> Any:
        return InvoiceTable.subscription_id.in_(
            select(SubscriptionTable.id).where(SubscriptionTable.organization_id == organization_id)
        )

    async def list_by_organization(self, organization_id: str) -> list[InvoiceTable]:
        stmt = (
            select(InvoiceTable)
            .where(self._organization_filter(organization_id))
            .order_by(InvoiceTable.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_organization(self, organization_id: str) -> int:
        stmt = select(func.count()).where(self._organization_filter(organization_id))
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def delete_by_organization(self, organization_id: str) -> int:
        stmt = delete(InvoiceTable).where(self._organization_filter(organization_id))
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# LicenseKeyRepository
# ---------------------------------------------------------------------------


class LicenseKeyRepository:
    """CRUD operations for the ``license_keys`` table.

    Only the SHA-256 hash of a credential is queryable; the credential
    itself is held Fernet-encrypted and is never returned by this class in
    the clear.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        key_id: str,
        subscription_id: str,
        organization_id: str,
        tier: str,
        key_prefix: str,
        key_hash: str,
        encrypted_material: str,
        expires_at: datetime,
    ) -> LicenseKeyTable:
        row = LicenseKeyTable(
            id=key_id,
            subscription_id=subscription_id,
            organization_id=organization_id,
            tier=tier,
            key_prefix=key_prefix,
            key_hash=key_hash,
            encrypted_material=encrypted_material,
            expires_at=expires_at,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_active(self, subscription_id: str) -> LicenseKeyTable | None:
        """Return the non-revoked key for a subscription, expired or not."""
        stmt = (
            select(LicenseKeyTable)
            .where(
                LicenseKeyTable.subscription_id == subscription_id,
                LicenseKeyTable.revoked_at.is_(None),
            )
            .order_by(LicenseKeyTable.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def get_by_hash(self, key_hash: str) -> LicenseKeyTable | None:
        stmt = select(LicenseKeyTable).where(LicenseKeyTable.key_hash == key_hash)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def revoke_active(self, subscription_id: str, reason: str) -> list[str]:
        """Revoke every non-revoked key of a subscription.

        Returns the ``key_hash`` of each key whose state changed; an empty
        list means nothing was live.
        """
        now = datetime.now(UTC)
        stmt = (
            select(LicenseKeyTable)
            .where(
                LicenseKeyTable.subscription_id == subscription_id,
                LicenseKeyTable.revoked_at.is_(None),
            )
            .with_for_update()
        )
        result = await self._session.execute(stmt)
        hashes: list[str] = []
        for row in result.scalars().all():
            row.revoked_at = now
            row.revocation_reason = reason
            hashes.append(row.key_hash)
        await self._session.flush()
        return hashes

    async def extend(self, row: LicenseKeyTable, expires_at: datetime) -> None:
        row.expires_at = expires_at
        await self._session.flush()

    async def list_by_subscription(self, subscription_id: str) -> list[LicenseKeyTable]:
        stmt = (
            select(LicenseKeyTable)
            .where(LicenseKeyTable.subscription_id == subscription_id)
            .order_by(LicenseKeyTable.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_organization(self, organization_id: str) -> list[LicenseKeyTable]:
        stmt = (
            select(LicenseKeyTable)
            .where(LicenseKeyTable.organization_id == organization_id)
            .order_by(LicenseKeyTable.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_organization(self, organization_id: str) -> int:
        stmt = select(func.count()).where(LicenseKeyTable.organization_id == organization_id)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def delete_by_organization(self, organization_id: str) -> list[str]:
        """Delete every key of an organization, returning their hashes."""
        hash_result = await self._session.execute(
            select(LicenseKeyTable.key_hash).where(LicenseKeyTable.organization_id == organization_id)
        )
        hashes = list(hash_result.scalars().all())
        await self._session.execute(
            delete(LicenseKeyTable).where(LicenseKeyTable.organization_id == organization_id)
        )
        await self._session.flush()
        return hashes


# ---------------------------------------------------------------------------
# WebhookEventRepository
# ---------------------------------------------------------------------------


class WebhookEventRepository:
    """Append-only access to the ``webhook_events`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert_once(
        self,
        external_event_id: str,
        event_type: str,
        payload_snapshot: dict[str, Any],
        processing_status: str,
        error_message: str | None = None,
    ) -> bool:
        """Insert an event record unless one already exists for the event id.

        Returns ``True`` if this call created the row.  A concurrent insert
        of the same id blocks on the unique index until the other
        transaction ends, then reports ``False`` if it committed.
        """
        result = await _dialect_upsert_nothing(
            self._session,
            WebhookEventTable,
            values={
                "id": uuid.uuid4().hex,
                "external_event_id": external_event_id,
                "event_type": event_type,
                "payload_snapshot": payload_snapshot,
                "processing_status": processing_status,
                "error_message": error_message,
                "processed_at": datetime.now(UTC),
            },
            index_elements=["external_event_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def get_by_external_id(self, external_event_id: str) -> WebhookEventTable | None:
        stmt = select(WebhookEventTable).where(WebhookEventTable.external_event_id == external_event_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_events(
        self,
        processing_status: str | None = None,
        limit: int = 100,
    ) -> list[WebhookEventTable]:
        stmt = select(WebhookEventTable)
        if processing_status is not None:
            stmt = stmt.where(WebhookEventTable.processing_status == processing_status)
        stmt = stmt.order_by(WebhookEventTable.processed_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count(self, processing_status: str | None = None) -> int:
        stmt = select(func.count()).select_from(WebhookEventTable)
        if processing_status is not None:
            stmt = stmt.where(WebhookEventTable.processing_status == processing_status)
        result = await self._session.execute(stmt)
        return result.scalar_one()


# ---------------------------------------------------------------------------
# DiscrepancyRepository
# ---------------------------------------------------------------------------


class DiscrepancyRepository:
    """CRUD operations for the ``reconciliation_discrepancies`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        *,
        run_id: str,
        external_subscription_id: str,
        discrepancy_type: str,
        mode: str,
        action: str,
        subscription_id: str | None = None,
        local_status: str | None = None,
        remote_status: str | None = None,
        detail: str | None = None,
    ) -> ReconciliationDiscrepancyTable:
        row = ReconciliationDiscrepancyTable(
            run_id=run_id,
            external_subscription_id=external_subscription_id,
            subscription_id=subscription_id,
            discrepancy_type=discrepancy_type,
            mode=mode,
            action=action,
            local_status=local_status,
            remote_status=remote_status,
            detail=detail,
            resolved=False,
            detected_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, discrepancy_id: int) -> ReconciliationDiscrepancyTable | None:
        return await self._session.get(ReconciliationDiscrepancyTable, discrepancy_id)

    async def list_discrepancies(
        self,
        *,
        unresolved_only: bool = True,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[ReconciliationDiscrepancyTable]:
        stmt = select(ReconciliationDiscrepancyTable)
        if unresolved_only:
            stmt = stmt.where(ReconciliationDiscrepancyTable.resolved.is_(False))
        if run_id is not None:
            stmt = stmt.where(ReconciliationDiscrepancyTable.run_id == run_id)
        stmt = stmt.order_by(
            ReconciliationDiscrepancyTable.detected_at.desc(),
            ReconciliationDiscrepancyTable.id.desc(),
        ).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def resolve(
        self,
        discrepancy_id: int,
        resolved_by: str,
        resolution_note: str,
    ) -> ReconciliationDiscrepancyTable | None:
        """Mark a discrepancy as resolved."""
        row = await self.get(discrepancy_id)
        if row is None:
            return None
        row.resolved = True
        row.resolved_by = resolved_by
        row.resolved_at = datetime.now(UTC)
        row.resolution_note = resolution_note
        await self._session.flush()
        return row

    async def get_stats(self) -> dict[str, Any]:
        """Return summary counts grouped by type and action."""
        total_result = await self._session.execute(
            select(func.count()).select_from(ReconciliationDiscrepancyTable)
        )
        total = total_result.scalar_one()

        unresolved_result = await self._session.execute(
            select(func.count()).where(ReconciliationDiscrepancyTable.resolved.is_(False))
        )
        unresolved = unresolved_result.scalar_one()

        by_type_result = await self._session.execute(
            select(ReconciliationDiscrepancyTable.discrepancy_type, func.count()).group_by(
                ReconciliationDiscrepancyTable.discrepancy_type
            )
        )
        by_action_result = await self._session.execute(
            select(ReconciliationDiscrepancyTable.action, func.count()).group_by(
                ReconciliationDiscrepancyTable.action
            )
        )
        last_result = await self._session.execute(select(func.max(ReconciliationDiscrepancyTable.detected_at)))
        last_detected = last_result.scalar_one_or_none()

        return {
            "total_discrepancies": total,
            "unresolved_discrepancies": unresolved,
            "resolved_discrepancies": total - unresolved,
            "by_type": {row[0]: row[1] for row in by_type_result.all()},
            "by_action": {row[0]: row[1] for row in by_action_result.all()},
            "last_detected_at": last_detected.isoformat() if isinstance(last_detected, datetime) else last_detected,
        }


# ---------------------------------------------------------------------------
# JobLeaseRepository
# ---------------------------------------------------------------------------


class JobLeaseRepository:
    """Named, expiring leases giving one worker fleet-wide exclusivity.

    ``acquire`` performs an atomic check-and-insert: if an unexpired lease
    exists the acquisition fails; expired leases are reaped transparently.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def acquire(self, job_name: str, holder: str, ttl_seconds: int) -> bool:
        """Attempt to take the lease on *job_name* for *ttl_seconds*.

        Returns ``True`` if the lease was acquired, ``False`` if another
        holder owns an unexpired lease.
        """
        now = datetime.now(UTC)

        # 1. Reap an expired lease on this job.
        await self._session.execute(
            delete(JobLeaseTable).where(
                JobLeaseTable.job_name == job_name,
                JobLeaseTable.expires_at < now,
            )
        )

        # 2. Insert atomically; a live lease makes this a no-op.
        result = await _dialect_upsert_nothing(
            self._session,
            JobLeaseTable,
            values={
                "job_name": job_name,
                "holder": holder,
                "acquired_at": now,
                "expires_at": now + timedelta(seconds=ttl_seconds),
            },
            index_elements=["job_name"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def renew(self, job_name: str, holder: str, ttl_seconds: int) -> bool:
        """Push the lease's expiry out by *ttl_seconds* if *holder* still owns it.

        Returns ``False`` once another worker has reaped and retaken the
        lease; the caller must stop working under it.
        """
        result = await self._session.execute(
            update(JobLeaseTable)
            .where(JobLeaseTable.job_name == job_name, JobLeaseTable.holder == holder)
            .values(expires_at=datetime.now(UTC) + timedelta(seconds=ttl_seconds))
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def release(self, job_name: str, holder: str) -> bool:
        """Release the lease if *holder* still owns it."""
        result = await self._session.execute(
            delete(JobLeaseTable).where(
                JobLeaseTable.job_name == job_name,
                JobLeaseTable.holder == holder,
            )
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def get(self, job_name: str) -> JobLeaseTable | None:
        return await self._session.get(JobLeaseTable, job_name)
