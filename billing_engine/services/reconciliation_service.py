"""Reconcile the local subscription ledger against the payment provider.

The provider's subscription listing is authoritative.  A run pages through
it, compares each remote subscription with the local row, and records every
difference in ``reconciliation_discrepancies`` for operator review.  In
``auto_fix`` mode each difference is also corrected in its own short
transaction, through the same ledger upsert and license policy the webhook
path uses, guarded by the row's ``updated_at`` so a concurrent webhook write
always wins.

Only one run may be active across the fleet; a named lease in
``job_leases`` provides the exclusion.  The run renews the lease as it
goes and stops as soon as a renewal finds it held by someone else.
"""

from __future__ import annotations

import logging
import os
import socket
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any, Protocol

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import BillingSettings
from billing_engine.errors import (
    BillingError,
    LeaseUnavailableError,
    ProviderAPIError,
    StaleRecordError,
    StorageError,
)
from billing_engine.license.feature_flags import LicenseTier
from billing_engine.license.license_manager import LicenseKeyring, LicenseManager
from billing_engine.models.billing import TERMINAL_STATUSES, SubscriptionSnapshot, SubscriptionStatus
from billing_engine.models.events import SubscriptionObject
from billing_engine.models.outcomes import (
    DiscrepancyAction,
    DiscrepancyType,
    ReconciliationMode,
    ReconciliationSummary,
    RunStatus,
)
from billing_engine.services.billing_service import BillingService
from billing_engine.state.database import transaction
from billing_engine.state.repository import (
    DiscrepancyRepository,
    JobLeaseRepository,
    SubscriptionRepository,
)
from billing_engine.state.tables import ReconciliationDiscrepancyTable

logger = logging.getLogger(__name__)

JOB_NAME = "subscription_reconciliation"


class SubscriptionLister(Protocol):
    """The slice of :class:`ProviderClient` reconciliation depends on."""

    def list_subscriptions(
        self,
        status: str = "all",
        page_size: int | None = None,
    ) -> AsyncIterator[list[dict[str, Any]]]: ...


def default_holder() -> str:
    """Identify this worker in lease records."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class _LocalView:
    """What a short read transaction saw for one subscription."""

    __slots__ = ("subscription_id", "status", "tier", "updated_at")

    def __init__(
        self,
        subscription_id: str,
        status: SubscriptionStatus,
        tier: LicenseTier,
        updated_at: datetime,
    ) -> None:
        self.subscription_id = subscription_id
        self.status = status
        self.tier = tier
        self.updated_at = updated_at


class ReconciliationService:
    """Compare the ledger with the provider listing and correct drift.

    Parameters
    ----------
    session_factory:
        Factory for the short per-discrepancy units of work.
    settings:
        Page size, lease TTL and price-to-tier map.
    provider:
        Source of the authoritative subscription listing.
    keyring:
        Shared license signer, vault and validation cache.
    holder:
        Lease holder identity; defaults to host, pid and a random suffix.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: BillingSettings,
        provider: SubscriptionLister,
        keyring: LicenseKeyring,
        *,
        holder: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._provider = provider
        self._keyring = keyring
        self._holder = holder or default_holder()
        self._lease_renewed_at = 0.0

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, mode: ReconciliationMode = ReconciliationMode.REPORT) -> ReconciliationSummary:
        """Execute one reconciliation pass.

        Returns a summary with status ``skipped_locked`` and no side
        effects when another worker holds the lease.  A listing that
        aborts with a provider error yields status ``partial``; the
        discrepancies already handled stand, but the orphan scan is
        skipped because absence from an incomplete listing proves nothing.
        A run whose lease is taken over mid-way stops before its next
        write and is also reported as ``partial``.
        """
        run_id = uuid.uuid4().hex
        started_at = datetime.now(UTC)
        summary = ReconciliationSummary(
            run_id=run_id,
            mode=mode,
            status=RunStatus.COMPLETED,
            started_at=started_at,
        )

        try:
            async with self._lease():
                logger.info("Reconciliation run %s started (mode=%s)", run_id, mode.value)
                await self._run_locked(summary)
        except LeaseUnavailableError as exc:
            logger.info("Reconciliation run %s skipped: %s", run_id, exc.message)
            summary.status = RunStatus.SKIPPED_LOCKED

        summary.finished_at = datetime.now(UTC)
        logger.info(
            "Reconciliation run %s %s: seen=%d in_sync=%d discrepancies=%d corrected=%d "
            "stale=%d unresolvable=%d",
            run_id,
            summary.status.value,
            summary.remote_seen,
            summary.in_sync,
            summary.total_discrepancies,
            summary.corrected,
            summary.skipped_stale,
            summary.unresolvable,
        )
        return summary

    @asynccontextmanager
    async def _lease(self) -> AsyncIterator[None]:
        async with transaction(self._session_factory) as session:
            acquired = await JobLeaseRepository(session).acquire(
                JOB_NAME,
                self._holder,
                self._settings.reconciliation_lease_ttl_seconds,
            )
        if not acquired:
            raise LeaseUnavailableError(f"Lease on {JOB_NAME} is held by another worker")
        self._lease_renewed_at = time.monotonic()
        try:
            yield
        finally:
            try:
                async with transaction(self._session_factory) as session:
                    await JobLeaseRepository(session).release(JOB_NAME, self._holder)
            except StorageError as exc:
                # The lease lapses on its own at expiry.
                logger.warning("Could not release lease on %s: %s", JOB_NAME, exc.message)

    async def _hold_lease(self, *, force: bool = False) -> None:
        """Renew the lease, at most every third of its TTL unless *force* is set.

        Raises
        ------
        LeaseUnavailableError
            If another worker has taken the lease over since it lapsed.
        """
        ttl = self._settings.reconciliation_lease_ttl_seconds
        if not force and time.monotonic() - self._lease_renewed_at < ttl / 3:
            return
        async with transaction(self._session_factory) as session:
            held = await JobLeaseRepository(session).renew(JOB_NAME, self._holder, ttl)
        if not held:
            raise LeaseUnavailableError(f"Lease on {JOB_NAME} was taken over by another worker")
        self._lease_renewed_at = time.monotonic()

    async def _run_locked(self, summary: ReconciliationSummary) -> None:
        seen: set[str] = set()
        try:
            async for page in self._provider.list_subscriptions(
                status="all",
                page_size=self._settings.reconciliation_page_size,
            ):
                # The page may have taken longer than the TTL to arrive.
                await self._hold_lease(force=True)
                for raw in page:
                    await self._hold_lease()
                    summary.remote_seen += 1
                    external_id = await self._reconcile_remote(raw, summary)
                    if external_id is not None:
                        seen.add(external_id)
            await self._hold_lease(force=True)
            await self._reconcile_orphans(seen, summary)
        except ProviderAPIError as exc:
            logger.warning("Reconciliation run %s listing aborted: %s", summary.run_id, exc.message)
            summary.status = RunStatus.PARTIAL
            summary.error = f"{exc.code.value}: {exc.message}"
            summary.orphan_scan_skipped = True
        except LeaseUnavailableError as exc:
            logger.error("Reconciliation run %s stopped: %s", summary.run_id, exc.message)
            summary.status = RunStatus.PARTIAL
            summary.error = f"{exc.code.value}: {exc.message}"
            summary.orphan_scan_skipped = True

    # ------------------------------------------------------------------
    # Remote records
    # ------------------------------------------------------------------

    async def _reconcile_remote(self, raw: dict[str, Any], summary: ReconciliationSummary) -> str | None:
        try:
            remote = SubscriptionObject.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "Unreadable provider subscription %s: %d validation error(s)",
                raw.get("id", "<unknown>"),
                exc.error_count(),
            )
            summary.unresolvable += 1
            # Still present upstream, so never an orphan.
            external_id = raw.get("id")
            return external_id if isinstance(external_id, str) else None

        snapshot = remote.to_snapshot(self._settings.price_tier_map())
        local = await self._read_local(snapshot.external_subscription_id)
        discrepancy = classify(snapshot, local)
        if discrepancy is None:
            summary.in_sync += 1
            return remote.id

        _count(summary, discrepancy)
        detail = _describe(discrepancy, snapshot, local)
        common: dict[str, Any] = {
            "run_id": summary.run_id,
            "external_subscription_id": snapshot.external_subscription_id,
            "discrepancy_type": discrepancy,
            "mode": summary.mode,
            "subscription_id": local.subscription_id if local else None,
            "local_status": local.status.value if local else None,
            "remote_status": snapshot.status.value,
        }

        if summary.mode == ReconciliationMode.REPORT:
            await self._record(action=DiscrepancyAction.REPORTED, detail=detail, **common)
            return remote.id

        try:
            async with transaction(self._session_factory) as session:
                change = await BillingService(session, self._settings).upsert_subscription(
                    snapshot,
                    expected_updated_at=local.updated_at if local else None,
                )
                issued = await LicenseManager(session, self._keyring, self._settings).apply_transition(change)
                common["subscription_id"] = change.subscription_id
                await DiscrepancyRepository(session).record(
                    action=DiscrepancyAction.CORRECTED.value,
                    detail=detail,
                    **_values(common),
                )
        except StaleRecordError as exc:
            logger.warning("Skipping stale subscription %s: %s", snapshot.external_subscription_id, exc.message)
            summary.skipped_stale += 1
            await self._record(action=DiscrepancyAction.SKIPPED_STALE, detail=exc.message, **common)
        except BillingError as exc:
            logger.warning(
                "Could not correct subscription %s: %s",
                snapshot.external_subscription_id,
                exc.message,
            )
            summary.unresolvable += 1
            await self._record(
                action=DiscrepancyAction.UNRESOLVABLE,
                detail=f"{exc.code.value}: {exc.message}",
                **common,
            )
        else:
            summary.corrected += 1
            if issued is not None:
                summary.keys_issued += 1
        return remote.id

    async def _read_local(self, external_subscription_id: str) -> _LocalView | None:
        async with transaction(self._session_factory) as session:
            row = await SubscriptionRepository(session).get_by_external_id(external_subscription_id)
            if row is None:
                return None
            return _LocalView(row.id, SubscriptionStatus(row.status), LicenseTier.parse(row.tier), row.updated_at)

    # ------------------------------------------------------------------
    # Orphans
    # ------------------------------------------------------------------

    async def _reconcile_orphans(self, seen: set[str], summary: ReconciliationSummary) -> None:
        async with transaction(self._session_factory) as session:
            rows = await SubscriptionRepository(session).list_subscriptions(
                exclude_statuses=[status.value for status in TERMINAL_STATUSES],
            )
            orphans = [
                (row.id, row.external_subscription_id, row.status, row.updated_at)
                for row in rows
                if row.external_subscription_id not in seen and row.created_at < summary.started_at
            ]

        for subscription_id, external_id, local_status, updated_at in orphans:
            await self._hold_lease()
            _count(summary, DiscrepancyType.ORPHANED_LOCALLY)
            common: dict[str, Any] = {
                "run_id": summary.run_id,
                "external_subscription_id": external_id,
                "discrepancy_type": DiscrepancyType.ORPHANED_LOCALLY,
                "mode": summary.mode,
                "subscription_id": subscription_id,
                "local_status": local_status,
                "remote_status": None,
            }
            detail = f"Local subscription ({local_status}) absent from the provider listing"

            if summary.mode == ReconciliationMode.REPORT:
                await self._record(action=DiscrepancyAction.REPORTED, detail=detail, **common)
                continue

            try:
                async with transaction(self._session_factory) as session:
                    change = await BillingService(session, self._settings).cancel_subscription(
                        subscription_id,
                        expected_updated_at=updated_at,
                        reason="orphaned_locally",
                    )
                    await LicenseManager(session, self._keyring, self._settings).apply_transition(change)
                    await DiscrepancyRepository(session).record(
                        action=DiscrepancyAction.CORRECTED.value,
                        detail=detail,
                        **_values(common),
                    )
            except StaleRecordError as exc:
                logger.warning("Skipping stale orphan %s: %s", external_id, exc.message)
                summary.skipped_stale += 1
                await self._record(action=DiscrepancyAction.SKIPPED_STALE, detail=exc.message, **common)
            except BillingError as exc:
                logger.warning("Could not cancel orphan %s: %s", external_id, exc.message)
                summary.unresolvable += 1
                await self._record(
                    action=DiscrepancyAction.UNRESOLVABLE,
                    detail=f"{exc.code.value}: {exc.message}",
                    **common,
                )
            else:
                summary.corrected += 1

    async def _record(self, *, action: DiscrepancyAction, detail: str, **common: Any) -> None:
        async with transaction(self._session_factory) as session:
            await DiscrepancyRepository(session).record(action=action.value, detail=detail, **_values(common))

    # ------------------------------------------------------------------
    # Operator operations
    # ------------------------------------------------------------------

    async def list_discrepancies(
        self,
        *,
        unresolved_only: bool = True,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        async with transaction(self._session_factory) as session:
            rows = await DiscrepancyRepository(session).list_discrepancies(
                unresolved_only=unresolved_only,
                run_id=run_id,
                limit=limit,
            )
            return [discrepancy_to_dict(row) for row in rows]

    async def resolve_discrepancy(
        self,
        discrepancy_id: int,
        resolved_by: str,
        resolution_note: str,
    ) -> dict[str, Any] | None:
        """Mark a discrepancy resolved; ``None`` if no such record exists."""
        async with transaction(self._session_factory) as session:
            row = await DiscrepancyRepository(session).resolve(discrepancy_id, resolved_by, resolution_note)
            if row is None:
                return None
            logger.info("Discrepancy %d resolved by %s", discrepancy_id, resolved_by)
            return discrepancy_to_dict(row)

    async def get_stats(self) -> dict[str, Any]:
        async with transaction(self._session_factory) as session:
            return await DiscrepancyRepository(session).get_stats()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def classify(snapshot: SubscriptionSnapshot, local: _LocalView | None) -> DiscrepancyType | None:
    """Classify one remote subscription against the local view.

    A remote tier below the local one is not drift: tiers only move up.
    """
    if local is None:
        return DiscrepancyType.MISSING_LOCALLY
    if local.status != snapshot.status:
        return DiscrepancyType.STATUS_MISMATCH
    if snapshot.tier.ordinal > local.tier.ordinal:
        return DiscrepancyType.TIER_MISMATCH
    return None


def _describe(discrepancy: DiscrepancyType, snapshot: SubscriptionSnapshot, local: _LocalView | None) -> str:
    if local is None:
        return f"Provider has {snapshot.status.value}/{snapshot.tier.value}; no local row"
    if discrepancy == DiscrepancyType.STATUS_MISMATCH:
        return f"Status local={local.status.value} remote={snapshot.status.value}"
    return f"Tier local={local.tier.value} remote={snapshot.tier.value}"


def _count(summary: ReconciliationSummary, discrepancy: DiscrepancyType) -> None:
    summary.discrepancies[discrepancy.value] = summary.discrepancies.get(discrepancy.value, 0) + 1


def _values(common: dict[str, Any]) -> dict[str, Any]:
    values = dict(common)
    values["discrepancy_type"] = common["discrepancy_type"].value
    values["mode"] = common["mode"].value
    return values


def discrepancy_to_dict(row: ReconciliationDiscrepancyTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "run_id": row.run_id,
        "external_subscription_id": row.external_subscription_id,
        "subscription_id": row.subscription_id,
        "discrepancy_type": row.discrepancy_type,
        "mode": row.mode,
        "action": row.action,
        "local_status": row.local_status,
        "remote_status": row.remote_status,
        "detail": row.detail,
        "resolved": row.resolved,
        "resolved_by": row.resolved_by,
        "resolved_at": row.resolved_at.isoformat() if row.resolved_at else None,
        "resolution_note": row.resolution_note,
        "detected_at": row.detected_at.isoformat() if row.detected_at else None,
    }
