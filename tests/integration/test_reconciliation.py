"""Tests for billing_engine/services/reconciliation_service.py

Covers:
- report mode records every discrepancy and changes nothing
- auto-fix converges the ledger onto the provider listing
- orphaned local rows are canceled and their keys revoked
- a listing aborted mid-way yields a partial run without an orphan scan
- lease exclusion and takeover of a lapsed lease mid-run
- optimistic-concurrency skips
- operator review: list, resolve, stats
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import update

from billing_engine.models.outcomes import DiscrepancyType, ReconciliationMode, RunStatus
from billing_engine.services.billing_service import BillingService
from billing_engine.services.reconciliation_service import JOB_NAME, ReconciliationService
from billing_engine.state.database import transaction
from billing_engine.state.repository import JobLeaseRepository, LicenseKeyRepository
from billing_engine.state.tables import JobLeaseTable, LicenseKeyTable, ReconciliationDiscrepancyTable
from tests.factories import PRICE_TEAM, FakeProvider, subscription_object


def _service(session_factory, settings, keyring, provider) -> ReconciliationService:
    return ReconciliationService(session_factory, settings, provider, keyring, holder="test-worker")


async def _local(session_factory, settings, external_id: str):
    async with transaction(session_factory) as session:
        return await BillingService(session, settings).get_by_external_id(external_id)


class _SlowListing(FakeProvider):
    """Holds the first page back until the test releases it."""

    def __init__(self, subscriptions) -> None:
        super().__init__(subscriptions)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def list_subscriptions(self, status: str = "all", page_size: int | None = None):
        self.started.set()
        await self.release.wait()
        async for page in super().list_subscriptions(status, page_size):
            yield page


class TestReportMode:
    @pytest.mark.asyncio
    async def test_records_without_changing_ledger(self, deliver, session_factory, settings, keyring) -> None:
        await deliver("evt_1", "customer.subscription.created", subscription_object("sub_1"))
        provider = FakeProvider(
            [
                subscription_object("sub_1", status="past_due"),
                subscription_object("sub_2", customer="cus_2"),
            ]
        )

        summary = await _service(session_factory, settings, keyring, provider).run(ReconciliationMode.REPORT)

        assert summary.status == RunStatus.COMPLETED
        assert summary.remote_seen == 2
        assert summary.discrepancies == {
            DiscrepancyType.STATUS_MISMATCH.value: 1,
            DiscrepancyType.MISSING_LOCALLY.value: 1,
        }
        assert summary.corrected == 0
        assert (await _local(session_factory, settings, "sub_1")).status == "active"
        assert await _local(session_factory, settings, "sub_2") is None

    @pytest.mark.asyncio
    async def test_in_sync_ledger_has_no_discrepancies(self, deliver, session_factory, settings, keyring) -> None:
        await deliver("evt_1", "customer.subscription.created", subscription_object("sub_1"))
        provider = FakeProvider([subscription_object("sub_1")])

        summary = await _service(session_factory, settings, keyring, provider).run()

        assert summary.in_sync == 1
        assert summary.total_discrepancies == 0


class TestAutoFix:
    @pytest.mark.asyncio
    async def test_converges_on_provider_state(self, deliver, session_factory, settings, keyring, count_rows) -> None:
        await deliver("evt_1", "customer.subscription.created", subscription_object("sub_1"))
        await deliver("evt_2", "customer.subscription.created", subscription_object("sub_2", customer="cus_2"))
        provider = FakeProvider(
            [
                subscription_object("sub_1", status="canceled"),
                subscription_object("sub_2", customer="cus_2", price=PRICE_TEAM),
                subscription_object("sub_3", customer="cus_3"),
            ]
        )
        service = _service(session_factory, settings, keyring, provider)

        summary = await service.run(ReconciliationMode.AUTO_FIX)

        assert summary.status == RunStatus.COMPLETED
        assert summary.corrected == 3
        assert summary.keys_issued == 2
        assert (await _local(session_factory, settings, "sub_1")).status == "canceled"
        assert (await _local(session_factory, settings, "sub_2")).tier == "team"
        assert (await _local(session_factory, settings, "sub_3")).status == "active"
        assert await count_rows(LicenseKeyTable, LicenseKeyTable.revoked_at.is_(None)) == 2

        again = await service.run(ReconciliationMode.AUTO_FIX)
        assert again.total_discrepancies == 0
        assert again.in_sync == 3

    @pytest.mark.asyncio
    async def test_orphan_is_canceled_revoked_and_recorded(self, deliver, session_factory, settings, keyring) -> None:
        created = await deliver("evt_1", "customer.subscription.created", subscription_object("sub_gone"))
        subscription_id = created.transitions[0].subscription_id
        service = _service(session_factory, settings, keyring, FakeProvider([]))

        summary = await service.run(ReconciliationMode.AUTO_FIX)

        assert summary.discrepancies == {DiscrepancyType.ORPHANED_LOCALLY.value: 1}
        assert (await _local(session_factory, settings, "sub_gone")).status == "canceled"
        async with transaction(session_factory) as session:
            keys = await LicenseKeyRepository(session).list_by_subscription(subscription_id)
        assert keys[0].revoked_at is not None
        records = await service.list_discrepancies(run_id=summary.run_id)
        assert [(r["discrepancy_type"], r["action"]) for r in records] == [("orphaned_locally", "corrected")]

    @pytest.mark.asyncio
    async def test_orphan_reported_in_report_mode(self, deliver, session_factory, settings, keyring) -> None:
        await deliver("evt_1", "customer.subscription.created", subscription_object("sub_gone"))
        service = _service(session_factory, settings, keyring, FakeProvider([]))

        summary = await service.run(ReconciliationMode.REPORT)

        assert summary.discrepancies == {DiscrepancyType.ORPHANED_LOCALLY.value: 1}
        assert (await _local(session_factory, settings, "sub_gone")).status == "active"
        records = await service.list_discrepancies(run_id=summary.run_id)
        assert records[0]["action"] == "reported"

    @pytest.mark.asyncio
    async def test_unreadable_remote_is_unresolvable_not_orphan(
        self, deliver, session_factory, settings, keyring
    ) -> None:
        await deliver("evt_1", "customer.subscription.created", subscription_object("sub_1"))
        provider = FakeProvider([subscription_object("sub_1", status="paused")])

        summary = await _service(session_factory, settings, keyring, provider).run(ReconciliationMode.AUTO_FIX)

        assert summary.unresolvable == 1
        assert DiscrepancyType.ORPHANED_LOCALLY.value not in summary.discrepancies
        assert (await _local(session_factory, settings, "sub_1")).status == "active"

    @pytest.mark.asyncio
    async def test_missing_locally_without_org_is_unresolvable(self, session_factory, settings, keyring) -> None:
        provider = FakeProvider([subscription_object("sub_9", customer="cus_9", organization_id=None)])

        summary = await _service(session_factory, settings, keyring, provider).run(ReconciliationMode.AUTO_FIX)

        assert summary.unresolvable == 1
        assert summary.corrected == 0
        assert await _local(session_factory, settings, "sub_9") is None

    @pytest.mark.asyncio
    async def test_concurrent_write_is_skipped_as_stale(self, deliver, session_factory, settings, keyring) -> None:
        await deliver("evt_1", "customer.subscription.created", subscription_object("sub_1"))
        provider = FakeProvider([subscription_object("sub_1", status="canceled")])
        service = _service(session_factory, settings, keyring, provider)
        original_read = service._read_local

        async def read_then_webhook(external_id):
            view = await original_read(external_id)
            await deliver("evt_2", "customer.subscription.updated", subscription_object("sub_1", status="past_due"))
            return view

        with patch.object(service, "_read_local", side_effect=read_then_webhook):
            summary = await service.run(ReconciliationMode.AUTO_FIX)

        assert summary.skipped_stale == 1
        assert summary.corrected == 0
        assert (await _local(session_factory, settings, "sub_1")).status == "past_due"


class TestRunControl:
    @pytest.mark.asyncio
    async def test_partial_listing_skips_orphan_scan(self, deliver, session_factory, settings, keyring) -> None:
        await deliver("evt_1", "customer.subscription.created", subscription_object("sub_local_only"))
        provider = FakeProvider(
            [subscription_object("sub_a", customer="cus_a"), subscription_object("sub_b", customer="cus_b")],
            fail_after_pages=1,
        )

        summary = await _service(session_factory, settings, keyring, provider).run(ReconciliationMode.AUTO_FIX)

        assert summary.status == RunStatus.PARTIAL
        assert summary.orphan_scan_skipped
        assert "PROVIDER_API_ERROR" in summary.error
        assert summary.corrected == 2
        assert (await _local(session_factory, settings, "sub_local_only")).status == "active"

    @pytest.mark.asyncio
    async def test_held_lease_skips_run(self, session_factory, settings, keyring, count_rows) -> None:
        async with transaction(session_factory) as session:
            await JobLeaseRepository(session).acquire(JOB_NAME, "other-worker", 600)
        provider = FakeProvider([subscription_object("sub_1")])

        summary = await _service(session_factory, settings, keyring, provider).run(ReconciliationMode.AUTO_FIX)

        assert summary.status == RunStatus.SKIPPED_LOCKED
        assert provider.calls == 0
        assert await count_rows(ReconciliationDiscrepancyTable) == 0

    @pytest.mark.asyncio
    async def test_lapsed_lease_taken_over_stops_the_slow_run(
        self, session_factory, settings, keyring, count_rows
    ) -> None:
        slow = _SlowListing([subscription_object("sub_1")])
        first = ReconciliationService(session_factory, settings, slow, keyring, holder="worker-a")
        task = asyncio.create_task(first.run(ReconciliationMode.REPORT))
        await asyncio.wait_for(slow.started.wait(), timeout=5)

        # The listing outlives the TTL.
        async with transaction(session_factory) as session:
            await session.execute(
                update(JobLeaseTable)
                .where(JobLeaseTable.job_name == JOB_NAME)
                .values(expires_at=datetime.now(UTC) - timedelta(seconds=1))
            )
        second = ReconciliationService(
            session_factory, settings, FakeProvider([subscription_object("sub_1")]), keyring, holder="worker-b"
        )
        taken_over = await second.run(ReconciliationMode.REPORT)
        assert taken_over.status == RunStatus.COMPLETED

        slow.release.set()
        summary = await asyncio.wait_for(task, timeout=5)

        assert summary.status == RunStatus.PARTIAL
        assert "LEASE_UNAVAILABLE" in summary.error
        assert summary.orphan_scan_skipped
        assert summary.remote_seen == 0
        assert await count_rows(ReconciliationDiscrepancyTable) == 1

    @pytest.mark.asyncio
    async def test_lease_released_after_run(self, session_factory, settings, keyring) -> None:
        await _service(session_factory, settings, keyring, FakeProvider([])).run()
        async with transaction(session_factory) as session:
            assert await JobLeaseRepository(session).get(JOB_NAME) is None


class TestOperatorReview:
    @pytest.mark.asyncio
    async def test_list_resolve_and_stats(self, session_factory, settings, keyring) -> None:
        provider = FakeProvider([subscription_object("sub_1"), subscription_object("sub_2", customer="cus_2")])
        service = _service(session_factory, settings, keyring, provider)
        await service.run(ReconciliationMode.REPORT)

        records = await service.list_discrepancies()
        assert len(records) == 2
        resolved = await service.resolve_discrepancy(records[0]["id"], "ops@acme.test", "replayed webhook")
        assert resolved["resolved"] is True
        assert resolved["resolved_by"] == "ops@acme.test"
        assert await service.resolve_discrepancy(12345, "ops", "n/a") is None

        assert len(await service.list_discrepancies()) == 1
        assert len(await service.list_discrepancies(unresolved_only=False)) == 2
        stats = await service.get_stats()
        assert stats["unresolved_discrepancies"] == 1
        assert stats["by_type"] == {"missing_locally": 2}
