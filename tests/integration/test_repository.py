"""Tests for billing_engine/state/repository.py and the unit-of-work helper.

Runs against a real SQLite database so the ``ON CONFLICT DO NOTHING``
idempotency anchor and lease semantics are exercised end to end.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from billing_engine.errors import HandlerFailureError, StorageError
from billing_engine.models.outcomes import ProcessingStatus
from billing_engine.services.event_store import EventStore
from billing_engine.state.database import transaction
from billing_engine.state.repository import (
    CustomerRepository,
    DiscrepancyRepository,
    JobLeaseRepository,
    SubscriptionRepository,
)
from billing_engine.state.tables import CustomerTable, JobLeaseTable, SubscriptionTable


class TestTransaction:
    @pytest.mark.asyncio
    async def test_commits_on_success(self, session_factory, count_rows) -> None:
        async with transaction(session_factory) as session:
            await CustomerRepository(session).create("cus_1", "org-a")
        assert await count_rows(CustomerTable) == 1

    @pytest.mark.asyncio
    async def test_domain_error_rolls_back_and_propagates(self, session_factory, count_rows) -> None:
        with pytest.raises(HandlerFailureError):
            async with transaction(session_factory) as session:
                await CustomerRepository(session).create("cus_1", "org-a")
                raise HandlerFailureError("boom")
        assert await count_rows(CustomerTable) == 0

    @pytest.mark.asyncio
    async def test_integrity_error_becomes_storage_error(self, session_factory, count_rows) -> None:
        async with transaction(session_factory) as session:
            await CustomerRepository(session).create("cus_1", "org-a")

        with pytest.raises(StorageError) as exc_info:
            async with transaction(session_factory) as session:
                await CustomerRepository(session).create("cus_2", "org-a")
                await CustomerRepository(session).create("cus_1", "org-b")
        assert not exc_info.value.transient
        assert await count_rows(CustomerTable) == 1


class TestEventStore:
    @pytest.mark.asyncio
    async def test_first_insert_wins(self, session_factory) -> None:
        async with transaction(session_factory) as session:
            assert await EventStore(session).record_succeeded("evt_1", "invoice.paid", {"id": "evt_1"})
        async with transaction(session_factory) as session:
            store = EventStore(session)
            assert not await store.record_succeeded("evt_1", "invoice.paid", {"id": "evt_1"})
            assert not await store.record_failed("evt_1", "invoice.paid", {"id": "evt_1"}, "late failure")
            row = await store.get("evt_1")
            assert row is not None
            assert row.processing_status == ProcessingStatus.SUCCEEDED.value
            assert row.payload_snapshot == {"id": "evt_1"}

    @pytest.mark.asyncio
    async def test_failed_events_listed_and_counted(self, session_factory) -> None:
        async with transaction(session_factory) as session:
            store = EventStore(session)
            await store.record_succeeded("evt_ok", "invoice.paid", {})
            await store.record_failed("evt_bad", "invoice.paid", {}, "x" * 5000)

        async with transaction(session_factory) as session:
            store = EventStore(session)
            failed = await store.list_failed()
            assert [row.external_event_id for row in failed] == ["evt_bad"]
            assert len(failed[0].error_message) == 2000
            assert await store.count() == 2
            assert await store.count(ProcessingStatus.FAILED) == 1


class TestJobLease:
    @pytest.mark.asyncio
    async def test_exclusive_until_released(self, session_factory) -> None:
        async with transaction(session_factory) as session:
            assert await JobLeaseRepository(session).acquire("job", "a", 60)
        async with transaction(session_factory) as session:
            assert not await JobLeaseRepository(session).acquire("job", "b", 60)
        async with transaction(session_factory) as session:
            assert not await JobLeaseRepository(session).release("job", "b")
            assert await JobLeaseRepository(session).release("job", "a")
        async with transaction(session_factory) as session:
            assert await JobLeaseRepository(session).acquire("job", "b", 60)

    @pytest.mark.asyncio
    async def test_expired_lease_is_reaped(self, session_factory) -> None:
        async with transaction(session_factory) as session:
            session.add(
                JobLeaseTable(
                    job_name="job",
                    holder="crashed",
                    acquired_at=datetime.now(UTC) - timedelta(hours=2),
                    expires_at=datetime.now(UTC) - timedelta(hours=1),
                )
            )
        async with transaction(session_factory) as session:
            assert await JobLeaseRepository(session).acquire("job", "b", 60)
            lease = await JobLeaseRepository(session).get("job")
            assert lease is not None and lease.holder == "b"

    @pytest.mark.asyncio
    async def test_renew_only_while_held(self, session_factory) -> None:
        async with transaction(session_factory) as session:
            assert await JobLeaseRepository(session).acquire("job", "a", 1)
        async with transaction(session_factory) as session:
            assert await JobLeaseRepository(session).renew("job", "a", 600)
            assert not await JobLeaseRepository(session).renew("job", "b", 600)
        async with session_factory() as session:
            lease = await JobLeaseRepository(session).get("job")
            assert lease.expires_at > datetime.now(UTC) + timedelta(seconds=500)

        async with transaction(session_factory) as session:
            lease = await JobLeaseRepository(session).get("job")
            lease.expires_at = datetime.now(UTC) - timedelta(seconds=1)
        async with transaction(session_factory) as session:
            assert await JobLeaseRepository(session).acquire("job", "b", 60)
        async with transaction(session_factory) as session:
            assert not await JobLeaseRepository(session).renew("job", "a", 600)


class TestSubscriptionRepository:
    @pytest.mark.asyncio
    async def test_apply_bumps_updated_at(self, session_factory) -> None:
        async with transaction(session_factory) as session:
            customer = await CustomerRepository(session).create("cus_1", "org-a")
            row = await SubscriptionRepository(session).create(
                customer_id=customer.id,
                organization_id="org-a",
                external_subscription_id="sub_1",
                status="active",
                tier="team",
                updated_at=datetime(2020, 1, 1, tzinfo=UTC),
            )

        async with transaction(session_factory) as session:
            repo = SubscriptionRepository(session)
            row = await repo.get(row.id, for_update=True)
            await repo.apply(row, status="past_due")

        async with session_factory() as session:
            fresh = (await session.execute(select(SubscriptionTable))).scalars().one()
        assert fresh.status == "past_due"
        assert fresh.updated_at > datetime(2020, 1, 1, tzinfo=UTC)
        assert fresh.updated_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_insert_if_absent_keeps_first_row(self, session_factory, count_rows) -> None:
        async with transaction(session_factory) as session:
            customers = CustomerRepository(session)
            assert await customers.insert_if_absent("cus_1", "org-a")
            assert not await customers.insert_if_absent("cus_1", "org-b")
            customer = await customers.get_by_external_id("cus_1")
            assert customer.organization_id == "org-a"

            subscriptions = SubscriptionRepository(session)
            values = {
                "customer_id": customer.id,
                "organization_id": "org-a",
                "external_subscription_id": "sub_1",
                "status": "active",
                "tier": "team",
            }
            first_id = await subscriptions.insert_if_absent(**values)
            assert first_id is not None
            assert await subscriptions.insert_if_absent(**{**values, "status": "canceled"}) is None

        async with session_factory() as session:
            row = (await session.execute(select(SubscriptionTable))).scalars().one()
        assert row.id == first_id
        assert row.status == "active"
        assert await count_rows(CustomerTable) == 1


class TestDiscrepancyRepository:
    @pytest.mark.asyncio
    async def test_resolve_and_stats(self, session_factory) -> None:
        async with transaction(session_factory) as session:
            repo = DiscrepancyRepository(session)
            first = await repo.record(
                run_id="r1",
                external_subscription_id="sub_1",
                discrepancy_type="status_mismatch",
                mode="report",
                action="reported",
            )
            await repo.record(
                run_id="r1",
                external_subscription_id="sub_2",
                discrepancy_type="missing_locally",
                mode="report",
                action="reported",
            )

        async with transaction(session_factory) as session:
            repo = DiscrepancyRepository(session)
            resolved = await repo.resolve(first.id, "ops@acme.test", "fixed upstream")
            assert resolved is not None and resolved.resolved
            assert await repo.resolve(9999, "ops", "n/a") is None

        async with transaction(session_factory) as session:
            repo = DiscrepancyRepository(session)
            unresolved = await repo.list_discrepancies()
            assert [row.external_subscription_id for row in unresolved] == ["sub_2"]
            stats = await repo.get_stats()
            assert stats["total_discrepancies"] == 2
            assert stats["unresolved_discrepancies"] == 1
            assert stats["by_type"] == {"status_mismatch": 1, "missing_locally": 1}
