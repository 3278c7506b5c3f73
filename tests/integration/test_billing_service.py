"""Tests for billing_engine/services/billing_service.py (the subscription ledger)."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest

from billing_engine.errors import (
    DowngradeNotAllowedError,
    ErrorCode,
    HandlerFailureError,
    StaleRecordError,
    SubscriptionNotFoundError,
)
from billing_engine.license.feature_flags import LicenseTier
from billing_engine.models.billing import InvoiceStatus, SubscriptionSnapshot, SubscriptionStatus
from billing_engine.models.events import InvoiceObject
from billing_engine.services.billing_service import BillingService
from billing_engine.state.database import transaction
from billing_engine.state.tables import CustomerTable, InvoiceTable, SubscriptionTable

PERIOD_END = datetime(2026, 12, 1, tzinfo=UTC)


def _snapshot(**overrides) -> SubscriptionSnapshot:
    values = {
        "external_subscription_id": "sub_1",
        "external_customer_id": "cus_1",
        "status": SubscriptionStatus.ACTIVE,
        "tier": LicenseTier.TEAM,
        "current_period_end": PERIOD_END,
        "organization_id": "org-acme",
    }
    values.update(overrides)
    return SubscriptionSnapshot(**values)


async def _upsert(session_factory, settings, snapshot, **kwargs):
    async with transaction(session_factory) as session:
        return await BillingService(session, settings).upsert_subscription(snapshot, **kwargs)


def _first_read_misses(repository):
    """Make the first external-id lookup miss, as when a concurrent insert has not committed yet."""
    original = repository.get_by_external_id
    calls = []

    async def _read(external_id, **kwargs):
        calls.append(external_id)
        if len(calls) == 1:
            return None
        return await original(external_id, **kwargs)

    return patch.object(repository, "get_by_external_id", side_effect=_read)


class TestEnsureCustomer:
    @pytest.mark.asyncio
    async def test_unknown_customer_without_org_fails(self, session_factory, settings) -> None:
        with pytest.raises(HandlerFailureError, match="cus_9"):
            async with transaction(session_factory) as session:
                await BillingService(session, settings).ensure_customer("cus_9", None)

    @pytest.mark.asyncio
    async def test_existing_customer_keeps_organization(self, session_factory, settings) -> None:
        async with transaction(session_factory) as session:
            await BillingService(session, settings).ensure_customer("cus_1", "org-a", "old@a.test")
        async with transaction(session_factory) as session:
            row = await BillingService(session, settings).ensure_customer("cus_1", "org-b", "new@a.test")
        assert row.organization_id == "org-a"
        assert row.email == "new@a.test"


class TestUpsertSubscription:
    @pytest.mark.asyncio
    async def test_creates_row(self, session_factory, settings) -> None:
        change = await _upsert(session_factory, settings, _snapshot())
        assert change.created
        assert change.previous_status is None
        assert change.status == SubscriptionStatus.ACTIVE
        assert change.organization_id == "org-acme"

    @pytest.mark.asyncio
    async def test_status_and_period_update(self, session_factory, settings) -> None:
        await _upsert(session_factory, settings, _snapshot())
        later = PERIOD_END + timedelta(days=30)
        change = await _upsert(
            session_factory,
            settings,
            _snapshot(status=SubscriptionStatus.PAST_DUE, current_period_end=later),
        )
        assert not change.created
        assert change.previous_status == SubscriptionStatus.ACTIVE
        assert change.status == SubscriptionStatus.PAST_DUE
        assert change.period_moved
        assert not change.anomalous

    @pytest.mark.asyncio
    async def test_lower_tier_is_ignored(self, session_factory, settings) -> None:
        await _upsert(session_factory, settings, _snapshot(tier=LicenseTier.ENTERPRISE))
        change = await _upsert(session_factory, settings, _snapshot(tier=LicenseTier.INDIVIDUAL))
        assert change.tier == LicenseTier.ENTERPRISE
        async with transaction(session_factory) as session:
            row = await BillingService(session, settings).get_by_external_id("sub_1")
        assert row.tier == "enterprise"

    @pytest.mark.asyncio
    async def test_unexpected_transition_is_applied_and_flagged(self, session_factory, settings, caplog) -> None:
        await _upsert(session_factory, settings, _snapshot(status=SubscriptionStatus.CANCELED))
        change = await _upsert(session_factory, settings, _snapshot(status=SubscriptionStatus.ACTIVE))
        assert change.anomalous
        assert change.status == SubscriptionStatus.ACTIVE
        assert "Anomalous status transition" in caplog.text

    @pytest.mark.asyncio
    async def test_new_subscription_for_unknown_customer_without_org_fails(self, session_factory, settings) -> None:
        with pytest.raises(HandlerFailureError):
            await _upsert(session_factory, settings, _snapshot(organization_id=None))

    @pytest.mark.asyncio
    async def test_org_inherited_from_known_customer(self, session_factory, settings) -> None:
        async with transaction(session_factory) as session:
            await BillingService(session, settings).ensure_customer("cus_1", "org-from-checkout")
        change = await _upsert(session_factory, settings, _snapshot(organization_id=None))
        assert change.organization_id == "org-from-checkout"

    @pytest.mark.asyncio
    async def test_conflicting_org_metadata_keeps_customer_org(self, session_factory, settings, caplog) -> None:
        await _upsert(session_factory, settings, _snapshot())
        change = await _upsert(
            session_factory,
            settings,
            _snapshot(external_subscription_id="sub_2", organization_id="org-other"),
        )
        assert change.organization_id == "org-acme"
        assert "keeping the customer's" in caplog.text

        async with transaction(session_factory) as session:
            rows = await BillingService(session, settings).list_subscriptions(organization_id="org-other")
        assert rows == []


class TestConcurrentFirstWrite:
    @pytest.mark.asyncio
    async def test_lost_subscription_insert_applies_as_update(self, session_factory, settings, count_rows) -> None:
        await _upsert(session_factory, settings, _snapshot())

        async with transaction(session_factory) as session:
            ledger = BillingService(session, settings)
            with _first_read_misses(ledger._subscriptions):
                change = await ledger.upsert_subscription(_snapshot(status=SubscriptionStatus.PAST_DUE))

        assert not change.created
        assert change.previous_status == SubscriptionStatus.ACTIVE
        assert change.status == SubscriptionStatus.PAST_DUE
        assert await count_rows(SubscriptionTable) == 1

    @pytest.mark.asyncio
    async def test_lost_insert_with_absent_guard_is_stale(self, session_factory, settings) -> None:
        await _upsert(session_factory, settings, _snapshot())

        with pytest.raises(StaleRecordError):
            async with transaction(session_factory) as session:
                ledger = BillingService(session, settings)
                with _first_read_misses(ledger._subscriptions):
                    await ledger.upsert_subscription(_snapshot(), expected_updated_at=None)

    @pytest.mark.asyncio
    async def test_lost_customer_insert_reuses_winner(self, session_factory, settings, count_rows) -> None:
        async with transaction(session_factory) as session:
            await BillingService(session, settings).ensure_customer("cus_1", "org-a")

        async with transaction(session_factory) as session:
            ledger = BillingService(session, settings)
            with _first_read_misses(ledger._customers):
                row = await ledger.ensure_customer("cus_1", "org-a", "billing@a.test")

        assert row.organization_id == "org-a"
        assert row.email == "billing@a.test"
        assert await count_rows(CustomerTable) == 1


class TestOptimisticGuard:
    @pytest.mark.asyncio
    async def test_matching_guard_applies(self, session_factory, settings) -> None:
        await _upsert(session_factory, settings, _snapshot())
        async with transaction(session_factory) as session:
            row = await BillingService(session, settings).get_by_external_id("sub_1")
        change = await _upsert(
            session_factory,
            settings,
            _snapshot(status=SubscriptionStatus.CANCELED),
            expected_updated_at=row.updated_at,
        )
        assert change.status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_stale_guard_rejects(self, session_factory, settings) -> None:
        await _upsert(session_factory, settings, _snapshot())
        async with transaction(session_factory) as session:
            row = await BillingService(session, settings).get_by_external_id("sub_1")
        read_at = row.updated_at
        await _upsert(session_factory, settings, _snapshot(status=SubscriptionStatus.PAST_DUE))

        with pytest.raises(StaleRecordError) as exc_info:
            await _upsert(
                session_factory,
                settings,
                _snapshot(status=SubscriptionStatus.CANCELED),
                expected_updated_at=read_at,
            )
        assert exc_info.value.code == ErrorCode.RECONCILIATION_SKIPPED_STALE

    @pytest.mark.asyncio
    async def test_expect_absent_guard(self, session_factory, settings) -> None:
        await _upsert(session_factory, settings, _snapshot())
        with pytest.raises(StaleRecordError):
            await _upsert(session_factory, settings, _snapshot(), expected_updated_at=None)


class TestChangeTier:
    @pytest.mark.asyncio
    async def test_upgrade(self, session_factory, settings) -> None:
        created = await _upsert(session_factory, settings, _snapshot(tier=LicenseTier.INDIVIDUAL))
        async with transaction(session_factory) as session:
            change = await BillingService(session, settings).change_tier(created.subscription_id, LicenseTier.TEAM)
        assert change.previous_tier == LicenseTier.INDIVIDUAL
        assert change.tier_upgraded

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", [LicenseTier.INDIVIDUAL, LicenseTier.TEAM])
    async def test_downgrade_and_same_tier_rejected(self, session_factory, settings, target) -> None:
        created = await _upsert(session_factory, settings, _snapshot(tier=LicenseTier.TEAM))
        with pytest.raises(DowngradeNotAllowedError):
            async with transaction(session_factory) as session:
                await BillingService(session, settings).change_tier(created.subscription_id, target)
        async with transaction(session_factory) as session:
            row = await BillingService(session, settings).get_subscription(created.subscription_id)
        assert row.tier == "team"

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, session_factory, settings) -> None:
        with pytest.raises(SubscriptionNotFoundError):
            async with transaction(session_factory) as session:
                await BillingService(session, settings).change_tier("nope", LicenseTier.TEAM)


class TestCancelAndList:
    @pytest.mark.asyncio
    async def test_cancel_sets_canceled_at(self, session_factory, settings) -> None:
        created = await _upsert(session_factory, settings, _snapshot())
        async with transaction(session_factory) as session:
            change = await BillingService(session, settings).cancel_subscription(created.subscription_id)
        assert change.status == SubscriptionStatus.CANCELED
        async with transaction(session_factory) as session:
            service = BillingService(session, settings)
            row = await service.get_subscription(created.subscription_id)
            assert row.canceled_at is not None
            assert await service.list_subscriptions("org-acme", [SubscriptionStatus.ACTIVE]) == []
            assert len(await service.list_subscriptions("org-acme")) == 1


class TestRecordInvoice:
    @pytest.mark.asyncio
    async def test_insert_then_status_change(self, session_factory, settings, count_rows) -> None:
        await _upsert(session_factory, settings, _snapshot())
        invoice = InvoiceObject(id="in_1", subscription="sub_1", amount_paid=0, amount_due=1900)

        async with transaction(session_factory) as session:
            row = await BillingService(session, settings).record_invoice(invoice, InvoiceStatus.FAILED)
            assert row.amount == 1900
        async with transaction(session_factory) as session:
            row = await BillingService(session, settings).record_invoice(invoice, InvoiceStatus.FAILED)
            unchanged_at = row.updated_at
            row = await BillingService(session, settings).record_invoice(
                invoice.model_copy(update={"amount_paid": 1900}),
                InvoiceStatus.PAID,
            )
            assert row.status == "paid"
            assert row.updated_at >= unchanged_at
        assert await count_rows(InvoiceTable) == 1

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, session_factory, settings) -> None:
        with pytest.raises(SubscriptionNotFoundError):
            async with transaction(session_factory) as session:
                await BillingService(session, settings).record_invoice(
                    InvoiceObject(id="in_1", subscription="sub_missing"),
                    InvoiceStatus.PAID,
                )
