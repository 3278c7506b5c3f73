"""Tests for the ledger state machine, tier ordering and outcome models."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from billing_engine.license.feature_flags import (
    Feature,
    LicenseTier,
    get_required_tier,
    get_tier_features,
    grants_license_key,
    is_feature_enabled,
)
from billing_engine.models.billing import (
    SubscriptionChange,
    SubscriptionStatus,
    is_expected_transition,
)
from billing_engine.models.outcomes import (
    DeletionCounts,
    IssuedCredential,
    ProcessingOutcome,
    RejectionReason,
)


class TestSubscriptionStatus:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("active", SubscriptionStatus.ACTIVE),
            ("PAST-DUE", SubscriptionStatus.PAST_DUE),
            ("cancelled", SubscriptionStatus.CANCELED),
            (" incomplete_expired ", SubscriptionStatus.INCOMPLETE_EXPIRED),
        ],
    )
    def test_from_provider(self, raw: str, expected: SubscriptionStatus) -> None:
        assert SubscriptionStatus.from_provider(raw) == expected

    def test_from_provider_rejects_unknown(self) -> None:
        with pytest.raises(ValueError):
            SubscriptionStatus.from_provider("paused")


class TestTransitions:
    def test_first_sighting_is_expected(self) -> None:
        assert is_expected_transition(None, SubscriptionStatus.PAST_DUE)

    def test_same_status_is_expected(self) -> None:
        assert is_expected_transition(SubscriptionStatus.CANCELED, SubscriptionStatus.CANCELED)

    def test_forward_transition(self) -> None:
        assert is_expected_transition(SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)
        assert is_expected_transition(SubscriptionStatus.PAST_DUE, SubscriptionStatus.ACTIVE)

    def test_resurrection_is_anomalous(self) -> None:
        assert not is_expected_transition(SubscriptionStatus.CANCELED, SubscriptionStatus.ACTIVE)


class TestTiers:
    def test_ordering(self) -> None:
        ordinals = [tier.ordinal for tier in LicenseTier]
        assert ordinals == sorted(ordinals)
        assert LicenseTier.TEAM.ordinal > LicenseTier.INDIVIDUAL.ordinal

    def test_parse_is_lenient(self) -> None:
        assert LicenseTier.parse(" Team ") == LicenseTier.TEAM
        assert LicenseTier.parse("platinum") == LicenseTier.COMMUNITY
        assert LicenseTier.parse(None) == LicenseTier.COMMUNITY

    def test_community_gets_no_key(self) -> None:
        assert not grants_license_key(LicenseTier.COMMUNITY)
        assert grants_license_key(LicenseTier.INDIVIDUAL)

    def test_higher_tiers_include_lower_features(self) -> None:
        assert is_feature_enabled(LicenseTier.ENTERPRISE, Feature.TEAM_WORKSPACES)
        assert not is_feature_enabled(LicenseTier.INDIVIDUAL, Feature.TEAM_WORKSPACES)
        assert get_required_tier(Feature.SSO_SAML) == LicenseTier.ENTERPRISE

    def test_tier_features_are_cumulative(self) -> None:
        individual = get_tier_features(LicenseTier.INDIVIDUAL)
        team = get_tier_features(LicenseTier.TEAM)
        assert Feature.LICENSE_KEY in individual
        assert set(individual) < set(team)
        assert Feature.TEAM_WORKSPACES not in individual


class TestSubscriptionChange:
    def _change(self, **kwargs) -> SubscriptionChange:
        values = {
            "subscription_id": "s1",
            "external_subscription_id": "sub_1",
            "organization_id": "org",
            "status": SubscriptionStatus.ACTIVE,
            "tier": LicenseTier.TEAM,
        }
        values.update(kwargs)
        return SubscriptionChange(**values)

    def test_created_change_is_not_an_upgrade(self) -> None:
        assert not self._change().tier_upgraded

    def test_upgrade_detected(self) -> None:
        assert self._change(previous_tier=LicenseTier.INDIVIDUAL).tier_upgraded

    def test_period_moved(self) -> None:
        end = datetime(2026, 1, 1, tzinfo=UTC)
        assert not self._change(previous_period_end=end, current_period_end=end).period_moved
        assert self._change(previous_period_end=end, current_period_end=None).period_moved


class TestOutcomes:
    def test_summary_never_contains_credentials(self) -> None:
        issued = IssuedCredential(
            key_id="k",
            subscription_id="s",
            organization_id="o",
            tier=LicenseTier.TEAM,
            key_prefix="blk_k",
            expires_at=datetime(2030, 1, 1, tzinfo=UTC),
            credential="blk_secret.material",
        )
        outcome = ProcessingOutcome.applied("evt_1", "customer.subscription.created", [], [issued])
        assert outcome.summary() == {
            "outcome": "applied",
            "event_id": "evt_1",
            "transitions": 0,
            "keys_issued": 1,
        }
        assert "blk_secret" not in repr(issued)

    def test_rejected_summary_carries_reason(self) -> None:
        outcome = ProcessingOutcome.rejected(RejectionReason.SIGNATURE_INVALID, "bad")
        assert outcome.summary() == {"outcome": "rejected", "reason": "signature_invalid", "error": "bad"}

    def test_deletion_counts_total(self) -> None:
        counts = DeletionCounts(organization_id="o", dry_run=True, license_keys=2, invoices=3, subscriptions=1)
        assert counts.total == 6
        assert counts.counts()["customers"] == 0
