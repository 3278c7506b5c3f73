"""Tier ordering and tier-based entitlement gating.

Four subscription tiers control access to the product:

* **Community** -- Free tier; no license key is issued.
* **Individual** -- Single-seat paid tier with a license key.
* **Team** -- Adds team workspaces, private skills, and usage analytics.
* **Enterprise** -- Full feature set including SSO, RBAC, and audit export.

Tiers are totally ordered.  The ordinal drives both upgrade-only tier
changes in the ledger and the key-issuance rule in the license manager.
"""

from __future__ import annotations

from enum import Enum


class LicenseTier(str, Enum):
    """Subscription tier determining feature access."""

    COMMUNITY = "community"
    INDIVIDUAL = "individual"
    TEAM = "team"
    ENTERPRISE = "enterprise"

    @property
    def ordinal(self) -> int:
        return _TIER_ORDER[self]

    @classmethod
    def parse(cls, value: str | None) -> LicenseTier:
        """Parse a tier name leniently, falling back to COMMUNITY."""
        if not value:
            return cls.COMMUNITY
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.COMMUNITY


_TIER_ORDER: dict[LicenseTier, int] = {
    LicenseTier.COMMUNITY: 0,
    LicenseTier.INDIVIDUAL: 1,
    LicenseTier.TEAM: 2,
    LicenseTier.ENTERPRISE: 3,
}


class Feature(str, Enum):
    """Product features that can be gated by subscription tier."""

    # Core features (community)
    SKILL_SEARCH = "skill_search"
    SKILL_INSTALL = "skill_install"

    # Individual features
    LICENSE_KEY = "license_key"
    PRIORITY_RATE_LIMIT = "priority_rate_limit"

    # Team features
    TEAM_WORKSPACES = "team_workspaces"
    PRIVATE_SKILLS = "private_skills"
    USAGE_ANALYTICS = "usage_analytics"
    PRIORITY_SUPPORT = "priority_support"

    # Enterprise features
    SSO_SAML = "sso_saml"
    RBAC = "rbac"
    AUDIT_LOGGING = "audit_logging"
    SIEM_EXPORT = "siem_export"
    COMPLIANCE_REPORTS = "compliance_reports"


# Features available at each tier.  Higher tiers include all lower-tier
# features automatically.

_COMMUNITY_FEATURES: frozenset[Feature] = frozenset(
    {
        Feature.SKILL_SEARCH,
        Feature.SKILL_INSTALL,
    }
)

_INDIVIDUAL_FEATURES: frozenset[Feature] = _COMMUNITY_FEATURES | frozenset(
    {
        Feature.LICENSE_KEY,
        Feature.PRIORITY_RATE_LIMIT,
    }
)

_TEAM_FEATURES: frozenset[Feature] = _INDIVIDUAL_FEATURES | frozenset(
    {
        Feature.TEAM_WORKSPACES,
        Feature.PRIVATE_SKILLS,
        Feature.USAGE_ANALYTICS,
        Feature.PRIORITY_SUPPORT,
    }
)

_ENTERPRISE_FEATURES: frozenset[Feature] = _TEAM_FEATURES | frozenset(
    {
        Feature.SSO_SAML,
        Feature.RBAC,
        Feature.AUDIT_LOGGING,
        Feature.SIEM_EXPORT,
        Feature.COMPLIANCE_REPORTS,
    }
)

TIER_FEATURES: dict[LicenseTier, frozenset[Feature]] = {
    LicenseTier.COMMUNITY: _COMMUNITY_FEATURES,
    LicenseTier.INDIVIDUAL: _INDIVIDUAL_FEATURES,
    LicenseTier.TEAM: _TEAM_FEATURES,
    LicenseTier.ENTERPRISE: _ENTERPRISE_FEATURES,
}

def is_feature_enabled(tier: LicenseTier, feature: Feature) -> bool:
    """Check whether a feature is enabled for the given tier.

    Parameters
    ----------
    tier:
        The active subscription tier.
    feature:
        The feature to check.

    Returns
    -------
    bool
        ``True`` if the feature is included in the tier's entitlements.
    """
    return feature in TIER_FEATURES.get(tier, _COMMUNITY_FEATURES)


def grants_license_key(tier: LicenseTier) -> bool:
    """Return ``True`` if subscriptions at *tier* are issued a license key."""
    return is_feature_enabled(tier, Feature.LICENSE_KEY)


def get_tier_features(tier: LicenseTier) -> list[Feature]:
    """Return the features available at a given tier, in declaration order."""
    granted = TIER_FEATURES.get(tier, _COMMUNITY_FEATURES)
    return [feature for feature in Feature if feature in granted]


def get_required_tier(feature: Feature) -> LicenseTier:
    """Return the minimum tier required for a feature.

    Parameters
    ----------
    feature:
        The feature to look up.

    Returns
    -------
    LicenseTier
        The lowest tier that includes the feature.
    """
    for tier in sorted(TIER_FEATURES, key=lambda t: t.ordinal):
        if feature in TIER_FEATURES[tier]:
            return tier
    return LicenseTier.ENTERPRISE
