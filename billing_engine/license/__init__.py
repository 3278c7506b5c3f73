"""License key entitlement and lifecycle.

Tier gating lives in :mod:`billing_engine.license.feature_flags`; key
signing and encryption in :mod:`billing_engine.license.credentials`; the
issue/revoke/validate policy in :mod:`billing_engine.license.license_manager`.
"""

from billing_engine.license.feature_flags import (
    Feature,
    LicenseTier,
    grants_license_key,
    is_feature_enabled,
)

__all__ = [
    "Feature",
    "LicenseTier",
    "grants_license_key",
    "is_feature_enabled",
]
