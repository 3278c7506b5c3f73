"""Tests for billing_engine/license/validation_cache.py"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

from billing_engine.license.feature_flags import LicenseTier
from billing_engine.license.validation_cache import ValidationCache
from billing_engine.models.outcomes import InvalidReason, LicenseValidation


def _valid(expires_in: timedelta = timedelta(days=1)) -> LicenseValidation:
    return LicenseValidation(
        valid=True,
        tier=LicenseTier.TEAM,
        subscription_id="s1",
        organization_id="org",
        expires_at=datetime.now(UTC) + expires_in,
    )


class TestValidationCache:
    def test_hit_after_put(self) -> None:
        cache = ValidationCache(30)
        cache.put("h1", _valid())
        assert cache.get("h1") is not None
        assert cache.stats() == {"entries": 1, "hits": 1, "misses": 0}

    def test_invalid_results_are_not_cached(self) -> None:
        cache = ValidationCache(30)
        cache.put("h1", LicenseValidation.invalid(InvalidReason.REVOKED))
        assert cache.get("h1") is None

    def test_disabled_cache(self) -> None:
        cache = ValidationCache(0)
        assert not cache.enabled
        cache.put("h1", _valid())
        assert cache.get("h1") is None

    def test_ttl_expiry(self) -> None:
        cache = ValidationCache(30)
        with patch("billing_engine.license.validation_cache.time.monotonic", return_value=1000.0):
            cache.put("h1", _valid())
        with patch("billing_engine.license.validation_cache.time.monotonic", return_value=1031.0):
            assert cache.get("h1") is None
        assert cache.stats()["entries"] == 0

    def test_entry_never_outlives_key(self) -> None:
        cache = ValidationCache(3600)
        cache.put("h1", _valid(expires_in=timedelta(seconds=-1)))
        assert cache.get("h1") is None

    def test_invalidate(self) -> None:
        cache = ValidationCache(30)
        cache.put("h1", _valid())
        cache.put("h2", _valid())
        assert cache.invalidate(["h1", "missing"]) == 1
        assert cache.get("h1") is None
        assert cache.get("h2") is not None
        assert cache.invalidate_all() == 1

    def test_eviction_keeps_size_bounded(self) -> None:
        cache = ValidationCache(30, max_entries=10)
        for i in range(25):
            cache.put(f"h{i}", _valid())
        assert cache.stats()["entries"] <= 10
        assert cache.get("h24") is not None
