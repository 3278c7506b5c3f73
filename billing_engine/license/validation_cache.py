"""In-process cache of successful license validations.

Keys are credential hashes.  Only ``valid`` results are cached, and an
entry never outlives either the configured TTL or the key's own
``expires_at``, whichever comes first.  Revocation and rotation purge the
affected hashes in the same process; other processes see a revocation once
their own TTL lapses.

Thread-safe via a threading lock; expired entries are evicted lazily on
access.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime

from billing_engine.models.outcomes import LicenseValidation

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _CacheEntry:
    value: LicenseValidation
    cached_until: float
    key_expires_at: datetime
    created_at: float = field(default_factory=time.monotonic)


class ValidationCache:
    """Hash-keyed TTL cache for :class:`LicenseValidation` results.

    Parameters
    ----------
    ttl_seconds:
        Upper bound on how long a validation is served from memory.  A value
        of zero or less disables the cache.
    max_entries:
        Maximum number of entries; the oldest are evicted first.
    """

    def __init__(self, ttl_seconds: float = 30.0, *, max_entries: int = 10_000) -> None:
        self._store: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._hits = 0
        self._misses = 0

    @property
    def enabled(self) -> bool:
        return self._ttl > 0

    def get(self, key_hash: str) -> LicenseValidation | None:
        if not self.enabled:
            return None

        with self._lock:
            entry = self._store.get(key_hash)
            if entry is None:
                self._misses += 1
                return None

            if time.monotonic() > entry.cached_until or datetime.now(UTC) >= entry.key_expires_at:
                del self._store[key_hash]
                self._misses += 1
                return None

            self._hits += 1
            return entry.value

    def put(self, key_hash: str, value: LicenseValidation) -> None:
        if not self.enabled or not value.valid or value.expires_at is None:
            return

        now = time.monotonic()
        with self._lock:
            if len(self._store) >= self._max_entries and key_hash not in self._store:
                self._evict_oldest()
            self._store[key_hash] = _CacheEntry(
                value=value,
                cached_until=now + self._ttl,
                key_expires_at=value.expires_at,
                created_at=now,
            )

    def invalidate(self, key_hashes: list[str] | tuple[str, ...]) -> int:
        """Drop the given hashes.  Returns the number of entries removed."""
        removed = 0
        with self._lock:
            for key_hash in key_hashes:
                if self._store.pop(key_hash, None) is not None:
                    removed += 1
        if removed:
            logger.debug("Validation cache purged %d entr(y/ies)", removed)
        return removed

    def invalidate_all(self) -> int:
        with self._lock:
            count = len(self._store)
            self._store.clear()
        return count

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {"entries": len(self._store), "hits": self._hits, "misses": self._misses}

    def _evict_oldest(self) -> None:
        # Caller holds the lock.
        to_remove = max(1, len(self._store) // 10)
        oldest = sorted(self._store.items(), key=lambda item: item[1].created_at)[:to_remove]
        for key, _ in oldest:
            del self._store[key]
