"""License key lifecycle: issue, revoke, rotate, extend and validate.

A live key exists for a subscription exactly when the subscription is
``active`` or ``trialing`` at a tier that grants keys.  The manager never
mutates subscriptions; it reacts to the :class:`SubscriptionChange` values
the ledger produces, inside the same transaction as the ledger write.

Key material is signed with Ed25519 (see
:mod:`billing_engine.license.credentials`), stored only as a SHA-256 hash
plus a Fernet-encrypted copy, and returned to the caller exactly once.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config import BillingSettings
from billing_engine.errors import SubscriptionNotFoundError
from billing_engine.license.credentials import (
    CredentialFormatError,
    CredentialSignatureError,
    CredentialSigner,
    CredentialVault,
    claims_expiry,
    display_prefix,
    hash_credential,
    new_nonce,
)
from billing_engine.license.feature_flags import LicenseTier, get_tier_features, grants_license_key
from billing_engine.license.validation_cache import ValidationCache
from billing_engine.models.billing import (
    GRANTING_STATUSES,
    REVOKING_STATUSES,
    SubscriptionChange,
    SubscriptionStatus,
)
from billing_engine.models.outcomes import InvalidReason, IssuedCredential, LicenseValidation
from billing_engine.state.repository import LicenseKeyRepository, SubscriptionRepository
from billing_engine.state.tables import LicenseKeyTable, SubscriptionTable

logger = logging.getLogger(__name__)


class LicenseKeyring:
    """Process-lifetime signing, encryption and cache state.

    One keyring is built at startup and shared by every
    :class:`LicenseManager`; managers themselves are per-transaction.
    """

    def __init__(
        self,
        signer: CredentialSigner,
        vault: CredentialVault,
        cache: ValidationCache | None = None,
    ) -> None:
        self.signer = signer
        self.vault = vault
        self.cache = cache or ValidationCache(0)

    @classmethod
    def from_settings(cls, settings: BillingSettings) -> LicenseKeyring:
        if settings.license_signing_key is not None:
            signer = CredentialSigner.from_hex(settings.license_signing_key.get_secret_value())
        else:
            signer = CredentialSigner.generate()
            logger.warning(
                "No license signing key configured; using an ephemeral key (public=%s). "
                "Credentials issued by this process cannot be verified offline after restart.",
                signer.public_key_hex,
            )
        vault = CredentialVault(settings.credential_encryption_key.get_secret_value())
        return cls(signer, vault, ValidationCache(settings.license_cache_ttl_seconds))


class LicenseManager:
    """Issues and revokes license keys as a function of subscription state.

    Parameters
    ----------
    session:
        The active async session; all writes join the caller's transaction.
    keyring:
        Shared signer, vault and validation cache.
    settings:
        Grace period and default TTL are read from here.
    """

    def __init__(
        self,
        session: AsyncSession,
        keyring: LicenseKeyring,
        settings: BillingSettings,
    ) -> None:
        self._session = session
        self._keyring = keyring
        self._settings = settings
        self._keys = LicenseKeyRepository(session)
        self._subscriptions = SubscriptionRepository(session)
        self._stale_hashes: set[str] = set()

    def _purge(self, key_hashes: list[str]) -> None:
        """Drop cached validations for *key_hashes* now and again at commit.

        A concurrent ``validate`` can still read the pre-commit row and
        re-cache it; the second purge removes that entry.
        """
        self._keyring.cache.invalidate(key_hashes)
        if not self._stale_hashes:
            event.listen(self._session.sync_session, "after_commit", self._purge_after_commit, once=True)
        self._stale_hashes.update(key_hashes)

    def _purge_after_commit(self, _session: object) -> None:
        self._keyring.cache.invalidate(list(self._stale_hashes))
        self._stale_hashes.clear()

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def compute_expiry(self, current_period_end: datetime | None, now: datetime | None = None) -> datetime:
        """Key expiry: period end plus grace, or now plus the default TTL."""
        if current_period_end is not None:
            return current_period_end + timedelta(days=self._settings.license_grace_days)
        now = now or datetime.now(UTC)
        return now + timedelta(days=self._settings.license_default_ttl_days)

    async def apply_transition(self, change: SubscriptionChange) -> IssuedCredential | None:
        """Bring the subscription's key in line with its current state.

        * granting status at a key-granting tier with no live key: issue
        * tier above the live key's tier: rotate (revoke, then issue)
        * period end moved: re-derive ``expires_at`` on the live key
        * canceled, incomplete_expired or unpaid: revoke

        ``past_due`` and ``incomplete`` leave an existing key untouched until
        it expires on its own.

        Returns the newly issued credential, if any.
        """
        status = change.status
        if status in REVOKING_STATUSES:
            await self.revoke(change.subscription_id, reason=f"subscription_{status.value}")
            return None

        if not is_granting(status, change.tier):
            return None

        subscription = await self._subscriptions.get(change.subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription {change.subscription_id} not found")

        now = datetime.now(UTC)
        active = await self._keys.get_active(subscription.id)

        if active is not None and active.expires_at <= now:
            # An expired key is dead but still counts as non-revoked; retire
            # it so a fresh one can take its place.
            await self.revoke(subscription.id, reason="expired_replaced")
            active = None

        if active is None:
            return await self.issue(subscription)

        if LicenseTier.parse(active.tier).ordinal < change.tier.ordinal:
            await self.revoke(subscription.id, reason="tier_upgrade")
            logger.info(
                "Rotating license key for subscription %s: %s -> %s",
                subscription.id,
                active.tier,
                change.tier.value,
            )
            return await self.issue(subscription)

        if change.period_moved:
            await self._extend(active, subscription)
        return None

    async def _extend(self, key: LicenseKeyTable, subscription: SubscriptionTable) -> None:
        new_expiry = self.compute_expiry(subscription.current_period_end)
        if new_expiry == key.expires_at:
            return
        previous = key.expires_at
        await self._keys.extend(key, new_expiry)
        self._purge([key.key_hash])
        logger.info(
            "License key %s expiry moved %s -> %s",
            key.key_prefix,
            previous.isoformat(),
            new_expiry.isoformat(),
        )

    # ------------------------------------------------------------------
    # Issue / revoke
    # ------------------------------------------------------------------

    async def issue(self, subscription: SubscriptionTable) -> IssuedCredential:
        """Mint, persist and return a new credential for *subscription*.

        The returned :class:`IssuedCredential` holds the only plaintext copy
        of the credential.  Callers must ensure no live key exists.
        """
        now = datetime.now(UTC)
        tier = LicenseTier.parse(subscription.tier)
        expires_at = self.compute_expiry(subscription.current_period_end, now)
        key_id = uuid.uuid4().hex

        claims = {
            "kid": key_id,
            "sub": subscription.id,
            "org": subscription.organization_id,
            "tier": tier.value,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "nonce": new_nonce(),
        }
        credential = self._keyring.signer.sign(claims)
        prefix = display_prefix(key_id)

        await self._keys.create(
            key_id=key_id,
            subscription_id=subscription.id,
            organization_id=subscription.organization_id,
            tier=tier.value,
            key_prefix=prefix,
            key_hash=hash_credential(credential),
            encrypted_material=self._keyring.vault.encrypt(credential),
            expires_at=expires_at,
        )
        logger.info(
            "Issued license key %s for subscription %s (tier=%s, expires=%s)",
            prefix,
            subscription.id,
            tier.value,
            expires_at.isoformat(),
        )
        return IssuedCredential(
            key_id=key_id,
            subscription_id=subscription.id,
            organization_id=subscription.organization_id,
            tier=tier,
            key_prefix=prefix,
            expires_at=expires_at,
            credential=credential,
        )

    async def revoke(self, subscription_id: str, reason: str = "revoked") -> bool:
        """Revoke the subscription's live key.

        Idempotent: returns ``False`` when there was nothing to revoke.
        """
        hashes = await self._keys.revoke_active(subscription_id, reason)
        if not hashes:
            return False
        self._purge(hashes)
        logger.info(
            "Revoked %d license key(s) for subscription %s (reason=%s)",
            len(hashes),
            subscription_id,
            reason,
        )
        return True

    async def reissue(self, subscription_id: str) -> IssuedCredential | None:
        """Replace the subscription's live key with a freshly minted one.

        Stored keys are never decrypted for re-delivery: the old credential
        is revoked and the new one is returned exactly once.  Returns
        ``None`` when the subscription is not in a key-granting state.

        Raises
        ------
        SubscriptionNotFoundError
            If the subscription does not exist.
        """
        subscription = await self._subscriptions.get(subscription_id, for_update=True)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        if not is_granting(SubscriptionStatus(subscription.status), LicenseTier.parse(subscription.tier)):
            return None
        await self.revoke(subscription.id, reason="reissued")
        return await self.issue(subscription)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate(self, presented: str) -> LicenseValidation:
        """Check a presented credential against the key store.

        Valid means: the hash is known, the key is not revoked and
        ``expires_at`` is in the future.
        """
        presented = presented.strip()
        if not presented:
            return LicenseValidation.invalid(InvalidReason.MALFORMED)

        key_hash = hash_credential(presented)
        cached = self._keyring.cache.get(key_hash)
        if cached is not None:
            return cached

        row = await self._keys.get_by_hash(key_hash)
        if row is None:
            return LicenseValidation.invalid(InvalidReason.UNKNOWN)
        if row.revoked_at is not None:
            return LicenseValidation.invalid(InvalidReason.REVOKED)
        if row.expires_at <= datetime.now(UTC):
            return LicenseValidation.invalid(InvalidReason.EXPIRED)

        tier = LicenseTier.parse(row.tier)
        result = LicenseValidation(
            valid=True,
            tier=tier,
            subscription_id=row.subscription_id,
            organization_id=row.organization_id,
            expires_at=row.expires_at,
            features=get_tier_features(tier),
        )
        self._keyring.cache.put(key_hash, result)
        return result

    def verify_offline(self, credential: str) -> LicenseValidation:
        """Check signature and embedded expiry without touching the database.

        The embedded expiry is the one stamped at issuance; later extensions
        and revocations are only visible to :meth:`validate`.
        """
        return verify_offline(self._keyring.signer, credential)


def verify_offline(signer: CredentialSigner, credential: str) -> LicenseValidation:
    try:
        claims = signer.verify(credential.strip())
        expires_at = claims_expiry(claims)
    except CredentialSignatureError:
        return LicenseValidation.invalid(InvalidReason.BAD_SIGNATURE)
    except CredentialFormatError:
        return LicenseValidation.invalid(InvalidReason.MALFORMED)

    if expires_at <= datetime.now(UTC):
        return LicenseValidation.invalid(InvalidReason.EXPIRED)
    tier = LicenseTier.parse(claims.get("tier"))
    return LicenseValidation(
        valid=True,
        tier=tier,
        subscription_id=claims.get("sub"),
        organization_id=claims.get("org"),
        expires_at=expires_at,
        features=get_tier_features(tier),
    )


def is_granting(status: SubscriptionStatus, tier: LicenseTier) -> bool:
    """Return ``True`` if a subscription in this state should hold a live key."""
    return status in GRANTING_STATUSES and grants_license_key(tier)
