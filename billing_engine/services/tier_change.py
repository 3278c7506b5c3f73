"""Operator-initiated tier upgrades.

Upgrading changes the ledger tier and rotates the license key in one
transaction, so a caller never observes the new tier paired with the old
key.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import BillingSettings
from billing_engine.license.feature_flags import LicenseTier
from billing_engine.license.license_manager import LicenseKeyring, LicenseManager
from billing_engine.models.billing import SubscriptionChange
from billing_engine.models.outcomes import IssuedCredential
from billing_engine.services.billing_service import BillingService
from billing_engine.state.database import transaction

logger = logging.getLogger(__name__)


async def upgrade_tier(
    session_factory: async_sessionmaker[AsyncSession],
    settings: BillingSettings,
    keyring: LicenseKeyring,
    subscription_id: str,
    new_tier: LicenseTier,
) -> tuple[SubscriptionChange, IssuedCredential | None]:
    """Raise *subscription_id* to *new_tier* and apply license policy.

    Raises
    ------
    SubscriptionNotFoundError
        If the subscription does not exist.
    DowngradeNotAllowedError
        If *new_tier* is not strictly above the current tier.
    """
    async with transaction(session_factory) as session:
        change = await BillingService(session, settings).change_tier(subscription_id, new_tier)
        issued = await LicenseManager(session, keyring, settings).apply_transition(change)
    return change, issued
