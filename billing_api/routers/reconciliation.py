"""Operator endpoints: reconciliation runs, discrepancy review, tier upgrades."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from billing_api.dependencies import (
    KeyringDep,
    ReconciliationServiceDep,
    SessionFactoryDep,
    SettingsDep,
    require_operator,
)
from billing_engine.errors import DowngradeNotAllowedError, SubscriptionNotFoundError
from billing_engine.license.feature_flags import LicenseTier
from billing_engine.models.outcomes import ReconciliationMode
from billing_engine.services.tier_change import upgrade_tier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["reconciliation"], dependencies=[Depends(require_operator)])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RunRequest(BaseModel):
    """Request body for triggering a reconciliation run."""

    mode: ReconciliationMode = Field(
        ReconciliationMode.REPORT,
        description="'report' records discrepancies only; 'auto_fix' also corrects them.",
    )


class ResolveRequest(BaseModel):
    """Request body for resolving a discrepancy."""

    resolved_by: str = Field(..., min_length=1, description="Identity of the person resolving.")
    resolution_note: str = Field(..., min_length=1, description="Explanation of the resolution.")


class TierChangeRequest(BaseModel):
    tier: LicenseTier


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@router.post("/reconciliation/run")
async def run_reconciliation(
    body: RunRequest,
    service: ReconciliationServiceDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    """Run one reconciliation pass against the provider listing.

    Returns ``status=skipped_locked`` when another worker holds the lease.
    """
    if not settings.is_stripe_configured():
        raise HTTPException(status_code=503, detail="Stripe is not configured")
    summary = await service.run(body.mode)
    result = summary.model_dump(mode="json")
    result["total_discrepancies"] = summary.total_discrepancies
    return result


@router.get("/reconciliation/discrepancies")
async def list_discrepancies(
    service: ReconciliationServiceDep,
    unresolved_only: bool = Query(True),
    run_id: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
) -> list[dict[str, Any]]:
    return await service.list_discrepancies(unresolved_only=unresolved_only, run_id=run_id, limit=limit)


@router.post("/reconciliation/discrepancies/{discrepancy_id}/resolve")
async def resolve_discrepancy(
    discrepancy_id: int,
    body: ResolveRequest,
    service: ReconciliationServiceDep,
) -> dict[str, Any]:
    """Mark a reconciliation discrepancy as resolved."""
    result = await service.resolve_discrepancy(discrepancy_id, body.resolved_by, body.resolution_note)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Discrepancy {discrepancy_id} not found")
    return result


@router.get("/reconciliation/stats")
async def reconciliation_stats(service: ReconciliationServiceDep) -> dict[str, Any]:
    return await service.get_stats()


# ---------------------------------------------------------------------------
# Tier changes
# ---------------------------------------------------------------------------


@router.post("/subscriptions/{subscription_id}/tier")
async def change_tier(
    subscription_id: str,
    body: TierChangeRequest,
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    keyring: KeyringDep,
) -> dict[str, Any]:
    """Upgrade a subscription's tier and rotate its license key.

    The new credential, if one was issued, is returned in this response
    only.
    """
    try:
        change, issued = await upgrade_tier(session_factory, settings, keyring, subscription_id, body.tier)
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.to_dict()) from exc
    except DowngradeNotAllowedError as exc:
        raise HTTPException(status_code=409, detail=exc.to_dict()) from exc

    result: dict[str, Any] = {
        "subscription_id": change.subscription_id,
        "previous_tier": change.previous_tier.value if change.previous_tier else None,
        "tier": change.tier.value,
        "license_key": None,
    }
    if issued is not None:
        result["license_key"] = {
            "key_prefix": issued.key_prefix,
            "expires_at": issued.expires_at.isoformat(),
            "credential": issued.credential,
        }
    return result
