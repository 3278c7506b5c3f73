"""Data-subject export and deletion endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query

from billing_api.dependencies import SubjectDataServiceDep, require_operator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing/subjects", tags=["subjects"], dependencies=[Depends(require_operator)])


@router.get("/{organization_id}/export")
async def export_subject(organization_id: str, service: SubjectDataServiceDep) -> dict[str, Any]:
    document = await service.export_subject_data(organization_id)
    return document.model_dump(mode="json")


@router.delete("/{organization_id}")
async def delete_subject(
    organization_id: str,
    service: SubjectDataServiceDep,
    dry_run: bool = Query(True, description="Count only; pass false to delete."),
) -> dict[str, Any]:
    """Delete everything held for *organization_id*.

    Defaults to a dry run; the counts are identical either way.
    """
    counts = await service.delete_subject_data(organization_id, dry_run=dry_run)
    return {
        "organization_id": organization_id,
        "dry_run": counts.dry_run,
        "counts": counts.counts(),
        "total": counts.total,
    }
