"""Append-only store of inbound provider events.

The unique index on ``webhook_events.external_event_id`` makes this the
idempotency backbone of webhook processing: the first insert for an event
id wins, and every later delivery of the same event observes the existing
row and is reported as a duplicate.  Records are never updated.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.models.outcomes import ProcessingStatus
from billing_engine.state.repository import WebhookEventRepository
from billing_engine.state.tables import WebhookEventTable

logger = logging.getLogger(__name__)

# Error messages stored on failed records are truncated to this length.
_MAX_ERROR_LENGTH = 2000


class EventStore:
    """Write-once ledger of webhook deliveries.

    Parameters
    ----------
    session:
        Active database session; writes join the caller's transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._repo = WebhookEventRepository(session)

    async def record_succeeded(
        self,
        external_event_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> bool:
        """Claim *external_event_id* for processing.

        Returns ``False`` if a record for the event already exists, in which
        case nothing was written.
        """
        return await self._repo.insert_once(
            external_event_id,
            event_type,
            payload,
            ProcessingStatus.SUCCEEDED.value,
        )

    async def record_failed(
        self,
        external_event_id: str,
        event_type: str,
        payload: dict[str, Any],
        error_message: str,
    ) -> bool:
        """Record that handling *external_event_id* failed.

        Returns ``False`` if a concurrent delivery already recorded the event.
        """
        inserted = await self._repo.insert_once(
            external_event_id,
            event_type,
            payload,
            ProcessingStatus.FAILED.value,
            error_message[:_MAX_ERROR_LENGTH],
        )
        if inserted:
            logger.warning(
                "Recorded failed webhook event %s (%s): %s",
                external_event_id,
                event_type,
                error_message,
            )
        return inserted

    async def get(self, external_event_id: str) -> WebhookEventTable | None:
        return await self._repo.get_by_external_id(external_event_id)

    async def list_failed(self, limit: int = 100) -> list[WebhookEventTable]:
        """Return failed events, newest first, for operator remediation."""
        return await self._repo.list_events(ProcessingStatus.FAILED.value, limit=limit)

    async def count(self, status: ProcessingStatus | None = None) -> int:
        return await self._repo.count(status.value if status is not None else None)
