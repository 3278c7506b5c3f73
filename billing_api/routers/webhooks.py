"""Stripe webhook receiver.

The body is read raw because the signature covers it byte for byte.  The
response tells the provider only whether to retry: any definitive outcome
(including an event that was recorded as failed) is acknowledged with 200;
a bad signature is 400; a transient storage fault is 503.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from billing_api.dependencies import WebhookProcessorDep
from billing_engine.models.outcomes import OutcomeKind, ProcessingOutcome, RejectionReason

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


def status_code_for(outcome: ProcessingOutcome) -> int:
    """Map a processing outcome onto the HTTP status the provider sees."""
    if outcome.kind == OutcomeKind.REJECTED and outcome.reason == RejectionReason.SIGNATURE_INVALID:
        return 400
    if outcome.kind == OutcomeKind.FAILED and outcome.retryable:
        return 503
    return 200


@router.post("/webhooks")
async def stripe_webhook(request: Request, processor: WebhookProcessorDep) -> JSONResponse:
    """Receive a Stripe event delivery.

    Authenticated by the ``Stripe-Signature`` header, not by operator
    credentials.
    """
    body = await request.body()
    signature = request.headers.get("stripe-signature", "")

    outcome = await processor.process(body, signature)
    content: dict[str, Any] = outcome.summary()
    status_code = status_code_for(outcome)
    if status_code != 200:
        logger.info("Webhook %s answered %d (%s)", outcome.event_id or "<unknown>", status_code, outcome.kind.value)
    return JSONResponse(status_code=status_code, content=content)
