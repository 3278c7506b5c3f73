"""Webhook event processor: verify, validate, deduplicate, dispatch.

Each delivery is handled in one atomic unit of work.  The event record is
inserted first; its unique ``external_event_id`` is what makes redelivery a
no-op.  Ledger writes and license-key changes then join the same
transaction, so either everything an event implies is committed together
with its record, or nothing is.

When a handler fails, the whole transaction is rolled back and a second,
separate transaction records the event as ``failed`` so operators can
remediate it.  The provider is acknowledged in either case; only transient
storage faults ask it to retry.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import BillingSettings
from billing_engine.errors import (
    BillingError,
    MalformedPayloadError,
    SignatureInvalidError,
    StorageError,
)
from billing_engine.license.license_manager import LicenseKeyring, LicenseManager
from billing_engine.models.billing import InvoiceStatus, SubscriptionChange, SubscriptionStatus
from billing_engine.models.events import (
    SUPPORTED_EVENT_TYPES,
    CheckoutCompletedEvent,
    InvoiceEvent,
    SubscriptionEvent,
    load_json_object,
    parse_envelope,
    parse_event,
)
from billing_engine.models.outcomes import IssuedCredential, ProcessingOutcome, RejectionReason
from billing_engine.provider.signature import parse_signature_header, verify_signature
from billing_engine.services.billing_service import BillingService
from billing_engine.services.event_store import EventStore
from billing_engine.state.database import transaction

logger = logging.getLogger(__name__)

_INVOICE_STATUS_BY_EVENT: dict[str, InvoiceStatus] = {
    "invoice.paid": InvoiceStatus.PAID,
    "invoice.payment_succeeded": InvoiceStatus.PAID,
    "invoice.payment_failed": InvoiceStatus.FAILED,
    "invoice.voided": InvoiceStatus.VOIDED,
}


def describe_error(exc: BaseException) -> str:
    """Render *exc* as the message stored on a failed event record."""
    if isinstance(exc, BillingError):
        return f"{exc.code.value}: {exc.message}"
    return f"{type(exc).__name__}: {exc}"


class _Dispatch:
    """Mutable accumulator for what one event caused."""

    def __init__(self) -> None:
        self.transitions: list[SubscriptionChange] = []
        self.issued: list[IssuedCredential] = []


class WebhookEventProcessor:
    """Turns raw provider deliveries into ledger and license changes.

    Parameters
    ----------
    session_factory:
        Factory for the per-delivery units of work.
    settings:
        Webhook secret, tolerance window and price-to-tier map.
    keyring:
        Shared license signer, vault and validation cache.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: BillingSettings,
        keyring: LicenseKeyring,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._keyring = keyring

    async def process(
        self,
        raw_payload: bytes,
        signature_header: str,
        timestamp: int | None = None,
    ) -> ProcessingOutcome:
        """Process one delivery and report what happened.

        Parameters
        ----------
        raw_payload:
            The request body exactly as received; the signature covers it
            byte for byte.
        signature_header:
            ``Stripe-Signature`` header value.
        timestamp:
            Signed timestamp, when the transport supplies it separately.
            Defaults to the header's ``t=`` entry.

        Returns
        -------
        ProcessingOutcome
            ``applied``, ``duplicate``, ``rejected`` or ``failed``.  This
            method does not raise for per-event problems.
        """
        header_ts, signatures = parse_signature_header(signature_header or "")
        try:
            verify_signature(
                raw_payload,
                signatures,
                timestamp if timestamp is not None else header_ts,
                self._settings.stripe_webhook_secret.get_secret_value(),
                self._settings.webhook_tolerance_seconds,
            )
        except SignatureInvalidError as exc:
            logger.warning("Rejected webhook delivery: %s", exc.message)
            return ProcessingOutcome.rejected(RejectionReason.SIGNATURE_INVALID, exc.message)

        try:
            data = load_json_object(raw_payload)
            envelope = parse_envelope(data)
        except MalformedPayloadError as exc:
            logger.warning("Rejected malformed webhook payload: %s", exc.message)
            return ProcessingOutcome.rejected(RejectionReason.MALFORMED_PAYLOAD, exc.message)

        if envelope.type not in SUPPORTED_EVENT_TYPES:
            logger.info("Ignoring unsupported event %s (%s)", envelope.id, envelope.type)
            return ProcessingOutcome.rejected(
                RejectionReason.UNSUPPORTED_EVENT_TYPE,
                event_id=envelope.id,
                event_type=envelope.type,
            )

        try:
            event = parse_event(data)
        except MalformedPayloadError as exc:
            logger.warning("Rejected event %s (%s): %s", envelope.id, envelope.type, exc.message)
            return ProcessingOutcome.rejected(
                RejectionReason.MALFORMED_PAYLOAD,
                exc.message,
                event_id=envelope.id,
                event_type=envelope.type,
            )

        return await self._apply(event, data)

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    async def _apply(
        self,
        event: SubscriptionEvent | InvoiceEvent | CheckoutCompletedEvent,
        data: dict[str, Any],
    ) -> ProcessingOutcome:
        dispatch = _Dispatch()
        try:
            async with transaction(self._session_factory) as session:
                claimed = await EventStore(session).record_succeeded(event.id, event.type, data)
                if not claimed:
                    logger.info("Duplicate delivery of event %s (%s)", event.id, event.type)
                    return ProcessingOutcome.duplicate(event.id, event.type)
                await self._dispatch(session, event, dispatch)
        except StorageError as exc:
            if exc.transient:
                logger.warning(
                    "Transient storage fault processing event %s (%s): %s",
                    event.id,
                    event.type,
                    exc.message,
                )
                return ProcessingOutcome.failed(
                    describe_error(exc),
                    event_id=event.id,
                    event_type=event.type,
                    retryable=True,
                )
            return await self._record_failure(event, data, exc)
        except Exception as exc:
            return await self._record_failure(event, data, exc)

        logger.info(
            "Applied event %s (%s): %d transition(s), %d key(s) issued",
            event.id,
            event.type,
            len(dispatch.transitions),
            len(dispatch.issued),
        )
        return ProcessingOutcome.applied(event.id, event.type, dispatch.transitions, dispatch.issued)

    async def _record_failure(
        self,
        event: SubscriptionEvent | InvoiceEvent | CheckoutCompletedEvent,
        data: dict[str, Any],
        exc: Exception,
    ) -> ProcessingOutcome:
        logger.error("Handler failed for event %s (%s)", event.id, event.type, exc_info=exc)
        error = describe_error(exc)
        try:
            async with transaction(self._session_factory) as session:
                recorded = await EventStore(session).record_failed(event.id, event.type, data, error)
        except StorageError as store_exc:
            logger.error(
                "Could not record failure for event %s (%s): %s",
                event.id,
                event.type,
                store_exc.message,
            )
            return ProcessingOutcome.failed(
                error,
                event_id=event.id,
                event_type=event.type,
                retryable=store_exc.transient,
            )

        if not recorded:
            logger.info("Event %s was recorded by a concurrent delivery", event.id)
            return ProcessingOutcome.duplicate(event.id, event.type)
        return ProcessingOutcome.failed(error, event_id=event.id, event_type=event.type)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _dispatch(
        self,
        session: AsyncSession,
        event: SubscriptionEvent | InvoiceEvent | CheckoutCompletedEvent,
        dispatch: _Dispatch,
    ) -> None:
        ledger = BillingService(session, self._settings)
        if isinstance(event, SubscriptionEvent):
            await self._handle_subscription(session, ledger, event, dispatch)
        elif isinstance(event, InvoiceEvent):
            await self._handle_invoice(ledger, event)
        else:
            await self._handle_checkout(ledger, event)

    async def _handle_subscription(
        self,
        session: AsyncSession,
        ledger: BillingService,
        event: SubscriptionEvent,
        dispatch: _Dispatch,
    ) -> None:
        subscription = event.data.object
        forced_status = SubscriptionStatus.CANCELED if event.type == "customer.subscription.deleted" else None
        snapshot = subscription.to_snapshot(self._settings.price_tier_map(), status=forced_status)

        change = await ledger.upsert_subscription(snapshot)
        dispatch.transitions.append(change)

        issued = await LicenseManager(session, self._keyring, self._settings).apply_transition(change)
        if issued is not None:
            dispatch.issued.append(issued)

    async def _handle_invoice(self, ledger: BillingService, event: InvoiceEvent) -> None:
        invoice = event.data.object
        if not invoice.subscription:
            # One-off invoices have no subscription to attach to.
            logger.info("Invoice %s has no subscription; nothing to record", invoice.id)
            return
        await ledger.record_invoice(invoice, _INVOICE_STATUS_BY_EVENT[event.type])

    async def _handle_checkout(self, ledger: BillingService, event: CheckoutCompletedEvent) -> None:
        checkout = event.data.object
        if not checkout.customer:
            logger.info("Checkout session %s completed without a customer", checkout.id)
            return
        organization_id = checkout.metadata.get("organization_id") or checkout.client_reference_id
        await ledger.ensure_customer(checkout.customer, organization_id, checkout.email())
