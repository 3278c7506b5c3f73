"""Strict schemas for inbound provider events.

Every webhook body is validated against a discriminated union keyed on the
event ``type`` before any handler sees it.  Provider objects carry many more
fields than the ledger needs; unknown fields are ignored, but the fields the
ledger relies on are required and typed.

The same object schemas are reused by the reconciliation job to normalise
subscriptions returned from the provider's listing API, so both paths feed
the ledger through one :class:`SubscriptionSnapshot` shape.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from billing_engine.errors import MalformedPayloadError
from billing_engine.license.feature_flags import LicenseTier
from billing_engine.models.billing import SubscriptionSnapshot, SubscriptionStatus

SUBSCRIPTION_EVENT_TYPES = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)
INVOICE_EVENT_TYPES = (
    "invoice.paid",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
    "invoice.voided",
)
CHECKOUT_EVENT_TYPES = ("checkout.session.completed",)

SUPPORTED_EVENT_TYPES: frozenset[str] = frozenset(
    SUBSCRIPTION_EVENT_TYPES + INVOICE_EVENT_TYPES + CHECKOUT_EVENT_TYPES
)


def epoch_to_datetime(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


# ---------------------------------------------------------------------------
# Provider objects
# ---------------------------------------------------------------------------


class PriceRef(_ProviderModel):
    id: str = Field(..., min_length=1)


class SubscriptionItem(_ProviderModel):
    price: PriceRef | None = None
    current_period_end: int | None = None


class SubscriptionItems(_ProviderModel):
    data: list[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(_ProviderModel):
    id: str = Field(..., min_length=1)
    customer: str = Field(..., min_length=1)
    status: SubscriptionStatus
    current_period_end: int | None = None
    cancel_at_period_end: bool = False
    canceled_at: int | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    items: SubscriptionItems | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalise_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return SubscriptionStatus.from_provider(value)
            except ValueError:
                return value
        return value

    def period_end(self) -> datetime | None:
        """Return the period end, falling back to the first item's period.

        Newer provider API versions report the billing period per item
        rather than on the subscription itself.
        """
        if self.current_period_end is not None:
            return epoch_to_datetime(self.current_period_end)
        if self.items:
            for item in self.items.data:
                if item.current_period_end is not None:
                    return epoch_to_datetime(item.current_period_end)
        return None

    def price_ids(self) -> list[str]:
        if not self.items:
            return []
        return [item.price.id for item in self.items.data if item.price is not None]

    def to_snapshot(
        self,
        price_tier_map: dict[str, str],
        *,
        status: SubscriptionStatus | None = None,
    ) -> SubscriptionSnapshot:
        return SubscriptionSnapshot(
            external_subscription_id=self.id,
            external_customer_id=self.customer,
            status=status or self.status,
            tier=derive_tier(self, price_tier_map),
            current_period_end=self.period_end(),
            cancel_at_period_end=self.cancel_at_period_end,
            canceled_at=epoch_to_datetime(self.canceled_at),
            organization_id=self.metadata.get("organization_id") or None,
        )


class InvoiceObject(_ProviderModel):
    id: str = Field(..., min_length=1)
    customer: str | None = None
    subscription: str | None = None
    amount_paid: int = 0
    amount_due: int = 0
    status: str | None = None

    def amount_for(self, paid: bool) -> int:
        return self.amount_paid if paid and self.amount_paid else self.amount_due


class CustomerDetails(_ProviderModel):
    email: str | None = None


class CheckoutSessionObject(_ProviderModel):
    id: str = Field(..., min_length=1)
    customer: str | None = None
    subscription: str | None = None
    client_reference_id: str | None = None
    customer_email: str | None = None
    customer_details: CustomerDetails | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    def email(self) -> str | None:
        if self.customer_details and self.customer_details.email:
            return self.customer_details.email
        return self.customer_email


def derive_tier(subscription: SubscriptionObject, price_tier_map: dict[str, str]) -> LicenseTier:
    """Resolve a subscription's tier.

    Order: ``metadata.tier``, then the configured price-id map, then
    community.
    """
    meta_tier = subscription.metadata.get("tier")
    if meta_tier:
        return LicenseTier.parse(meta_tier)
    for price_id in subscription.price_ids():
        mapped = price_tier_map.get(price_id)
        if mapped:
            return LicenseTier.parse(mapped)
    return LicenseTier.COMMUNITY


# ---------------------------------------------------------------------------
# Event envelopes
# ---------------------------------------------------------------------------


class EventEnvelope(_ProviderModel):
    """Minimal shape every provider event shares."""

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    created: int | None = None


class _SubscriptionData(_ProviderModel):
    object: SubscriptionObject


class _InvoiceData(_ProviderModel):
    object: InvoiceObject


class _CheckoutData(_ProviderModel):
    object: CheckoutSessionObject


class SubscriptionEvent(_ProviderModel):
    id: str = Field(..., min_length=1)
    type: Literal[
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    ]
    created: int | None = None
    data: _SubscriptionData


class InvoiceEvent(_ProviderModel):
    id: str = Field(..., min_length=1)
    type: Literal[
        "invoice.paid",
        "invoice.payment_succeeded",
        "invoice.payment_failed",
        "invoice.voided",
    ]
    created: int | None = None
    data: _InvoiceData


class CheckoutCompletedEvent(_ProviderModel):
    id: str = Field(..., min_length=1)
    type: Literal["checkout.session.completed"]
    created: int | None = None
    data: _CheckoutData


ProviderEvent = Annotated[
    Union[SubscriptionEvent, InvoiceEvent, CheckoutCompletedEvent],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[Any] = TypeAdapter(ProviderEvent)


def load_json_object(raw_payload: bytes | str) -> dict[str, Any]:
    """Decode a webhook body into a JSON object.

    Raises
    ------
    MalformedPayloadError
        If the body is not valid UTF-8 JSON or not an object.
    """
    try:
        data = json.loads(raw_payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError(f"Invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedPayloadError("Event body must be a JSON object")
    return data


def parse_envelope(data: dict[str, Any]) -> EventEnvelope:
    try:
        return EventEnvelope.model_validate(data)
    except ValidationError as exc:
        raise MalformedPayloadError(f"Invalid event envelope: {exc.error_count()} error(s)") from exc


def parse_event(data: dict[str, Any]) -> SubscriptionEvent | InvoiceEvent | CheckoutCompletedEvent:
    """Validate a decoded event against the supported event schemas.

    Raises
    ------
    MalformedPayloadError
        If the event does not match the schema for its type.
    """
    try:
        return _event_adapter.validate_python(data)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise MalformedPayloadError(
            f"Event failed schema validation at {location or '<root>'}: {first.get('msg', 'invalid')}"
        ) from exc
