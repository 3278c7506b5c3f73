"""Outbound Stripe calls with bounded timeouts and backoff retry.

The Stripe SDK is synchronous; every call runs in a worker thread under
``asyncio.wait_for`` so no caller waits longer than
``stripe_timeout_seconds`` per attempt.  Transient failures (connection
errors, rate limiting, 5xx responses, timeouts) are retried with
exponential backoff and surface as :class:`ProviderAPIError` once the
budget is spent.

This client is used by the reconciliation job and operator tooling only.
Webhook handling never calls the provider.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from billing_engine.config import BillingSettings
from billing_engine.errors import ProviderAPIError
from billing_engine.provider.retry import RetryConfig, async_retry_with_backoff

logger = logging.getLogger(__name__)


def _to_plain(obj: Any) -> dict[str, Any]:
    """Convert a Stripe object into a plain ``dict``."""
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _transient_errors() -> tuple[type[Exception], ...]:
    import stripe

    return (
        stripe.APIConnectionError,
        stripe.RateLimitError,
        stripe.APIError,
        TimeoutError,
    )


class ProviderClient:
    """Thin async facade over the Stripe SDK.

    Parameters
    ----------
    settings:
        Billing settings holding the Stripe secret key and timeouts.
    retry_config:
        Backoff parameters; derived from *settings* when omitted.
    """

    def __init__(self, settings: BillingSettings, retry_config: RetryConfig | None = None) -> None:
        self._settings = settings
        self._retry = retry_config or RetryConfig.from_settings(settings)
        self._timeout = settings.stripe_timeout_seconds

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run one SDK call with timeout and retry, mapping failures."""
        import stripe

        async def _attempt() -> Any:
            return await asyncio.wait_for(
                asyncio.to_thread(functools.partial(fn, *args, **kwargs)),
                timeout=self._timeout,
            )

        try:
            return await async_retry_with_backoff(
                _attempt,
                self._retry,
                _transient_errors(),
                operation=f"Stripe {operation}",
            )
        except _transient_errors() as exc:
            logger.error("Stripe %s failed after %d retries: %s", operation, self._retry.max_retries, exc)
            raise ProviderAPIError(f"Stripe {operation} failed: {exc}", retryable=True) from exc
        except stripe.StripeError as exc:
            logger.error("Stripe %s rejected: %s", operation, exc)
            raise ProviderAPIError(f"Stripe {operation} rejected: {exc}", retryable=False) from exc

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    async def create_customer(
        self,
        organization_id: str,
        email: str | None = None,
    ) -> dict[str, Any]:
        stripe = self._get_stripe()
        params: dict[str, Any] = {"metadata": {"organization_id": organization_id}}
        if email:
            params["email"] = email
        customer = await self._call("customer.create", stripe.Customer.create, **params)
        return _to_plain(customer)

    async def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        stripe = self._get_stripe()
        customer = await self._call("customer.retrieve", stripe.Customer.retrieve, customer_id)
        return _to_plain(customer)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        stripe = self._get_stripe()
        subscription = await self._call(
            "subscription.create",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            metadata=metadata or {},
        )
        return _to_plain(subscription)

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        stripe = self._get_stripe()
        subscription = await self._call("subscription.retrieve", stripe.Subscription.retrieve, subscription_id)
        return _to_plain(subscription)

    async def update_subscription(self, subscription_id: str, **params: Any) -> dict[str, Any]:
        stripe = self._get_stripe()
        subscription = await self._call("subscription.modify", stripe.Subscription.modify, subscription_id, **params)
        return _to_plain(subscription)

    async def cancel_subscription(self, subscription_id: str) -> dict[str, Any]:
        stripe = self._get_stripe()
        subscription = await self._call("subscription.cancel", stripe.Subscription.cancel, subscription_id)
        return _to_plain(subscription)

    async def list_subscriptions(
        self,
        status: str = "all",
        page_size: int | None = None,
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield pages of subscriptions using cursor pagination.

        Each page is fetched with its own retry budget.  A page that cannot
        be fetched raises :class:`ProviderAPIError`, ending the iteration.
        """
        stripe = self._get_stripe()
        limit = page_size or self._settings.reconciliation_page_size
        cursor: str | None = None

        while True:
            params: dict[str, Any] = {"status": status, "limit": limit}
            if cursor is not None:
                params["starting_after"] = cursor
            page = await self._call("subscription.list", stripe.Subscription.list, **params)

            items = [_to_plain(item) for item in page["data"]]
            if items:
                yield items
            if not page.get("has_more") or not items:
                return
            cursor = items[-1]["id"]

    # ------------------------------------------------------------------
    # Hosted sessions (pass-through)
    # ------------------------------------------------------------------

    async def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        *,
        organization_id: str,
        customer_id: str | None = None,
        customer_email: str | None = None,
    ) -> dict[str, Any]:
        stripe = self._get_stripe()
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": organization_id,
            "metadata": {"organization_id": organization_id},
            "subscription_data": {"metadata": {"organization_id": organization_id}},
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email
        session = await self._call("checkout.create", stripe.checkout.Session.create, **params)
        return _to_plain(session)

    async def create_portal_session(self, customer_id: str, return_url: str) -> dict[str, Any]:
        stripe = self._get_stripe()
        session = await self._call(
            "portal.create",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return _to_plain(session)
