"""Payment provider integration: Stripe client, retry policy, webhook signatures."""

from billing_engine.provider.retry import RetryConfig, async_retry_with_backoff
from billing_engine.provider.signature import parse_signature_header, verify_signature
from billing_engine.provider.stripe_client import ProviderClient

__all__ = [
    "ProviderClient",
    "RetryConfig",
    "async_retry_with_backoff",
    "parse_signature_header",
    "verify_signature",
]
