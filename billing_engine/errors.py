"""Error taxonomy for the billing engine.

Every domain failure carries an :class:`ErrorCode` so that the transport
layer and operator tooling can map it without string matching.  Outcomes
that are not failures (a duplicate webhook delivery, for instance) are
modelled as results, never raised.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Stable identifiers for billing failures."""

    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
    EVENT_DUPLICATE = "EVENT_DUPLICATE"
    HANDLER_FAILURE = "HANDLER_FAILURE"
    DOWNGRADE_NOT_ALLOWED = "DOWNGRADE_NOT_ALLOWED"
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
    RECONCILIATION_SKIPPED_STALE = "RECONCILIATION_SKIPPED_STALE"
    PROVIDER_API_ERROR = "PROVIDER_API_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    LEASE_UNAVAILABLE = "LEASE_UNAVAILABLE"


class BillingError(Exception):
    """Base class for all billing engine errors."""

    code: ErrorCode = ErrorCode.HANDLER_FAILURE

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code.value)
        self.message = message or self.code.value

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code.value, "message": self.message}


class SignatureInvalidError(BillingError):
    """Raised when a webhook signature or timestamp fails verification."""

    code = ErrorCode.SIGNATURE_INVALID


class MalformedPayloadError(BillingError):
    """Raised when a webhook payload does not match a known event schema."""

    code = ErrorCode.MALFORMED_PAYLOAD


class HandlerFailureError(BillingError):
    """Raised by event handlers for business-level failures."""

    code = ErrorCode.HANDLER_FAILURE


class DowngradeNotAllowedError(BillingError):
    """Raised when a tier change would not strictly increase the tier."""

    code = ErrorCode.DOWNGRADE_NOT_ALLOWED


class SubscriptionNotFoundError(BillingError):
    """Raised when a subscription cannot be located."""

    code = ErrorCode.SUBSCRIPTION_NOT_FOUND


class StaleRecordError(BillingError):
    """Raised when an optimistic ``updated_at`` guard detects a newer write."""

    code = ErrorCode.RECONCILIATION_SKIPPED_STALE


class ProviderAPIError(BillingError):
    """Raised when the payment provider cannot be reached after retries."""

    code = ErrorCode.PROVIDER_API_ERROR

    def __init__(self, message: str = "", *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class StorageError(BillingError):
    """Raised when a unit of work fails at the storage layer and is rolled back.

    ``transient`` marks faults (lost connection, lock timeout) where the same
    work is expected to succeed if retried later.
    """

    code = ErrorCode.STORAGE_ERROR

    def __init__(self, message: str = "", *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class LeaseUnavailableError(BillingError):
    """Raised when a job lease is held by another worker."""

    code = ErrorCode.LEASE_UNAVAILABLE
