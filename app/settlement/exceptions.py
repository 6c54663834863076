"""
Settlement-specific exceptions.

Exception Hierarchy:
    SettlementError (base for the settlement domain)
    ├── ProviderNotSettleableError - No payout destination for the provider
    └── SettlementInProgressError - Another worker holds the settlement claim

    SettlementValidationError - Bad input, rejected before any side effect
        (inherits ValidationError)
    TransactionNotFoundError - Transaction lookup failures (inherits NotFoundError)
    NotAuthorizedError - Caller is not the transaction's provider
        (inherits PermissionDeniedError)
    IllegalTransitionError - State machine guard violation (inherits ConflictError)
    EscrowNotDueError - Release attempted before the deadline (inherits ConflictError)
    InvalidOfferStateError - Offer cannot be paid (inherits ConflictError)

    GatewayError - Base for all payment gateway errors (inherits ExternalServiceError)
        ├── GatewayRequestError - Gateway rejected the request (permanent)
        │   └── GatewayDeclinedError - Payer's instrument declined (permanent)
        ├── GatewayAuthenticationError - Credentials rejected (permanent)
        ├── GatewayCaptureMismatchError - Captured amount differs from the charge (permanent)
        ├── GatewayCapturePendingError - Capture accepted, not yet completed (retry later)
        ├── GatewayRateLimitError - Rate limited (transient, retry)
        ├── GatewayUnavailableError - Network failure or 5xx (transient, retry)
        └── GatewayTimeoutError - No answer in time (retryable for reads only)

Usage:
    from settlement.exceptions import GatewayError, IllegalTransitionError

    try:
        gateway.capture_order(order_id)
    except GatewayError as e:
        if e.is_retryable:
            schedule_retry()
        else:
            surface_to_caller(e)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Settlement Domain Exceptions
# =============================================================================


class SettlementError(BaseApplicationError):
    """Base exception for settlement domain errors."""

    default_error_code: str = "SETTLEMENT_ERROR"


class SettlementValidationError(ValidationError):
    """
    Input failed validation.

    Raised for negative amounts, percentages outside [0, 100], refund
    amounts above what was charged, and similar. Always raised before any
    gateway call or database write.
    """


class TransactionNotFoundError(NotFoundError):
    """Raised when a transaction id does not resolve to a record."""

    default_error_code: str = "TRANSACTION_NOT_FOUND"


class NotAuthorizedError(PermissionDeniedError):
    """
    Raised when a provider acts on a transaction that is not theirs.

    Example:
        if tx.provider_id != provider_id:
            raise NotAuthorizedError(
                "Only the transaction's provider may approve it",
                details={"transaction_id": str(tx.pk)},
            )
    """

    default_error_code: str = "NOT_TRANSACTION_PROVIDER"


class IllegalTransitionError(ConflictError):
    """
    Raised when a transition does not match the transaction's current state.

    Also raised when a guarded write loses a race: the record moved on
    between read and write. details["concurrent"] is True in that case and
    details["current_status"] holds the state the winner left behind, which
    lets callers tell "already settled" from other conflicts.
    """

    default_error_code: str = "ILLEGAL_TRANSITION"


class EscrowNotDueError(ConflictError):
    """Raised when an automatic release runs before the review deadline."""

    default_error_code: str = "ESCROW_NOT_DUE"


class InvalidOfferStateError(ConflictError):
    """Raised when an offer cannot be checked out in its current state."""

    default_error_code: str = "INVALID_OFFER_STATE"


class ProviderNotSettleableError(SettlementError):
    """
    Raised when a provider has no payout destination configured.

    The transaction is left where it is so an operator can settle it by
    hand; this is never swallowed.
    """

    default_error_code: str = "PROVIDER_NOT_SETTLEABLE"


class SettlementInProgressError(SettlementError):
    """Raised when another worker currently holds a transaction's settlement claim."""

    default_error_code: str = "SETTLEMENT_IN_PROGRESS"


# =============================================================================
# Gateway Exceptions
# =============================================================================


class GatewayError(ExternalServiceError):
    """
    Base exception for payment gateway errors.

    Carries the gateway's own error detail when available:
    - gateway_name: Gateway error name (e.g. UNPROCESSABLE_ENTITY)
    - issue: First detail issue code (e.g. INSTRUMENT_DECLINED)
    - debug_id: Gateway correlation id for support tickets
    - status_code: HTTP status of the failed response

    is_retryable is a class default that individual raises may override
    (timeouts are retryable for reads but not for writes).
    """

    default_error_code: str = "GATEWAY_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        gateway_name: str | None = None,
        issue: str | None = None,
        debug_id: str | None = None,
        status_code: int | None = None,
        is_retryable: bool | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if gateway_name:
            details["gateway_name"] = gateway_name
        if issue:
            details["issue"] = issue
        if debug_id:
            details["debug_id"] = debug_id
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, error_code=error_code, details=details)
        self.gateway_name = gateway_name
        self.issue = issue
        self.debug_id = debug_id
        self.status_code = status_code
        if is_retryable is not None:
            self.is_retryable = is_retryable


# -----------------------------------------------------------------------------
# Permanent Errors (do not retry)
# -----------------------------------------------------------------------------


class GatewayRequestError(GatewayError):
    """
    The gateway understood the request and refused it.

    Common causes:
    - Payee merchant not eligible for marketplace orders
    - Order already captured or voided
    - Malformed amount or currency
    """

    default_error_code: str = "GATEWAY_REQUEST_REJECTED"


class GatewayDeclinedError(GatewayRequestError):
    """The payer's instrument was declined at capture."""

    default_error_code: str = "GATEWAY_DECLINED"


class GatewayAuthenticationError(GatewayError):
    """Client credentials were rejected by the gateway."""

    default_error_code: str = "GATEWAY_AUTHENTICATION_FAILED"


class GatewayCaptureMismatchError(GatewayError):
    """
    The gateway reported a completed capture that does not match the charge.

    Raised when the captured amount or currency differs from the
    transaction's client_total. The transaction is not moved to escrow.
    """

    default_error_code: str = "GATEWAY_CAPTURE_MISMATCH"


# -----------------------------------------------------------------------------
# Transient Errors (retry with backoff)
# -----------------------------------------------------------------------------


class GatewayRateLimitError(GatewayError):
    """Too many requests; back off before retrying."""

    default_error_code: str = "GATEWAY_RATE_LIMITED"
    is_retryable: bool = True


class GatewayUnavailableError(GatewayError):
    """
    The gateway could not be reached or answered with a server error.

    Also raised without a network call when the gateway circuit is open.
    """

    default_error_code: str = "GATEWAY_UNAVAILABLE"
    is_retryable: bool = True


class GatewayTimeoutError(GatewayError):
    """
    The gateway did not answer within the configured timeout.

    For a write the outcome is unknown: the gateway may have acted. Such
    timeouts are raised with is_retryable=False and need reconciliation
    against the gateway before anything is retried.
    """

    default_error_code: str = "GATEWAY_TIMEOUT"
    is_retryable: bool = True


class GatewayCapturePendingError(GatewayError):
    """
    The gateway accepted the capture but has not completed it.

    The transaction stays PENDING; reconciliation or the capture webhook
    moves it on once the gateway settles the capture.
    """

    default_error_code: str = "GATEWAY_CAPTURE_PENDING"
    is_retryable: bool = True
