"""
Gateway client interface, result types and shared helpers.

The settlement engine talks to the payment gateway only through
GatewayClient. Two implementations exist:

    - PayPalGatewayClient: real REST client (settlement.gateway.paypal)
    - MockGatewayClient: deterministic stub (settlement.gateway.mock)

Pick one with settlement.gateway.get_gateway_client(); never branch on
"mock or not" inside calling code.

Money is passed as Decimal and leaves the process as a decimal string with
an explicit currency code.
"""

from __future__ import annotations

import abc
import hashlib
import random
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from django.conf import settings


# Capture statuses (Orders v2 capture.status)
CAPTURE_COMPLETED = "COMPLETED"
CAPTURE_PENDING = "PENDING"
CAPTURE_REFUSED_STATUSES = frozenset({"DECLINED", "FAILED"})

PAYOUT_SETTLED = "SUCCESS"

# Payout batch and item statuses that mean the provider was not paid
PAYOUT_FAILED_STATUSES = frozenset(
    {"DENIED", "FAILED", "RETURNED", "BLOCKED", "REFUNDED", "REVERSED", "CANCELED"}
)


# =============================================================================
# Parameter Types
# =============================================================================


@dataclass
class OrderMetadata:
    """
    Descriptive data attached to a gateway order.

    Attributes:
        custom_id: Our transaction id, echoed back by the gateway
        reference_id: Offer id the payment settles
        description: Shown to the payer at approval
        item_name: Line item label for marketplace orders
        return_url: Where the payer lands after approving
        cancel_url: Where the payer lands after cancelling
    """

    custom_id: str
    reference_id: str
    description: str = ""
    item_name: str = ""
    return_url: str | None = None
    cancel_url: str | None = None

    def __post_init__(self):
        if not self.custom_id:
            raise ValueError("custom_id is required")
        if not self.reference_id:
            raise ValueError("reference_id is required")
        # Gateway limit on description length
        self.description = (self.description or "")[:127]


@dataclass
class WebhookSignature:
    """
    Transmission headers a gateway webhook is signed with.

    Built from the request headers; any missing header makes the
    signature incomplete and the event is rejected.
    """

    transmission_id: str
    transmission_time: str
    transmission_sig: str
    cert_url: str = ""
    auth_algo: str = ""

    HEADERS = {
        "transmission_id": "paypal-transmission-id",
        "transmission_time": "paypal-transmission-time",
        "transmission_sig": "paypal-transmission-sig",
        "cert_url": "paypal-cert-url",
        "auth_algo": "paypal-auth-algo",
    }

    @classmethod
    def from_headers(cls, headers) -> WebhookSignature:
        """Read the signature from a case-insensitive header mapping."""
        values = {name: headers.get(header, "") or "" for name, header in cls.HEADERS.items()}
        return cls(**values)

    @property
    def is_complete(self) -> bool:
        return bool(self.transmission_id and self.transmission_time and self.transmission_sig)


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class OrderResult:
    """Result of creating an order."""

    order_id: str
    status: str
    approve_url: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class CaptureResult:
    """Result of capturing an order."""

    order_id: str
    capture_id: str
    status: str
    amount: Decimal | None = None
    currency: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    """Result of refunding a capture."""

    refund_id: str
    status: str
    amount: Decimal | None = None
    currency: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class PayoutResult:
    """
    Result of creating or looking up a payout batch.

    status is the batch status; item_status is the status of the single
    payout item, which is where a denied or returned payout shows up.
    """

    batch_id: str
    status: str
    item_status: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def is_settled(self) -> bool:
        return self.status == PAYOUT_SETTLED and self.item_status in (None, PAYOUT_SETTLED)

    @property
    def is_failed(self) -> bool:
        return (
            self.status in PAYOUT_FAILED_STATUSES
            or self.item_status in PAYOUT_FAILED_STATUSES
        )


@dataclass
class ReleaseResult:
    """Result of releasing a delayed-disbursement order's held funds."""

    order_id: str
    status: str
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class OrderStatusResult:
    """
    Gateway view of an order.

    capture_id is set once the order has a capture, which is what
    reconciliation uses to recover a capture whose local write was lost.
    Only a COMPLETED capture means the money moved.
    """

    order_id: str
    status: str
    capture_id: str | None = None
    capture_status: str | None = None
    capture_amount: Decimal | None = None
    capture_currency: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def is_captured(self) -> bool:
        return (
            self.status == "COMPLETED"
            and bool(self.capture_id)
            and self.capture_status == CAPTURE_COMPLETED
        )


# =============================================================================
# Idempotency Key Generation
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for gateway calls.

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    Keys are deterministic: the same operation on the same entity yields
    the same key, so a repeated call is recognised by the gateway instead
    of being executed twice. Bump attempt to deliberately start over.

    Example:
        key = IdempotencyKeyGenerator.generate("capture", tx.id)
        # "capture:550e8400-e29b-41d4-a716-446655440000:1:a1b2c3d4"
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str,
        attempt: int = 1,
    ) -> str:
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]
        return f"{operation}:{entity_str}:{attempt}:{short_hash}"


def payout_batch_id(transaction_id: uuid.UUID | str) -> str:
    """
    Sender batch id for a transaction's payout.

    Derived from the transaction id; the gateway refuses a second batch
    with the same id, which stops a retried settlement from paying twice.
    """
    return f"settlement_{uuid.UUID(str(transaction_id)).hex}"


# =============================================================================
# Retry Logic Helpers
# =============================================================================


def backoff_delay(attempt: int, base: float = 0.5, max_delay: float = 10.0) -> float:
    """
    Exponential backoff delay with 0-25% jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base: Base delay in seconds
        max_delay: Upper bound before jitter

    Example:
        # Attempt 0: 0.5 - 0.625 seconds
        # Attempt 1: 1.0 - 1.25 seconds
    """
    delay = min(base * (2**attempt), max_delay)
    return delay + delay * random.uniform(0, 0.25)


# =============================================================================
# Client Interface
# =============================================================================


class GatewayClient(abc.ABC):
    """
    Operations the settlement engine needs from a payment gateway.

    Mutating operations take an idempotency key. Implementations must not
    retry mutating calls on their own; reads may be retried.
    """

    is_mock: bool = False

    @abc.abstractmethod
    def create_order(
        self,
        amount: Decimal,
        currency: str,
        metadata: OrderMetadata,
        idempotency_key: str,
    ) -> OrderResult:
        """Create a plain order; the platform receives the whole amount."""

    @abc.abstractmethod
    def create_marketplace_order(
        self,
        amount: Decimal,
        currency: str,
        payee_merchant_id: str,
        platform_fee: Decimal,
        metadata: OrderMetadata,
        idempotency_key: str,
    ) -> OrderResult:
        """
        Create a split order with delayed disbursement.

        The payee receives amount - platform_fee once funds are released.
        """

    @abc.abstractmethod
    def capture_order(self, order_id: str, idempotency_key: str) -> CaptureResult:
        """Capture an approved order. Repeat calls return the existing capture."""

    @abc.abstractmethod
    def refund_capture(
        self,
        capture_id: str,
        idempotency_key: str,
        amount: Decimal | None = None,
        currency: str | None = None,
        note: str = "",
    ) -> RefundResult:
        """Refund a capture in full (amount=None) or in part."""

    @abc.abstractmethod
    def create_payout(
        self,
        email: str,
        amount: Decimal,
        currency: str,
        note: str,
        sender_batch_id: str,
    ) -> PayoutResult:
        """Send money to an email address."""

    @abc.abstractmethod
    def release_funds(self, order_id: str, idempotency_key: str) -> ReleaseResult:
        """Disburse a delayed-disbursement order's held funds to its payee."""

    @abc.abstractmethod
    def get_order_status(self, order_id: str) -> OrderStatusResult:
        """Look up an order."""

    @abc.abstractmethod
    def get_payout_status(self, batch_id: str) -> PayoutResult:
        """Look up a payout batch."""

    @abc.abstractmethod
    def verify_webhook_signature(
        self, signature: WebhookSignature, body: bytes, webhook_id: str
    ) -> bool:
        """Check that a webhook body was sent by the gateway for webhook_id."""
