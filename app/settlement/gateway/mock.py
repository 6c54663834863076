"""
Deterministic in-process gateway for development and tests.

No network access. Every id is derived from the call's inputs, so the same
call always yields the same id:

    MOCK-ORDER-3F2A9C0B11D4E5F6
    MOCK-CAPTURE-...
    MOCK-REFUND-...
    MOCK-PAYOUT-...

Orders and captures are remembered per instance so that a repeated capture
returns the first capture and status lookups agree with earlier calls.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import threading
from decimal import Decimal

from settlement.exceptions import GatewayRequestError
from settlement.fees import format_money
from settlement.gateway.base import (
    CaptureResult,
    GatewayClient,
    OrderMetadata,
    OrderResult,
    OrderStatusResult,
    PayoutResult,
    RefundResult,
    ReleaseResult,
    WebhookSignature,
)

logger = logging.getLogger(__name__)


def mock_id(kind: str, *parts) -> str:
    """Build a deterministic MOCK-<KIND>-<hash> identifier."""
    digest = hashlib.sha256(":".join(str(p) for p in parts).encode()).hexdigest()
    return f"MOCK-{kind.upper()}-{digest[:16].upper()}"


class MockGatewayClient(GatewayClient):
    """GatewayClient that succeeds without talking to anyone."""

    is_mock = True

    def __init__(self):
        self._lock = threading.Lock()
        self._orders: dict[str, dict] = {}
        self._captures: dict[str, str] = {}

    def _remember_order(
        self,
        idempotency_key: str,
        amount: Decimal,
        currency: str,
        metadata: OrderMetadata,
        **extra,
    ) -> OrderResult:
        order_id = mock_id("order", idempotency_key)
        with self._lock:
            self._orders.setdefault(
                order_id,
                {
                    "status": "CREATED",
                    "amount": format_money(amount, currency),
                    "currency": currency.upper(),
                    "custom_id": metadata.custom_id,
                    **extra,
                },
            )
        logger.info("Mock gateway created order", extra={"order_id": order_id})
        return OrderResult(
            order_id=order_id,
            status="CREATED",
            approve_url=f"https://mock.gateway.local/checkout/{order_id}",
            raw_response={"id": order_id, "status": "CREATED", "mock": True},
        )

    def create_order(self, amount, currency, metadata, idempotency_key):
        return self._remember_order(idempotency_key, amount, currency, metadata)

    def create_marketplace_order(
        self,
        amount,
        currency,
        payee_merchant_id,
        platform_fee,
        metadata,
        idempotency_key,
    ):
        return self._remember_order(
            idempotency_key,
            amount,
            currency,
            metadata,
            payee_merchant_id=payee_merchant_id,
            platform_fee=format_money(platform_fee, currency),
        )

    def capture_order(self, order_id, idempotency_key):
        with self._lock:
            capture_id = self._captures.get(order_id)
            if capture_id is None:
                capture_id = mock_id("capture", order_id)
                self._captures[order_id] = capture_id
            order = self._orders.setdefault(order_id, {})
            order["status"] = "COMPLETED"
        amount = order.get("amount")
        logger.info(
            "Mock gateway captured order",
            extra={"order_id": order_id, "capture_id": capture_id},
        )
        return CaptureResult(
            order_id=order_id,
            capture_id=capture_id,
            status="COMPLETED",
            amount=Decimal(amount) if amount else None,
            currency=order.get("currency"),
            raw_response={"id": order_id, "status": "COMPLETED", "mock": True},
        )

    def refund_capture(
        self, capture_id, idempotency_key, amount=None, currency=None, note=""
    ):
        if capture_id not in self._captures.values():
            raise GatewayRequestError(
                f"Unknown capture {capture_id}",
                gateway_name="RESOURCE_NOT_FOUND",
                issue="INVALID_RESOURCE_ID",
                status_code=404,
            )
        refund_id = mock_id("refund", capture_id, idempotency_key)
        return RefundResult(
            refund_id=refund_id,
            status="COMPLETED",
            amount=amount,
            currency=currency,
            raw_response={"id": refund_id, "status": "COMPLETED", "mock": True},
        )

    def create_payout(self, email, amount, currency, note, sender_batch_id):
        batch_id = mock_id("payout", sender_batch_id)
        logger.info(
            "Mock gateway created payout",
            extra={"batch_id": batch_id, "sender_batch_id": sender_batch_id},
        )
        return PayoutResult(
            batch_id=batch_id,
            status="SUCCESS",
            item_status="SUCCESS",
            raw_response={
                "batch_header": {"payout_batch_id": batch_id, "batch_status": "SUCCESS"},
                "mock": True,
            },
        )

    def release_funds(self, order_id, idempotency_key):
        return ReleaseResult(
            order_id=order_id,
            status="COMPLETED",
            raw_response={"id": order_id, "status": "COMPLETED", "mock": True},
        )

    def get_order_status(self, order_id):
        with self._lock:
            order = self._orders.get(order_id)
            capture_id = self._captures.get(order_id)
        if order is None:
            raise GatewayRequestError(
                f"Unknown order {order_id}",
                gateway_name="RESOURCE_NOT_FOUND",
                issue="INVALID_RESOURCE_ID",
                status_code=404,
            )
        amount = order.get("amount")
        return OrderStatusResult(
            order_id=order_id,
            status=order.get("status", "CREATED"),
            capture_id=capture_id,
            capture_status="COMPLETED" if capture_id else None,
            capture_amount=Decimal(amount) if capture_id and amount else None,
            capture_currency=order.get("currency") if capture_id else None,
            raw_response={"id": order_id, "mock": True, **order},
        )

    def get_payout_status(self, batch_id):
        return PayoutResult(
            batch_id=batch_id,
            status="SUCCESS",
            item_status="SUCCESS",
            raw_response={"batch_header": {"payout_batch_id": batch_id}, "mock": True},
        )

    # Webhooks use the shared-secret scheme below instead of PayPal's
    # certificate check: base64(HMAC-SHA256(webhook_id, message)), where
    # message is "transmission_id|transmission_time|webhook_id|base64(sha256(body))".

    @staticmethod
    def _webhook_digest(
        transmission_id: str, transmission_time: str, body: bytes, webhook_id: str
    ) -> str:
        body_hash = base64.b64encode(hashlib.sha256(body).digest()).decode()
        message = f"{transmission_id}|{transmission_time}|{webhook_id}|{body_hash}"
        digest = hmac.new(webhook_id.encode(), message.encode(), hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    @classmethod
    def sign_webhook(
        cls,
        body: bytes,
        webhook_id: str,
        transmission_id: str = "mock-transmission",
        transmission_time: str = "2024-01-01T00:00:00Z",
    ) -> WebhookSignature:
        """Produce the signature verify_webhook_signature accepts."""
        return WebhookSignature(
            transmission_id=transmission_id,
            transmission_time=transmission_time,
            transmission_sig=cls._webhook_digest(
                transmission_id, transmission_time, body, webhook_id
            ),
            auth_algo="HMAC-SHA256",
        )

    def verify_webhook_signature(self, signature, body, webhook_id):
        if not webhook_id or not signature.is_complete:
            return False
        expected = self._webhook_digest(
            signature.transmission_id, signature.transmission_time, body, webhook_id
        )
        return hmac.compare_digest(expected, signature.transmission_sig)
