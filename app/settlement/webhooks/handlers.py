"""
Handlers for gateway webhook events.

Each handler takes a stored GatewayWebhookEvent and returns a
ServiceResult; a failed result leaves the event FAILED for the retry task.
Event types without a handler are accepted and ignored.

Usage:
    from settlement.webhooks.handlers import dispatch_webhook, register_handler

    @register_handler("PAYMENT.CAPTURE.REFUNDED")
    def handle_capture_refunded(event: GatewayWebhookEvent) -> ServiceResult:
        ...

    result = dispatch_webhook(event)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from decimal import Decimal, InvalidOperation

from core.services import ServiceResult
from settlement.exceptions import TransactionNotFoundError
from settlement.gateway import CaptureResult
from settlement.models import GatewayWebhookEvent, Transaction
from settlement.repository import TransactionRepository
from settlement.services import SettlementOrchestrator

logger = logging.getLogger(__name__)


# =============================================================================
# Handler Registry
# =============================================================================


WEBHOOK_HANDLERS: dict[str, Callable[[GatewayWebhookEvent], ServiceResult]] = {}


def register_handler(event_type: str) -> Callable:
    """Register the decorated function as the handler for event_type."""

    def decorator(func: Callable[[GatewayWebhookEvent], ServiceResult]) -> Callable:
        WEBHOOK_HANDLERS[event_type] = func
        return func

    return decorator


def dispatch_webhook(event: GatewayWebhookEvent) -> ServiceResult:
    """Run the handler registered for the event's type; success(None) if there is none."""
    handler = WEBHOOK_HANDLERS.get(event.event_type)
    if handler is None:
        logger.info(
            f"No handler registered for event type: {event.event_type}",
            extra={"event_id": event.event_id},
        )
        return ServiceResult.success(None)

    logger.info(
        f"Dispatching {event.event_type} to handler",
        extra={"event_id": event.event_id},
    )
    return handler(event)


# =============================================================================
# Helpers
# =============================================================================


def find_transaction(resource: dict) -> Transaction | None:
    """
    Transaction a capture resource belongs to.

    Looked up by the order id PayPal puts in supplementary_data, then by
    custom_id (our transaction id, echoed back on the capture).
    """
    repository = TransactionRepository()
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    order_id = related.get("order_id")
    if order_id:
        tx = repository.find_by_order(order_id)
        if tx is not None:
            return tx

    custom_id = resource.get("custom_id")
    if custom_id:
        try:
            return repository.get(custom_id)
        except TransactionNotFoundError:
            return None
    return None


def _not_found(event: GatewayWebhookEvent) -> ServiceResult:
    logger.warning(
        "Webhook capture does not match any transaction",
        extra={"event_id": event.event_id, "capture_id": event.resource.get("id")},
    )
    return ServiceResult.failure(
        "No transaction for this capture",
        error_code="TRANSACTION_NOT_FOUND",
        details={"event_id": event.event_id},
    )


def _amount(resource: dict) -> tuple[Decimal | None, str | None]:
    amount = resource.get("amount") or {}
    try:
        value = Decimal(str(amount["value"])) if amount.get("value") else None
    except InvalidOperation:
        value = None
    return value, amount.get("currency_code")


# =============================================================================
# Capture Handlers
# =============================================================================


@register_handler("PAYMENT.CAPTURE.COMPLETED")
def handle_capture_completed(event: GatewayWebhookEvent) -> ServiceResult:
    """Record the capture: PENDING -> ESCROW, with the same checks as confirm."""
    resource = event.resource
    tx = find_transaction(resource)
    if tx is None:
        return _not_found(event)

    amount, currency = _amount(resource)
    capture = CaptureResult(
        order_id=tx.gateway_order_id or "",
        capture_id=resource.get("id", ""),
        status=resource.get("status", ""),
        amount=amount,
        currency=currency,
        raw_response=resource,
    )
    return SettlementOrchestrator.from_settings().capture_reported(tx.pk, capture)


@register_handler("PAYMENT.CAPTURE.DENIED")
def handle_capture_denied(event: GatewayWebhookEvent) -> ServiceResult:
    """Decline the PENDING transaction whose capture was denied."""
    resource = event.resource
    tx = find_transaction(resource)
    if tx is None:
        return _not_found(event)

    reason = f"capture denied: {resource.get('status', 'DENIED')}"
    return SettlementOrchestrator.from_settings().capture_denied(tx.pk, reason=reason)
