"""
Webhook endpoint for PayPal.

The view:
1. Verifies the transmission signature through the gateway client
2. Stores the event once, keyed by its event id
3. Queues process_gateway_webhook
4. Returns immediately

Usage:
    from settlement.webhooks.views import paypal_webhook

    urlpatterns = [
        path("webhooks/paypal/", paypal_webhook, name="paypal_webhook"),
    ]
"""

from __future__ import annotations

import json
import logging

from django.conf import settings
from django.http import HttpRequest, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from settlement.exceptions import GatewayError
from settlement.gateway import WebhookSignature, get_gateway_client
from settlement.models import GatewayWebhookEvent
from settlement.state_machines import WebhookEventStatus

logger = logging.getLogger(__name__)


@csrf_exempt
@require_POST
def paypal_webhook(request: HttpRequest) -> HttpResponse:
    """
    Receive and queue a PayPal webhook event.

    Security:
    - The signature is checked against PAYPAL_WEBHOOK_ID; while that
      setting is empty every webhook is rejected
    - CSRF exemption required for external webhooks
    - Only POST requests accepted

    Idempotency:
    - GatewayWebhookEvent.event_id is unique
    - Redelivered events that were processed return 200 without requeueing

    Returns:
        HttpResponse with status:
        - 200: Event accepted (new or duplicate)
        - 400: Missing or invalid signature, or malformed event
        - 503: Signature could not be checked (gateway unreachable)
    """
    body = request.body
    signature = WebhookSignature.from_headers(request.headers)

    if not signature.is_complete:
        logger.warning("Webhook received without transmission headers")
        return HttpResponse("Missing signature", status=400)

    webhook_id = settings.PAYPAL_WEBHOOK_ID
    if not webhook_id:
        logger.error("PAYPAL_WEBHOOK_ID is not configured; rejecting webhook")
        return HttpResponse("Webhook verification not configured", status=400)

    try:
        verified = get_gateway_client().verify_webhook_signature(signature, body, webhook_id)
    except GatewayError as exc:
        logger.error(
            f"Webhook signature check failed: {exc}",
            extra={"transmission_id": signature.transmission_id},
        )
        return HttpResponse("Verification unavailable", status=503)

    if not verified:
        logger.warning(
            "Webhook signature verification failed",
            extra={"transmission_id": signature.transmission_id},
        )
        return HttpResponse("Invalid signature", status=400)

    try:
        payload = json.loads(body)
    except ValueError:
        return HttpResponse("Invalid event", status=400)

    event_id = payload.get("id") if isinstance(payload, dict) else None
    event_type = payload.get("event_type") if isinstance(payload, dict) else None
    if not event_id or not event_type:
        logger.warning("Webhook missing id or event_type")
        return HttpResponse("Invalid event", status=400)

    logger.info(
        f"Received PayPal webhook: {event_type}",
        extra={"event_id": event_id, "event_type": event_type},
    )

    event, created = GatewayWebhookEvent.objects.get_or_create(
        event_id=event_id,
        defaults={
            "event_type": event_type,
            "payload": payload,
            "status": WebhookEventStatus.PENDING,
        },
    )
    if not created and event.is_processed:
        logger.info("Webhook already processed", extra={"event_id": event_id})
        return HttpResponse("Already processed", status=200)

    from settlement.workers.webhook_processor import process_gateway_webhook

    process_gateway_webhook.delay(str(event.pk))
    logger.info(
        "Webhook queued for processing",
        extra={"event_id": event_id, "webhook_event_pk": str(event.pk)},
    )
    return HttpResponse("Accepted", status=200)
