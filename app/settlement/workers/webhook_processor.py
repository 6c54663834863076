"""
Background processing of stored gateway webhooks.

The webhook endpoint only verifies and stores events; these tasks run
the handlers.

Tasks:
- process_gateway_webhook: Dispatch one stored event to its handler
- retry_failed_webhooks: Periodic re-queue of FAILED events under the attempt limit
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task
from django.db import transaction

from settlement.models import GatewayWebhookEvent
from settlement.models.webhook_event import MAX_PROCESSING_ATTEMPTS
from settlement.state_machines import WebhookEventStatus

logger = logging.getLogger(__name__)

RETRY_BATCH_SIZE = 100


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_PROCESSING_ATTEMPTS},
    acks_late=True,
)
def process_gateway_webhook(self, event_pk: str) -> dict:
    """
    Process one stored webhook event.

    Already PROCESSED events are skipped. A handler failure marks the
    event FAILED for retry_failed_webhooks; an unexpected exception also
    marks it FAILED and is re-raised so Celery retries.

    Returns:
        Dict with the processing status
    """
    from settlement.webhooks.handlers import dispatch_webhook

    if isinstance(event_pk, str):
        event_pk = UUID(event_pk)

    try:
        event = GatewayWebhookEvent.objects.get(pk=event_pk)
    except GatewayWebhookEvent.DoesNotExist:
        logger.error("Webhook event not found", extra={"webhook_event_pk": str(event_pk)})
        return {"status": "not_found", "webhook_event_pk": str(event_pk)}

    log_context = {
        "webhook_event_pk": str(event_pk),
        "event_id": event.event_id,
        "event_type": event.event_type,
    }
    if event.is_processed:
        logger.info("Webhook event already processed, skipping", extra=log_context)
        return {"status": "already_processed", "webhook_event_pk": str(event_pk)}

    event.mark_processing()
    event.save()

    try:
        with transaction.atomic():
            result = dispatch_webhook(event)

        if result.success:
            event.mark_processed()
            event.save()
            logger.info("Webhook processed", extra=log_context)
            return {"status": "processed", "webhook_event_pk": str(event_pk)}

        error = result.error or "Handler returned failure"
        event.mark_failed(error)
        event.save()
        logger.warning(
            f"Webhook handler failed: {error}",
            extra={**log_context, "error_code": result.error_code},
        )
        return {"status": "handler_failed", "webhook_event_pk": str(event_pk), "error": error}

    except Exception as exc:
        event.mark_failed(f"{type(exc).__name__}: {exc}")
        event.save()
        logger.exception("Webhook processing raised", extra=log_context)
        raise


@shared_task
def retry_failed_webhooks() -> dict:
    """
    Re-queue FAILED webhook events that have attempts left.

    Returns:
        Dict with the number of events queued
    """
    failed = GatewayWebhookEvent.objects.filter(
        status=WebhookEventStatus.FAILED,
        retry_count__lt=MAX_PROCESSING_ATTEMPTS,
    ).order_by("created_at")[:RETRY_BATCH_SIZE]

    queued = 0
    for event in failed:
        process_gateway_webhook.delay(str(event.pk))
        queued += 1
        logger.info(
            "Queued failed webhook for retry",
            extra={
                "webhook_event_pk": str(event.pk),
                "event_id": event.event_id,
                "retry_count": event.retry_count,
            },
        )

    logger.info(f"Queued {queued} failed webhooks for retry", extra={"queued_count": queued})
    return {"queued_count": queued}


__all__ = [
    "process_gateway_webhook",
    "retry_failed_webhooks",
]
