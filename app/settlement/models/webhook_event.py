"""
GatewayWebhookEvent: every webhook the gateway delivered, stored once.

The unique event_id makes redelivered webhooks detectable: the endpoint
stores the event with get_or_create and only queues processing for events
that have not been processed yet.

Usage:
    event, created = GatewayWebhookEvent.objects.get_or_create(
        event_id=payload["id"],
        defaults={"event_type": payload["event_type"], "payload": payload},
    )
    if event.is_processed:
        return HttpResponse(status=200)
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.models import TimestampedModel, UUIDKeyedModel
from settlement.state_machines import WebhookEventStatus

MAX_PROCESSING_ATTEMPTS = 5


class GatewayWebhookEvent(UUIDKeyedModel, TimestampedModel):
    """
    A verified gateway webhook and its processing state.

    Processing Flow:
        1. Signature verified by the endpoint
        2. get_or_create on event_id (duplicates stop here once PROCESSED)
        3. process_gateway_webhook marks it PROCESSING and dispatches it
        4. PROCESSED, or FAILED with error_message for the retry task
    """

    event_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Gateway event id (WH-...), unique for idempotency",
    )

    event_type = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Gateway event type, e.g. PAYMENT.CAPTURE.COMPLETED",
    )

    payload = models.JSONField(help_text="Webhook body as delivered")

    status = models.CharField(
        max_length=20,
        choices=WebhookEventStatus.choices,
        default=WebhookEventStatus.PENDING,
        db_index=True,
    )

    processed_at = models.DateTimeField(null=True, blank=True)

    error_message = models.TextField(blank=True, default="")

    retry_count = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of processing attempts",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Gateway Webhook Event"
        verbose_name_plural = "Gateway Webhook Events"
        indexes = [
            models.Index(fields=["status", "created_at"], name="webhook_status_created_idx"),
            models.Index(fields=["event_type", "created_at"], name="webhook_type_created_idx"),
        ]

    def __str__(self) -> str:
        return f"GatewayWebhookEvent({self.event_id}, {self.event_type})"

    @property
    def is_processed(self) -> bool:
        return self.status == WebhookEventStatus.PROCESSED

    @property
    def can_retry(self) -> bool:
        return (
            self.status == WebhookEventStatus.FAILED
            and self.retry_count < MAX_PROCESSING_ATTEMPTS
        )

    @property
    def resource(self) -> dict:
        resource = (self.payload or {}).get("resource")
        return resource if isinstance(resource, dict) else {}

    # The mark_* helpers do not save; the caller saves.

    def mark_processing(self) -> None:
        self.status = WebhookEventStatus.PROCESSING
        self.retry_count += 1

    def mark_processed(self) -> None:
        self.status = WebhookEventStatus.PROCESSED
        self.processed_at = timezone.now()
        self.error_message = ""

    def mark_failed(self, error: str) -> None:
        self.status = WebhookEventStatus.FAILED
        self.error_message = error
