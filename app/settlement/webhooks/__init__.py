"""
Gateway webhooks: a verified endpoint, idempotent storage and handlers.

Events are stored by GatewayWebhookEvent.event_id and processed by
settlement.workers.webhook_processor.process_gateway_webhook.

Handled event types:
    PAYMENT.CAPTURE.COMPLETED  PENDING -> ESCROW (capture checks as in confirm)
    PAYMENT.CAPTURE.DENIED     PENDING -> DECLINED
"""
