"""
Tests for the PayPal webhook endpoint.

Tests cover:
- Signature verification against PAYPAL_WEBHOOK_ID
- Webhook event storage and idempotency
- Task queuing
"""

import json
from unittest.mock import patch

import pytest
from django.test import Client
from django.urls import reverse

from settlement.exceptions import GatewayUnavailableError
from settlement.gateway import MockGatewayClient
from settlement.models import GatewayWebhookEvent, Transaction
from settlement.state_machines import TransactionStatus, WebhookEventStatus
from settlement.webhooks.tests.conftest import WEBHOOK_ID, capture_payload, signed_request
from settlement.webhooks.views import paypal_webhook
from settlement.workers.webhook_processor import process_gateway_webhook

QUEUE = "settlement.workers.webhook_processor.process_gateway_webhook.delay"


# =============================================================================
# Signature Verification Tests
# =============================================================================


class TestPayPalWebhookSignature:
    def test_missing_headers_returns_400(self, rf, db):
        request = rf.post(
            "/api/v1/settlement/webhooks/paypal/",
            data=json.dumps({"id": "WH-1", "event_type": "PAYMENT.CAPTURE.COMPLETED"}),
            content_type="application/json",
        )

        response = paypal_webhook(request)

        assert response.status_code == 400
        assert b"Missing signature" in response.content
        assert not GatewayWebhookEvent.objects.exists()

    def test_forged_signature_returns_400(self, rf, pending_transaction):
        request = signed_request(
            rf, capture_payload(pending_transaction), webhook_id="SOMEONE-ELSE"
        )

        with patch(QUEUE) as mock_delay:
            response = paypal_webhook(request)

        assert response.status_code == 400
        assert b"Invalid signature" in response.content
        mock_delay.assert_not_called()
        assert not GatewayWebhookEvent.objects.exists()

    def test_tampered_body_returns_400(self, rf, pending_transaction):
        payload = capture_payload(pending_transaction)
        request = signed_request(rf, payload)
        request._body = json.dumps({**payload, "id": "WH-OTHER"}).encode()

        response = paypal_webhook(request)

        assert response.status_code == 400

    def test_unconfigured_webhook_id_rejects(self, rf, pending_transaction, webhook_settings):
        webhook_settings.PAYPAL_WEBHOOK_ID = ""
        request = signed_request(rf, capture_payload(pending_transaction), webhook_id="")

        with patch("settlement.webhooks.views.logger") as mock_logger:
            response = paypal_webhook(request)

        assert response.status_code == 400
        mock_logger.error.assert_called_once()

    def test_verification_unavailable_returns_503(self, rf, pending_transaction):
        request = signed_request(rf, capture_payload(pending_transaction))

        with patch.object(
            MockGatewayClient,
            "verify_webhook_signature",
            side_effect=GatewayUnavailableError("down"),
        ):
            response = paypal_webhook(request)

        assert response.status_code == 503
        assert not GatewayWebhookEvent.objects.exists()

    def test_get_not_allowed(self, rf, db):
        response = paypal_webhook(rf.get("/api/v1/settlement/webhooks/paypal/"))

        assert response.status_code == 405


# =============================================================================
# Event Storage Tests
# =============================================================================


class TestPayPalWebhookEventStorage:
    def test_stores_and_queues_event(self, rf, pending_transaction):
        payload = capture_payload(pending_transaction)

        with patch(QUEUE) as mock_delay:
            response = paypal_webhook(signed_request(rf, payload))

        assert response.status_code == 200
        event = GatewayWebhookEvent.objects.get(event_id="WH-EVENT-1")
        assert event.event_type == "PAYMENT.CAPTURE.COMPLETED"
        assert event.status == WebhookEventStatus.PENDING
        assert event.payload == payload
        mock_delay.assert_called_once_with(str(event.pk))

    def test_redelivery_of_processed_event_is_not_queued(self, rf, pending_transaction, make_event):
        payload = capture_payload(pending_transaction)
        make_event(payload, status=WebhookEventStatus.PROCESSED)

        with patch(QUEUE) as mock_delay:
            response = paypal_webhook(signed_request(rf, payload))

        assert response.status_code == 200
        assert b"Already processed" in response.content
        mock_delay.assert_not_called()
        assert GatewayWebhookEvent.objects.count() == 1

    def test_redelivery_of_unprocessed_event_is_queued_again(
        self, rf, pending_transaction, make_event
    ):
        payload = capture_payload(pending_transaction)
        event = make_event(payload, status=WebhookEventStatus.FAILED)

        with patch(QUEUE) as mock_delay:
            response = paypal_webhook(signed_request(rf, payload))

        assert response.status_code == 200
        mock_delay.assert_called_once_with(str(event.pk))
        assert GatewayWebhookEvent.objects.count() == 1

    @pytest.mark.parametrize(
        "payload",
        [
            {"event_type": "PAYMENT.CAPTURE.COMPLETED"},
            {"id": "WH-1"},
            ["not", "an", "object"],
        ],
    )
    def test_malformed_event_returns_400(self, rf, db, payload):
        with patch(QUEUE) as mock_delay:
            response = paypal_webhook(signed_request(rf, payload))

        assert response.status_code == 400
        mock_delay.assert_not_called()


def test_capture_webhook_end_to_end(pending_transaction):
    """Routed URL, CSRF exempt, and the queued task moves funds to escrow."""
    payload = capture_payload(pending_transaction)
    body = json.dumps(payload).encode()
    signature = MockGatewayClient.sign_webhook(body, WEBHOOK_ID)
    client = Client(enforce_csrf_checks=True)

    with patch(QUEUE) as mock_delay:
        response = client.post(
            reverse("settlement:paypal_webhook"),
            data=body,
            content_type="application/json",
            HTTP_PAYPAL_TRANSMISSION_ID=signature.transmission_id,
            HTTP_PAYPAL_TRANSMISSION_TIME=signature.transmission_time,
            HTTP_PAYPAL_TRANSMISSION_SIG=signature.transmission_sig,
        )

    assert response.status_code == 200

    process_gateway_webhook(*mock_delay.call_args.args)

    tx = Transaction.objects.get(pk=pending_transaction.pk)
    assert tx.status == TransactionStatus.ESCROW
    assert tx.gateway_capture_id == "CAPTURE-WH-1"
