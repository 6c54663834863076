"""
Pytest fixtures for webhook tests.

Provides PayPal capture payloads, stored GatewayWebhookEvent rows and
signed requests against the mock gateway's signature scheme.
"""

import json

import pytest
from django.test import RequestFactory

from settlement.gateway import MockGatewayClient
from settlement.models import GatewayWebhookEvent
from settlement.state_machines import WebhookEventStatus

WEBHOOK_ID = "WH-CONFIG-1"


@pytest.fixture(autouse=True)
def webhook_settings(settings):
    """Mock gateway (no credentials) with a configured webhook id."""
    settings.PAYPAL_CLIENT_ID = ""
    settings.PAYPAL_CLIENT_SECRET = ""
    settings.PAYPAL_MOCK_MODE = None
    settings.PAYPAL_MODE = "sandbox"
    settings.PAYPAL_WEBHOOK_ID = WEBHOOK_ID
    return settings


@pytest.fixture
def rf():
    return RequestFactory()


def capture_payload(tx, event_type="PAYMENT.CAPTURE.COMPLETED", event_id="WH-EVENT-1", **resource):
    """A PayPal capture event for tx's order."""
    body = {
        "id": "CAPTURE-WH-1",
        "status": "COMPLETED" if event_type.endswith("COMPLETED") else "DENIED",
        "amount": {"currency_code": tx.currency, "value": str(tx.client_total)},
        "custom_id": str(tx.pk),
        "supplementary_data": {"related_ids": {"order_id": tx.gateway_order_id}},
    }
    body.update(resource)
    return {"id": event_id, "event_type": event_type, "resource": body}


def signed_request(rf, payload, webhook_id=WEBHOOK_ID, **headers):
    """POST payload to the webhook endpoint with a valid mock signature."""
    body = json.dumps(payload).encode()
    signature = MockGatewayClient.sign_webhook(body, webhook_id)
    meta = {
        "HTTP_PAYPAL_TRANSMISSION_ID": signature.transmission_id,
        "HTTP_PAYPAL_TRANSMISSION_TIME": signature.transmission_time,
        "HTTP_PAYPAL_TRANSMISSION_SIG": signature.transmission_sig,
        "HTTP_PAYPAL_AUTH_ALGO": signature.auth_algo,
    }
    meta.update(headers)
    return rf.post(
        "/api/v1/settlement/webhooks/paypal/",
        data=body,
        content_type="application/json",
        **meta,
    )


@pytest.fixture
def make_event(db):
    """Store a webhook event for a payload."""

    def _make(payload, status=WebhookEventStatus.PENDING, **fields):
        return GatewayWebhookEvent.objects.create(
            event_id=payload["id"],
            event_type=payload["event_type"],
            payload=payload,
            status=status,
            **fields,
        )

    return _make
