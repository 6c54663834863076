"""Tests for the deterministic mock gateway."""

from decimal import Decimal

import pytest

from settlement.exceptions import GatewayRequestError
from settlement.gateway import MockGatewayClient, OrderMetadata
from settlement.gateway.mock import mock_id


@pytest.fixture
def gateway():
    return MockGatewayClient()


@pytest.fixture
def metadata():
    return OrderMetadata(custom_id="tx-1", reference_id="offer-1")


def test_ids_are_deterministic():
    assert mock_id("order", "key-1") == mock_id("order", "key-1")
    assert mock_id("order", "key-1") != mock_id("order", "key-2")
    assert mock_id("payout", "x").startswith("MOCK-PAYOUT-")
    assert len(mock_id("payout", "x")) == len("MOCK-PAYOUT-") + 16


def test_same_key_same_order(gateway, metadata):
    first = gateway.create_order(Decimal("105.00"), "USD", metadata, "key-1")
    second = gateway.create_order(Decimal("105.00"), "USD", metadata, "key-1")

    assert first.order_id == second.order_id
    assert first.approve_url.endswith(first.order_id)


def test_capture_is_idempotent(gateway, metadata):
    order = gateway.create_order(Decimal("105.00"), "USD", metadata, "key-1")

    first = gateway.capture_order(order.order_id, "capture-key")
    second = gateway.capture_order(order.order_id, "another-key")

    assert first.capture_id == second.capture_id
    assert first.amount == Decimal("105.00")
    assert first.currency == "USD"


def test_order_status_tracks_capture(gateway, metadata):
    order = gateway.create_order(Decimal("10.00"), "USD", metadata, "key-1")
    assert not gateway.get_order_status(order.order_id).is_captured

    capture = gateway.capture_order(order.order_id, "capture-key")
    status = gateway.get_order_status(order.order_id)

    assert status.is_captured
    assert status.capture_id == capture.capture_id
    assert status.capture_amount == Decimal("10.00")
    assert status.capture_currency == "USD"


def test_unknown_order_status(gateway):
    with pytest.raises(GatewayRequestError) as exc_info:
        gateway.get_order_status("MOCK-ORDER-UNKNOWN")

    assert exc_info.value.status_code == 404


def test_marketplace_order_records_split(gateway, metadata):
    order = gateway.create_marketplace_order(
        Decimal("105.00"), "USD", "MERCHANT-1", Decimal("15.00"), metadata, "key-1"
    )

    raw = gateway.get_order_status(order.order_id).raw_response
    assert raw["payee_merchant_id"] == "MERCHANT-1"
    assert raw["platform_fee"] == "15.00"


def test_refund_requires_known_capture(gateway, metadata):
    with pytest.raises(GatewayRequestError):
        gateway.refund_capture("MOCK-CAPTURE-UNKNOWN", "refund-key")

    order = gateway.create_order(Decimal("10.00"), "USD", metadata, "key-1")
    capture = gateway.capture_order(order.order_id, "capture-key")
    refund = gateway.refund_capture(
        capture.capture_id, "refund-key", amount=Decimal("4.00"), currency="USD"
    )

    assert refund.refund_id.startswith("MOCK-REFUND-")
    assert refund.amount == Decimal("4.00")


def test_payout_batch_follows_sender_batch_id(gateway):
    first = gateway.create_payout("a@example.com", Decimal("9"), "USD", "n", "settlement_1")
    second = gateway.create_payout("a@example.com", Decimal("9"), "USD", "n", "settlement_1")

    assert first.batch_id == second.batch_id
    assert gateway.get_payout_status(first.batch_id).is_settled


def test_webhook_signature_round_trip(gateway):
    body = b'{"id": "WH-1"}'
    signature = MockGatewayClient.sign_webhook(body, "WEBHOOK-1")

    assert gateway.verify_webhook_signature(signature, body, "WEBHOOK-1")


@pytest.mark.parametrize(
    "body,webhook_id",
    [(b'{"id": "WH-2"}', "WEBHOOK-1"), (b'{"id": "WH-1"}', "WEBHOOK-2")],
)
def test_webhook_signature_rejects_tampering(gateway, body, webhook_id):
    signature = MockGatewayClient.sign_webhook(b'{"id": "WH-1"}', "WEBHOOK-1")

    assert not gateway.verify_webhook_signature(signature, body, webhook_id)
