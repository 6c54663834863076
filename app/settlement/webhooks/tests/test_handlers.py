"""
Tests for webhook handlers.

Capture events are matched to transactions by order id (or custom_id)
and routed through the orchestrator's capture_reported / capture_denied.
"""

from decimal import Decimal

import pytest

from settlement.models import Transaction
from settlement.state_machines import TransactionStatus
from settlement.tests.factories import OfferFactory
from settlement.webhooks.handlers import (
    WEBHOOK_HANDLERS,
    dispatch_webhook,
    find_transaction,
)
from settlement.webhooks.tests.conftest import capture_payload


def reload(tx):
    return Transaction.objects.get(pk=tx.pk)


def test_capture_handlers_registered():
    assert "PAYMENT.CAPTURE.COMPLETED" in WEBHOOK_HANDLERS
    assert "PAYMENT.CAPTURE.DENIED" in WEBHOOK_HANDLERS


def test_unknown_event_type_is_accepted(make_event, pending_transaction):
    event = make_event(capture_payload(pending_transaction, event_type="PAYMENT.CAPTURE.REVERSED"))

    result = dispatch_webhook(event)

    assert result.success
    assert reload(pending_transaction).status == TransactionStatus.PENDING


class TestFindTransaction:
    def test_by_order_id(self, pending_transaction):
        resource = capture_payload(pending_transaction)["resource"]

        assert find_transaction(resource).pk == pending_transaction.pk

    def test_falls_back_to_custom_id(self, pending_transaction):
        resource = capture_payload(pending_transaction, supplementary_data={})["resource"]

        assert find_transaction(resource).pk == pending_transaction.pk

    def test_no_match(self, db):
        resource = {
            "custom_id": "not-a-transaction",
            "supplementary_data": {"related_ids": {"order_id": "ORDER-NOBODY"}},
        }

        assert find_transaction(resource) is None


class TestCaptureCompleted:
    def test_moves_pending_to_escrow(self, make_event, pending_transaction):
        event = make_event(capture_payload(pending_transaction))

        result = dispatch_webhook(event)

        assert result.success
        tx = reload(pending_transaction)
        assert tx.status == TransactionStatus.ESCROW
        assert tx.gateway_capture_id == "CAPTURE-WH-1"
        assert tx.escrow_end is not None

    def test_already_captured_is_a_no_op(self, make_event, escrow_transaction):
        event = make_event(
            capture_payload(escrow_transaction, id=escrow_transaction.gateway_capture_id)
        )

        result = dispatch_webhook(event)

        assert result.success
        assert reload(escrow_transaction).version == escrow_transaction.version

    def test_amount_mismatch_fails(self, make_event, pending_transaction):
        event = make_event(
            capture_payload(
                pending_transaction, amount={"currency_code": "USD", "value": "1.00"}
            )
        )

        result = dispatch_webhook(event)

        assert result.error_code == "GATEWAY_CAPTURE_MISMATCH"
        assert reload(pending_transaction).status == TransactionStatus.PENDING

    @pytest.mark.parametrize("value", ["abc", None])
    def test_unreadable_amount_fails(self, make_event, pending_transaction, value):
        event = make_event(
            capture_payload(pending_transaction, amount={"currency_code": "USD", "value": value})
        )

        result = dispatch_webhook(event)

        assert result.error_code == "GATEWAY_CAPTURE_MISMATCH"

    def test_pending_capture_leaves_transaction_pending(self, make_event, pending_transaction):
        event = make_event(capture_payload(pending_transaction, status="PENDING"))

        result = dispatch_webhook(event)

        assert result.error_code == "GATEWAY_CAPTURE_PENDING"
        assert reload(pending_transaction).status == TransactionStatus.PENDING

    def test_unknown_transaction_fails(self, make_event, pending_transaction):
        payload = capture_payload(
            pending_transaction,
            custom_id="",
            supplementary_data={"related_ids": {"order_id": "ORDER-NOBODY"}},
        )
        event = make_event(payload)

        result = dispatch_webhook(event)

        assert result.error_code == "TRANSACTION_NOT_FOUND"

    def test_fractional_total_matches(self, make_event, orchestrator, plain_provider):
        offer = OfferFactory(price=Decimal("0.30"), provider_id=plain_provider.provider_id)
        tx = orchestrator.initiate_checkout(offer).data
        event = make_event(capture_payload(tx, event_id="WH-FRACTION"))

        result = dispatch_webhook(event)

        assert result.success
        assert reload(tx).status == TransactionStatus.ESCROW


class TestCaptureDenied:
    def test_declines_pending(self, make_event, pending_transaction):
        event = make_event(
            capture_payload(pending_transaction, event_type="PAYMENT.CAPTURE.DENIED")
        )

        result = dispatch_webhook(event)

        assert result.success
        tx = reload(pending_transaction)
        assert tx.status == TransactionStatus.DECLINED
        assert tx.status_reason == "capture denied: DENIED"

    def test_captured_transaction_not_declined(self, make_event, escrow_transaction):
        event = make_event(
            capture_payload(escrow_transaction, event_type="PAYMENT.CAPTURE.DENIED")
        )

        result = dispatch_webhook(event)

        assert result.error_code == "ILLEGAL_TRANSITION"
        assert reload(escrow_transaction).status == TransactionStatus.ESCROW
