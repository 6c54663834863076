"""
Tests for SettlementOrchestrator.

The orchestrator runs against the deterministic mock gateway; individual
gateway methods are patched (wrapping the mock) to observe calls or to
inject failures.
"""

import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from freezegun import freeze_time
from django.utils import timezone

from settlement.exceptions import (
    GatewayDeclinedError,
    GatewayRequestError,
    GatewayTimeoutError,
    GatewayUnavailableError,
)
from settlement.gateway import CaptureResult, payout_batch_id
from settlement.models import ProviderPayoutProfile, Transaction
from settlement.state_machines import (
    OfferStatus,
    SettlementStrategy,
    TransactionStatus,
)
from settlement.tests.factories import OfferFactory, ProviderPayoutProfileFactory


def reload(tx):
    return Transaction.objects.get(pk=tx.pk)


# =============================================================================
# Checkout
# =============================================================================


class TestInitiateCheckout:
    def test_creates_pending_transaction(self, orchestrator, offer, plain_provider):
        result = orchestrator.initiate_checkout(offer)

        assert result.success
        tx = reload(result.data)
        assert tx.status == TransactionStatus.PENDING
        assert tx.amount == Decimal("100.00")
        assert tx.client_fee == Decimal("5.00")
        assert tx.client_total == Decimal("105.00")
        assert tx.platform_fee == Decimal("10.00")
        assert tx.provider_net == Decimal("90.00")
        assert tx.settlement_strategy == SettlementStrategy.PLAIN
        assert tx.client_id == offer.client_id
        assert tx.provider_id == offer.provider_id
        assert tx.gateway_order_id.startswith("MOCK-ORDER-")
        assert tx.get_meta("approve_url").endswith(tx.gateway_order_id)
        assert not tx.requires_manual_settlement

    def test_charges_client_total(self, orchestrator, mock_gateway, offer, plain_provider):
        with patch.object(
            mock_gateway, "create_order", wraps=mock_gateway.create_order
        ) as create_order:
            result = orchestrator.initiate_checkout(offer)

        kwargs = create_order.call_args.kwargs
        assert kwargs["amount"] == Decimal("105.00")
        assert kwargs["currency"] == "USD"
        assert kwargs["metadata"].custom_id == str(result.data.pk)
        assert kwargs["metadata"].reference_id == str(offer.pk)
        assert kwargs["idempotency_key"].startswith(f"create_order:{result.data.pk}:1:")

    def test_repeat_checkout_returns_existing_transaction(
        self, orchestrator, offer, plain_provider
    ):
        first = orchestrator.initiate_checkout(offer)
        second = orchestrator.initiate_checkout(offer)

        assert second.data.pk == first.data.pk
        assert Transaction.objects.filter(offer=offer).count() == 1

    def test_checkout_after_capture_is_rejected(self, orchestrator, offer, escrow_transaction):
        result = orchestrator.initiate_checkout(offer)

        assert not result.success
        assert result.error_code == "INVALID_OFFER_STATE"
        assert result.details["transaction_status"] == TransactionStatus.ESCROW

    @pytest.mark.parametrize(
        "status", [OfferStatus.CANCELLED, OfferStatus.DECLINED, OfferStatus.EXPIRED]
    )
    def test_unpayable_offer(self, orchestrator, status):
        offer = OfferFactory(status=status)

        result = orchestrator.initiate_checkout(offer)

        assert result.error_code == "INVALID_OFFER_STATE"
        assert not Transaction.objects.filter(offer=offer).exists()

    def test_zero_price_offer(self, orchestrator):
        result = orchestrator.initiate_checkout(OfferFactory(price=Decimal("0.00")))

        assert result.error_code == "VALIDATION_ERROR"

    def test_records_booking(self, orchestrator, offer, plain_provider):
        booking_id = uuid.uuid4()

        result = orchestrator.initiate_checkout(offer, booking=booking_id)

        assert result.data.get_meta("booking_id") == str(booking_id)

    @pytest.mark.parametrize(
        "currency, price, client_total, platform_fee, provider_net, amount_minor",
        [
            ("USD", "0.30", "0.32", "0.03", "0.27", 30),
            ("USD", "0.10", "0.11", "0.01", "0.09", 10),
            ("BHD", "10.005", "10.505", "1.001", "9.004", 10005),
        ],
    )
    def test_fractional_prices_stored_exactly(
        self,
        orchestrator,
        mock_gateway,
        currency,
        price,
        client_total,
        platform_fee,
        provider_net,
        amount_minor,
    ):
        offer = OfferFactory(price=Decimal(price), currency=currency)
        ProviderPayoutProfileFactory(provider_id=offer.provider_id)

        with patch.object(
            mock_gateway, "create_order", wraps=mock_gateway.create_order
        ) as create_order:
            result = orchestrator.initiate_checkout(offer)

        assert result.success, result.error
        tx = reload(result.data)
        assert tx.amount == Decimal(price)
        assert tx.client_total == Decimal(client_total)
        assert tx.platform_fee == Decimal(platform_fee)
        assert tx.provider_net == Decimal(provider_net)
        assert tx.amount_minor == amount_minor
        assert tx.amount_minor == tx.provider_net_minor + tx.platform_fee_minor
        assert create_order.call_args.kwargs["amount"] == Decimal(client_total)

    def test_marketplace_order_for_verified_merchant(
        self, orchestrator, mock_gateway, offer, marketplace_provider
    ):
        with patch.object(
            mock_gateway,
            "create_marketplace_order",
            wraps=mock_gateway.create_marketplace_order,
        ) as create_order:
            result = orchestrator.initiate_checkout(offer)

        tx = result.data
        assert tx.settlement_strategy == SettlementStrategy.MARKETPLACE
        assert tx.payee_merchant_id == "MERCHANT-7Q3"
        kwargs = create_order.call_args.kwargs
        assert kwargs["amount"] == Decimal("105.00")
        assert kwargs["payee_merchant_id"] == "MERCHANT-7Q3"
        # Platform keeps its fee and the client fee; the payee gets provider_net
        assert kwargs["platform_fee"] == Decimal("15.00")
        assert kwargs["amount"] - kwargs["platform_fee"] == tx.provider_net

    def test_rejected_marketplace_order_falls_back_to_plain(
        self, orchestrator, mock_gateway, offer, marketplace_provider
    ):
        rejection = GatewayRequestError(
            "Payee account restricted",
            issue="PAYEE_ACCOUNT_RESTRICTED",
            status_code=422,
        )
        with patch.object(
            mock_gateway, "create_marketplace_order", side_effect=rejection
        ), patch.object(
            mock_gateway, "create_order", wraps=mock_gateway.create_order
        ) as create_order:
            result = orchestrator.initiate_checkout(offer)

        assert result.success
        tx = result.data
        assert tx.settlement_strategy == SettlementStrategy.PLAIN
        assert tx.payee_merchant_id is None
        assert tx.get_meta("marketplace_fallback_reason").startswith(
            "GATEWAY_REQUEST_REJECTED"
        )
        assert create_order.call_args.kwargs["idempotency_key"].startswith(
            f"create_order:{tx.pk}:2:"
        )

    def test_provider_without_destination_is_flagged(self, orchestrator):
        offer = OfferFactory()

        with patch("settlement.services.orchestrator.logger") as mock_logger:
            result = orchestrator.initiate_checkout(offer)

        assert result.success
        assert result.data.requires_manual_settlement
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args.args[0] == "Transaction requires manual settlement"

    def test_gateway_failure_creates_nothing(self, orchestrator, mock_gateway, offer, plain_provider):
        with patch.object(
            mock_gateway, "create_order", side_effect=GatewayUnavailableError("down")
        ):
            result = orchestrator.initiate_checkout(offer)

        assert result.error_code == "GATEWAY_UNAVAILABLE"
        assert not Transaction.objects.filter(offer=offer).exists()

    def test_order_carries_return_urls(self, mock_gateway, settlement_config, offer, plain_provider):
        from dataclasses import replace

        from settlement.services import SettlementOrchestrator

        orchestrator = SettlementOrchestrator(
            gateway=mock_gateway,
            config=replace(
                settlement_config,
                return_url="https://app.example.com/checkout/done",
                cancel_url="https://app.example.com/checkout/cancelled",
            ),
        )
        with patch.object(
            mock_gateway, "create_order", wraps=mock_gateway.create_order
        ) as create_order:
            result = orchestrator.initiate_checkout(offer)

        assert result.success
        metadata = create_order.call_args.kwargs["metadata"]
        assert metadata.return_url == "https://app.example.com/checkout/done"
        assert metadata.cancel_url == "https://app.example.com/checkout/cancelled"

    def test_return_urls_omitted_when_unset(self, orchestrator, mock_gateway, offer, plain_provider):
        with patch.object(
            mock_gateway, "create_order", wraps=mock_gateway.create_order
        ) as create_order:
            orchestrator.initiate_checkout(offer)

        metadata = create_order.call_args.kwargs["metadata"]
        assert metadata.return_url is None
        assert metadata.cancel_url is None


# =============================================================================
# Capture
# =============================================================================


class TestConfirmPayment:
    def test_capture_moves_funds_to_escrow(self, orchestrator, pending_transaction):
        result = orchestrator.confirm_payment(pending_transaction.pk)

        assert result.success
        tx = reload(pending_transaction)
        assert tx.status == TransactionStatus.ESCROW
        assert tx.gateway_capture_id.startswith("MOCK-CAPTURE-")
        assert tx.escrow_end - tx.escrow_start == timedelta(hours=72)

    def test_is_idempotent(self, orchestrator, mock_gateway, escrow_transaction):
        with patch.object(mock_gateway, "capture_order") as capture_order:
            result = orchestrator.confirm_payment(escrow_transaction.pk)

        assert result.success
        capture_order.assert_not_called()
        assert reload(escrow_transaction).version == escrow_transaction.version

    def test_decline_moves_to_declined(self, orchestrator, mock_gateway, pending_transaction):
        declined = GatewayDeclinedError(
            "Instrument declined", issue="INSTRUMENT_DECLINED", status_code=422
        )
        with patch.object(mock_gateway, "capture_order", side_effect=declined):
            result = orchestrator.confirm_payment(pending_transaction.pk)

        assert result.error_code == "GATEWAY_DECLINED"
        tx = reload(pending_transaction)
        assert tx.status == TransactionStatus.DECLINED
        assert "GATEWAY_DECLINED" in tx.status_reason

    def test_transient_failure_leaves_pending(self, orchestrator, mock_gateway, pending_transaction):
        with patch.object(
            mock_gateway, "capture_order", side_effect=GatewayUnavailableError("down")
        ):
            result = orchestrator.confirm_payment(pending_transaction.pk)

        assert result.error_code == "GATEWAY_UNAVAILABLE"
        assert reload(pending_transaction).status == TransactionStatus.PENDING

    @pytest.mark.parametrize("capture_status", ["DECLINED", "FAILED"])
    def test_refused_capture_declines(
        self, orchestrator, mock_gateway, pending_transaction, capture_status
    ):
        refused = CaptureResult(
            order_id=pending_transaction.gateway_order_id,
            capture_id="CAP-REFUSED",
            status=capture_status,
            amount=Decimal("105.00"),
            currency="USD",
        )
        with patch.object(mock_gateway, "capture_order", return_value=refused):
            result = orchestrator.confirm_payment(pending_transaction.pk)

        assert result.error_code == "GATEWAY_DECLINED"
        tx = reload(pending_transaction)
        assert tx.status == TransactionStatus.DECLINED
        assert not tx.gateway_capture_id

    def test_pending_capture_stays_pending(self, orchestrator, mock_gateway, pending_transaction):
        held = CaptureResult(
            order_id=pending_transaction.gateway_order_id,
            capture_id="CAP-HELD",
            status="PENDING",
            amount=Decimal("105.00"),
            currency="USD",
        )
        with patch.object(mock_gateway, "capture_order", return_value=held):
            result = orchestrator.confirm_payment(pending_transaction.pk)

        assert result.error_code == "GATEWAY_CAPTURE_PENDING"
        tx = reload(pending_transaction)
        assert tx.status == TransactionStatus.PENDING
        assert not tx.gateway_capture_id

    @pytest.mark.parametrize(
        "amount,currency",
        [
            (Decimal("100.00"), "USD"),
            (Decimal("105.01"), "USD"),
            (Decimal("105.00"), "EUR"),
            (None, "USD"),
        ],
    )
    def test_capture_mismatch_stays_pending(
        self, orchestrator, mock_gateway, pending_transaction, amount, currency
    ):
        short = CaptureResult(
            order_id=pending_transaction.gateway_order_id,
            capture_id="CAP-SHORT",
            status="COMPLETED",
            amount=amount,
            currency=currency,
        )
        with (
            patch.object(mock_gateway, "capture_order", return_value=short),
            patch("settlement.services.orchestrator.logger") as mock_logger,
        ):
            result = orchestrator.confirm_payment(pending_transaction.pk)

        assert result.error_code == "GATEWAY_CAPTURE_MISMATCH"
        assert reload(pending_transaction).status == TransactionStatus.PENDING
        messages = [c.args[0] for c in mock_logger.error.call_args_list]
        assert "Captured amount does not match the charge" in messages

    def test_capture_checks_full_client_total(self, orchestrator, mock_gateway, pending_transaction):
        exact = CaptureResult(
            order_id=pending_transaction.gateway_order_id,
            capture_id="CAP-EXACT",
            status="completed",
            amount=Decimal("105"),
            currency="usd",
        )
        with patch.object(mock_gateway, "capture_order", return_value=exact):
            result = orchestrator.confirm_payment(pending_transaction.pk)

        assert result.success
        tx = reload(pending_transaction)
        assert tx.status == TransactionStatus.ESCROW
        assert tx.gateway_capture_id == "CAP-EXACT"

    def test_uses_window_from_config(self, mock_gateway, pending_transaction, settlement_config):
        from dataclasses import replace

        from settlement.services import SettlementOrchestrator

        orchestrator = SettlementOrchestrator(
            gateway=mock_gateway,
            config=replace(settlement_config, review_window_hours=24),
        )

        tx = orchestrator.confirm_payment(pending_transaction.pk).data

        assert tx.escrow_end - tx.escrow_start == timedelta(hours=24)

    def test_unknown_transaction(self, orchestrator):
        result = orchestrator.confirm_payment(uuid.uuid4())

        assert result.error_code == "TRANSACTION_NOT_FOUND"

    def test_cannot_capture_declined(self, orchestrator, pending_transaction):
        orchestrator.state_machine.decline(pending_transaction, reason="abandoned")

        result = orchestrator.confirm_payment(pending_transaction.pk)

        assert result.error_code == "ILLEGAL_TRANSITION"


class TestCaptureReported:
    def _capture(self, tx, **overrides):
        values = {
            "order_id": tx.gateway_order_id,
            "capture_id": "CAP-WEBHOOK",
            "status": "COMPLETED",
            "amount": tx.client_total,
            "currency": tx.currency,
        }
        values.update(overrides)
        return CaptureResult(**values)

    def test_records_capture_without_calling_gateway(
        self, orchestrator, mock_gateway, pending_transaction
    ):
        with patch.object(mock_gateway, "capture_order") as capture_order:
            result = orchestrator.capture_reported(
                pending_transaction.pk, self._capture(pending_transaction)
            )

        assert result.success
        capture_order.assert_not_called()
        tx = reload(pending_transaction)
        assert tx.status == TransactionStatus.ESCROW
        assert tx.gateway_capture_id == "CAP-WEBHOOK"

    def test_already_captured_is_unchanged(self, orchestrator, escrow_transaction):
        with patch("settlement.services.orchestrator.logger") as mock_logger:
            result = orchestrator.capture_reported(
                escrow_transaction.pk, self._capture(escrow_transaction, capture_id="CAP-OTHER")
            )

        assert result.success
        tx = reload(escrow_transaction)
        assert tx.gateway_capture_id == escrow_transaction.gateway_capture_id
        assert tx.version == escrow_transaction.version
        mock_logger.warning.assert_called_once()

    def test_short_capture_rejected(self, orchestrator, pending_transaction):
        result = orchestrator.capture_reported(
            pending_transaction.pk,
            self._capture(pending_transaction, amount=Decimal("1.00")),
        )

        assert result.error_code == "GATEWAY_CAPTURE_MISMATCH"
        assert reload(pending_transaction).status == TransactionStatus.PENDING

    def test_declined_transaction_cannot_be_captured(self, orchestrator, pending_transaction):
        orchestrator.capture_denied(pending_transaction.pk)

        result = orchestrator.capture_reported(
            pending_transaction.pk, self._capture(pending_transaction)
        )

        assert result.error_code == "ILLEGAL_TRANSITION"
        assert reload(pending_transaction).status == TransactionStatus.DECLINED


class TestCaptureDenied:
    def test_declines_pending(self, orchestrator, pending_transaction):
        result = orchestrator.capture_denied(pending_transaction.pk, reason="capture denied: DENIED")

        assert result.success
        tx = reload(pending_transaction)
        assert tx.status == TransactionStatus.DECLINED
        assert tx.status_reason == "capture denied: DENIED"

    def test_repeat_is_idempotent(self, orchestrator, pending_transaction):
        orchestrator.capture_denied(pending_transaction.pk)
        version = reload(pending_transaction).version

        result = orchestrator.capture_denied(pending_transaction.pk)

        assert result.success
        assert reload(pending_transaction).version == version

    def test_captured_transaction_is_not_declined(self, orchestrator, escrow_transaction):
        result = orchestrator.capture_denied(escrow_transaction.pk)

        assert result.error_code == "ILLEGAL_TRANSITION"
        assert reload(escrow_transaction).status == TransactionStatus.ESCROW


# =============================================================================
# Review, Approval and Deadline Release
# =============================================================================


class TestBeginProviderReview:
    def test_moves_to_review(self, orchestrator, escrow_transaction):
        result = orchestrator.begin_provider_review(escrow_transaction.pk)

        tx = reload(escrow_transaction)
        assert result.success
        assert tx.status == TransactionStatus.PROVIDER_REVIEW
        assert tx.review_started_at is not None

    def test_is_idempotent(self, orchestrator, review_transaction):
        result = orchestrator.begin_provider_review(review_transaction.pk)

        assert result.success
        assert reload(review_transaction).version == review_transaction.version

    def test_pending_cannot_be_reviewed(self, orchestrator, pending_transaction):
        result = orchestrator.begin_provider_review(pending_transaction.pk)

        assert result.error_code == "ILLEGAL_TRANSITION"

    def test_blocked_while_refund_in_flight(self, orchestrator, escrow_transaction):
        Transaction.objects.filter(pk=escrow_transaction.pk).update(
            settlement_claimed_at=timezone.now()
        )

        result = orchestrator.begin_provider_review(escrow_transaction.pk)

        assert result.error_code == "SETTLEMENT_IN_PROGRESS"
        assert reload(escrow_transaction).status == TransactionStatus.ESCROW


class TestApproveByProvider:
    def test_plain_payout(self, orchestrator, mock_gateway, review_transaction, plain_provider):
        with patch.object(
            mock_gateway, "create_payout", wraps=mock_gateway.create_payout
        ) as create_payout:
            result = orchestrator.approve_by_provider(
                review_transaction.pk, review_transaction.provider_id
            )

        assert result.success
        tx = reload(review_transaction)
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.gateway_payout_id.startswith("MOCK-PAYOUT-")
        assert tx.status_reason == "provider_approved"
        assert tx.payout_status == "SUCCESS"
        assert tx.settlement_claimed_at is None
        kwargs = create_payout.call_args.kwargs
        assert kwargs["email"] == plain_provider.payout_email
        assert kwargs["amount"] == Decimal("90.00")
        assert kwargs["sender_batch_id"] == payout_batch_id(tx.pk)

    def test_marketplace_release(self, orchestrator, mock_gateway, marketplace_review_transaction):
        tx = marketplace_review_transaction
        with patch.object(
            mock_gateway, "release_funds", wraps=mock_gateway.release_funds
        ) as release_funds, patch.object(mock_gateway, "create_payout") as create_payout:
            result = orchestrator.approve_by_provider(tx.pk, tx.provider_id)

        assert result.success
        release_funds.assert_called_once()
        assert release_funds.call_args.args[0] == tx.gateway_order_id
        create_payout.assert_not_called()
        stored = reload(tx)
        assert stored.status == TransactionStatus.COMPLETED
        assert stored.gateway_payout_id is None

    def test_only_the_provider_may_approve(self, orchestrator, review_transaction):
        result = orchestrator.approve_by_provider(review_transaction.pk, uuid.uuid4())

        assert result.error_code == "NOT_TRANSACTION_PROVIDER"
        assert reload(review_transaction).status == TransactionStatus.PROVIDER_REVIEW

    def test_not_in_review(self, orchestrator, escrow_transaction):
        result = orchestrator.approve_by_provider(
            escrow_transaction.pk, escrow_transaction.provider_id
        )

        assert result.error_code == "ILLEGAL_TRANSITION"
        assert result.details["current_status"] == TransactionStatus.ESCROW

    def test_second_approval_pays_once(self, orchestrator, mock_gateway, review_transaction):
        with patch.object(
            mock_gateway, "create_payout", wraps=mock_gateway.create_payout
        ) as create_payout:
            first = orchestrator.approve_by_provider(
                review_transaction.pk, review_transaction.provider_id
            )
            second = orchestrator.approve_by_provider(
                review_transaction.pk, review_transaction.provider_id
            )

        assert first.success
        assert second.error_code == "ILLEGAL_TRANSITION"
        assert second.details["current_status"] == TransactionStatus.COMPLETED
        assert create_payout.call_count == 1

    def test_missing_payout_destination(self, orchestrator, review_transaction, plain_provider):
        ProviderPayoutProfile.objects.filter(pk=plain_provider.pk).update(payout_email=None)

        result = orchestrator.approve_by_provider(
            review_transaction.pk, review_transaction.provider_id
        )

        assert result.error_code == "PROVIDER_NOT_SETTLEABLE"
        tx = reload(review_transaction)
        assert tx.status == TransactionStatus.PROVIDER_REVIEW
        assert tx.settlement_claimed_at is None

    def test_destination_added_during_escrow_is_used(self, orchestrator):
        offer = OfferFactory()
        tx = orchestrator.initiate_checkout(offer).data
        assert tx.requires_manual_settlement
        orchestrator.confirm_payment(tx.pk)
        orchestrator.begin_provider_review(tx.pk)
        ProviderPayoutProfileFactory(
            provider_id=offer.provider_id, payout_email="late@example.com"
        )

        result = orchestrator.approve_by_provider(tx.pk, offer.provider_id)

        assert result.success
        assert reload(tx).status == TransactionStatus.COMPLETED

    def test_gateway_failure_releases_claim(self, orchestrator, mock_gateway, review_transaction):
        with patch.object(
            mock_gateway, "create_payout", side_effect=GatewayUnavailableError("down")
        ):
            failed = orchestrator.approve_by_provider(
                review_transaction.pk, review_transaction.provider_id
            )

        assert failed.error_code == "GATEWAY_UNAVAILABLE"
        assert reload(review_transaction).settlement_claimed_at is None

        retried = orchestrator.approve_by_provider(
            review_transaction.pk, review_transaction.provider_id
        )
        assert retried.success

    def test_timeout_keeps_claim(self, orchestrator, mock_gateway, review_transaction):
        timeout = GatewayTimeoutError("timed out", is_retryable=False)
        with patch.object(mock_gateway, "create_payout", side_effect=timeout):
            failed = orchestrator.approve_by_provider(
                review_transaction.pk, review_transaction.provider_id
            )

        assert failed.error_code == "GATEWAY_TIMEOUT"
        assert reload(review_transaction).settlement_claimed_at is not None

        blocked = orchestrator.approve_by_provider(
            review_transaction.pk, review_transaction.provider_id
        )
        assert blocked.error_code == "SETTLEMENT_IN_PROGRESS"

    def test_read_timeout_releases_claim(self, orchestrator, mock_gateway, review_transaction):
        with patch.object(
            mock_gateway, "create_payout", side_effect=GatewayTimeoutError("timed out")
        ):
            failed = orchestrator.approve_by_provider(
                review_transaction.pk, review_transaction.provider_id
            )

        assert failed.error_code == "GATEWAY_TIMEOUT"
        assert reload(review_transaction).settlement_claimed_at is None

    def test_kept_claim_lapses_after_ttl(self, orchestrator, mock_gateway, review_transaction):
        timeout = GatewayTimeoutError("timed out", is_retryable=False)
        with freeze_time(timezone.now()) as frozen:
            with patch.object(mock_gateway, "create_payout", side_effect=timeout):
                orchestrator.approve_by_provider(
                    review_transaction.pk, review_transaction.provider_id
                )
            frozen.tick(timedelta(seconds=orchestrator.config.claim_ttl_seconds + 1))

            with patch.object(
                mock_gateway, "create_payout", wraps=mock_gateway.create_payout
            ) as create_payout:
                retried = orchestrator.approve_by_provider(
                    review_transaction.pk, review_transaction.provider_id
                )

        assert retried.success
        assert create_payout.call_args.kwargs["sender_batch_id"] == payout_batch_id(
            review_transaction.pk
        )


class TestReleaseAfterDeadline:
    def test_not_due(self, orchestrator, review_transaction):
        result = orchestrator.release_after_deadline(review_transaction.pk)

        assert result.error_code == "ESCROW_NOT_DUE"
        assert reload(review_transaction).status == TransactionStatus.PROVIDER_REVIEW

    def test_releases_after_deadline(self, orchestrator, review_transaction):
        with freeze_time(review_transaction.escrow_end + timedelta(seconds=1)):
            result = orchestrator.release_after_deadline(review_transaction.pk)

        assert result.success
        tx = reload(review_transaction)
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.status_reason == "escrow_deadline"
        assert tx.gateway_payout_id.startswith("MOCK-PAYOUT-")

    def test_explicit_clock(self, orchestrator, review_transaction):
        result = orchestrator.release_after_deadline(
            review_transaction.pk, now=review_transaction.escrow_end
        )

        assert result.success

    def test_release_after_approval_is_rejected(self, orchestrator, review_transaction):
        orchestrator.approve_by_provider(review_transaction.pk, review_transaction.provider_id)

        result = orchestrator.release_after_deadline(
            review_transaction.pk, now=review_transaction.escrow_end + timedelta(days=1)
        )

        assert result.error_code == "ILLEGAL_TRANSITION"
        assert result.details["current_status"] == TransactionStatus.COMPLETED

    def test_disputed_is_never_released(self, orchestrator, disputed_transaction):
        result = orchestrator.release_after_deadline(
            disputed_transaction.pk,
            now=disputed_transaction.escrow_end + timedelta(days=1),
        )

        assert result.error_code == "ILLEGAL_TRANSITION"
        assert reload(disputed_transaction).status == TransactionStatus.DISPUTED


# =============================================================================
# Refunds
# =============================================================================


class TestRefund:
    def test_refund_before_capture_skips_gateway(self, orchestrator, mock_gateway, pending_transaction):
        with patch.object(mock_gateway, "refund_capture") as refund_capture:
            result = orchestrator.refund(pending_transaction.pk, reason="changed plans")

        assert result.success
        refund_capture.assert_not_called()
        tx = reload(pending_transaction)
        assert tx.status == TransactionStatus.REFUNDED
        assert tx.refunded_amount is None
        assert tx.gateway_refund_id is None

    def test_full_refund_from_escrow(self, orchestrator, escrow_transaction):
        result = orchestrator.refund(escrow_transaction.pk, reason="cancelled")

        assert result.success
        tx = reload(escrow_transaction)
        assert tx.status == TransactionStatus.REFUNDED
        assert tx.refunded_amount == Decimal("105.00")
        assert tx.gateway_refund_id.startswith("MOCK-REFUND-")
        assert tx.status_reason == "cancelled"

    def test_partial_refund_is_terminal(self, orchestrator, mock_gateway, review_transaction):
        with patch.object(
            mock_gateway, "refund_capture", wraps=mock_gateway.refund_capture
        ) as refund_capture:
            result = orchestrator.refund(review_transaction.pk, amount="50")

        assert result.success
        kwargs = refund_capture.call_args.kwargs
        assert kwargs["amount"] == Decimal("50.00")
        assert kwargs["currency"] == "USD"
        tx = reload(review_transaction)
        assert tx.status == TransactionStatus.REFUNDED
        assert tx.refunded_amount == Decimal("50.00")

    @pytest.mark.parametrize("amount", ["105.01", "0", "-1", "40.005"])
    def test_invalid_amount(self, orchestrator, mock_gateway, escrow_transaction, amount):
        with patch.object(mock_gateway, "refund_capture") as refund_capture:
            result = orchestrator.refund(escrow_transaction.pk, amount=amount)

        assert result.error_code == "VALIDATION_ERROR"
        refund_capture.assert_not_called()
        assert reload(escrow_transaction).status == TransactionStatus.ESCROW

    def test_refund_after_completion_rejected(self, orchestrator, review_transaction):
        orchestrator.approve_by_provider(review_transaction.pk, review_transaction.provider_id)

        result = orchestrator.refund(review_transaction.pk)

        assert result.error_code == "ILLEGAL_TRANSITION"

    def test_refund_during_payout_rejected(self, orchestrator, review_transaction):
        Transaction.objects.filter(pk=review_transaction.pk).update(
            settlement_claimed_at=timezone.now()
        )

        result = orchestrator.refund(review_transaction.pk)

        assert result.error_code == "SETTLEMENT_IN_PROGRESS"
        assert reload(review_transaction).status == TransactionStatus.PROVIDER_REVIEW

    def test_gateway_rejection_releases_claim(self, orchestrator, mock_gateway, escrow_transaction):
        rejection = GatewayRequestError("Refund refused", status_code=422)
        with patch.object(mock_gateway, "refund_capture", side_effect=rejection):
            result = orchestrator.refund(escrow_transaction.pk)

        assert result.error_code == "GATEWAY_REQUEST_REJECTED"
        tx = reload(escrow_transaction)
        assert tx.status == TransactionStatus.ESCROW
        assert tx.settlement_claimed_at is None


# =============================================================================
# Disputes
# =============================================================================


class TestDisputes:
    def test_raise_dispute(self, orchestrator, review_transaction):
        result = orchestrator.raise_dispute(review_transaction.pk, reason="No show")

        assert result.success
        tx = reload(review_transaction)
        assert tx.status == TransactionStatus.DISPUTED
        assert tx.status_reason == "No show"
        assert tx.disputed_at is not None

    def test_dispute_outside_review(self, orchestrator, escrow_transaction):
        result = orchestrator.raise_dispute(escrow_transaction.pk)

        assert result.error_code == "ILLEGAL_TRANSITION"

    def test_dispute_during_payout(self, orchestrator, review_transaction):
        Transaction.objects.filter(pk=review_transaction.pk).update(
            settlement_claimed_at=timezone.now()
        )

        result = orchestrator.raise_dispute(review_transaction.pk)

        assert result.error_code == "SETTLEMENT_IN_PROGRESS"

    def test_resolve_for_provider(self, orchestrator, disputed_transaction):
        result = orchestrator.resolve_dispute(disputed_transaction.pk, "complete")

        assert result.success
        tx = reload(disputed_transaction)
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.gateway_payout_id.startswith("MOCK-PAYOUT-")

    def test_resolve_for_client(self, orchestrator, disputed_transaction):
        result = orchestrator.resolve_dispute(disputed_transaction.pk, "refund")

        assert result.success
        tx = reload(disputed_transaction)
        assert tx.status == TransactionStatus.REFUNDED
        assert tx.refunded_amount == Decimal("105.00")

    def test_unknown_outcome(self, orchestrator, disputed_transaction):
        result = orchestrator.resolve_dispute(disputed_transaction.pk, "split")

        assert result.error_code == "VALIDATION_ERROR"

    def test_resolve_without_dispute(self, orchestrator, review_transaction):
        result = orchestrator.resolve_dispute(review_transaction.pk, "complete")

        assert result.error_code == "ILLEGAL_TRANSITION"
        assert reload(review_transaction).status == TransactionStatus.PROVIDER_REVIEW
