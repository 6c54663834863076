"""
End-to-end settlement lifecycles against the mock gateway.

Each test drives a transaction from checkout to a terminal state through
the same entry points production uses: the orchestrator for user actions
and the escrow scheduler for the clock.
"""

from datetime import timedelta
from decimal import Decimal

from django.dispatch import receiver

from settlement.models import Transaction
from settlement.signals import transaction_status_changed
from settlement.state_machines import SettlementStrategy, TransactionStatus
from settlement.tests.factories import OfferFactory, PlatformSettingFactory
from settlement.workers import EscrowScheduler


def test_unattended_release(orchestrator, offer, plain_provider):
    tx = orchestrator.initiate_checkout(offer).data
    tx = orchestrator.confirm_payment(tx.pk).data
    scheduler = EscrowScheduler(orchestrator)

    assert scheduler.run_once(now=tx.escrow_start) == {"reviews_started": 1}
    assert scheduler.run_once(now=tx.escrow_end - timedelta(minutes=1)) == {
        "reviews_started": 0
    }
    assert scheduler.run_once(now=tx.escrow_end) == {"reviews_started": 0, "released": 1}

    settled = Transaction.objects.get(pk=tx.pk)
    assert settled.status == TransactionStatus.COMPLETED
    assert settled.status_reason == "escrow_deadline"
    assert settled.amount == settled.provider_net + settled.platform_fee


def test_marketplace_approval(orchestrator, offer, marketplace_provider):
    tx = orchestrator.initiate_checkout(offer).data
    assert tx.settlement_strategy == SettlementStrategy.MARKETPLACE

    orchestrator.confirm_payment(tx.pk)
    orchestrator.begin_provider_review(tx.pk)
    result = orchestrator.approve_by_provider(tx.pk, offer.provider_id)

    assert result.success
    assert result.data.status == TransactionStatus.COMPLETED
    assert result.data.gateway_payout_id is None


def test_dispute_then_refund(orchestrator, offer, plain_provider):
    tx = orchestrator.initiate_checkout(offer).data
    orchestrator.confirm_payment(tx.pk)
    orchestrator.begin_provider_review(tx.pk)
    orchestrator.raise_dispute(tx.pk, reason="Service not delivered")

    # The scheduler never releases a disputed transaction
    scheduler = EscrowScheduler(orchestrator)
    scheduler.run_once(now=tx.created_at + timedelta(days=10))
    assert Transaction.objects.get(pk=tx.pk).status == TransactionStatus.DISPUTED

    result = orchestrator.resolve_dispute(tx.pk, "refund")

    assert result.data.status == TransactionStatus.REFUNDED
    assert result.data.refunded_amount == Decimal("105.00")


def test_platform_setting_changes_fees(db, mock_gateway):
    from settlement.config import SettlementConfig
    from settlement.services import SettlementOrchestrator

    PlatformSettingFactory(key="provider_fee_percent", value="20")
    PlatformSettingFactory(key="client_fee_percent", value="0")
    orchestrator = SettlementOrchestrator(
        gateway=mock_gateway, config=SettlementConfig.from_settings()
    )

    tx = orchestrator.initiate_checkout(OfferFactory(price=Decimal("50.00"))).data

    assert tx.client_total == Decimal("50.00")
    assert tx.platform_fee == Decimal("10.00")
    assert tx.provider_net == Decimal("40.00")


def test_every_transition_is_signalled(orchestrator, offer, plain_provider):
    seen = []

    @receiver(transaction_status_changed, weak=False)
    def record(sender, transaction, previous_status, **kwargs):
        seen.append((previous_status, transaction.status))

    try:
        tx = orchestrator.initiate_checkout(offer).data
        orchestrator.confirm_payment(tx.pk)
        orchestrator.begin_provider_review(tx.pk)
        orchestrator.approve_by_provider(tx.pk, offer.provider_id)
    finally:
        transaction_status_changed.disconnect(record)

    assert seen == [
        (TransactionStatus.PENDING, TransactionStatus.ESCROW),
        (TransactionStatus.ESCROW, TransactionStatus.PROVIDER_REVIEW),
        (TransactionStatus.PROVIDER_REVIEW, TransactionStatus.COMPLETED),
    ]
