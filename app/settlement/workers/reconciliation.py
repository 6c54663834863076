"""
Reconciliation of local transactions against the gateway.

PendingReconciler
-----------------
A transaction can stay PENDING for two reasons: the payer never approved
the order, or the capture succeeded at the gateway but the local write was
lost (process crash, timeout on our side). For every PENDING transaction
older than STALE_PENDING_AFTER_MINUTES the gateway is asked:

    capture COMPLETED for client_total -> record it (PENDING -> ESCROW)
    capture DECLINED or FAILED          -> decline
    capture still PENDING               -> leave alone, check again next run
    order VOIDED or unknown             -> decline as abandoned
    older than STALE_PENDING_EXPIRE_HOURS -> decline as abandoned

Reconciliation only records captures that already happened; it never
captures an order itself.

PayoutFollowUp
--------------
A payout batch is accepted before the money reaches the provider, so a
COMPLETED plain transaction may still be unpaid. Each run reads the batch
status of transactions whose payout is not final. Denied, failed or
returned payouts flag the transaction requires_manual_settlement and are
logged at ERROR for an operator.

Tasks:
- reconcile_pending_transactions: Periodic pass over stale PENDING transactions
- check_payout_statuses: Periodic pass over unsettled payout batches
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime

from celery import shared_task
from django.utils import timezone

from settlement.exceptions import (
    GatewayCaptureMismatchError,
    GatewayCapturePendingError,
    GatewayDeclinedError,
    GatewayError,
    GatewayRequestError,
    IllegalTransitionError,
)
from settlement.gateway import CaptureResult
from settlement.gateway.base import PAYOUT_FAILED_STATUSES, PAYOUT_SETTLED
from settlement.models import Transaction
from settlement.services import SettlementOrchestrator

logger = logging.getLogger(__name__)

ABANDONED_ORDER_STATUSES = frozenset({"VOIDED"})


class PendingReconciler:
    """Resolves stale PENDING transactions from the gateway's view of their orders."""

    def __init__(self, orchestrator: SettlementOrchestrator):
        self.orchestrator = orchestrator
        self.gateway = orchestrator.gateway
        self.repository = orchestrator.repository
        self.state_machine = orchestrator.state_machine
        self.config = orchestrator.config

    def run(self, now: datetime | None = None) -> dict:
        """
        Reconcile one batch of stale PENDING transactions.

        Returns:
            Dict with a count per outcome: recovered, declined, unchanged, failed
        """
        now = now or timezone.now()
        stale = self.repository.list_stale_pending(now - self.config.stale_pending_after)[
            : self.config.release_batch_size
        ]
        counts = Counter({"recovered": 0, "declined": 0, "unchanged": 0, "failed": 0})
        for tx in stale:
            counts[self.reconcile(tx, now)] += 1

        logger.info("Pending reconciliation complete", extra=dict(counts))
        return dict(counts)

    def reconcile(self, tx: Transaction, now: datetime) -> str:
        log_context = {
            "transaction_id": str(tx.pk),
            "gateway_order_id": tx.gateway_order_id,
        }
        expired = now - tx.created_at >= self.config.stale_pending_expire

        if not tx.gateway_order_id:
            return self._decline(tx, "abandoned: no gateway order") if expired else "unchanged"

        try:
            order = self.gateway.get_order_status(tx.gateway_order_id)
        except GatewayRequestError as exc:
            if exc.status_code == 404:
                return self._decline(tx, "abandoned: gateway order not found")
            logger.error(f"Order lookup rejected: {exc}", extra=log_context)
            return "failed"
        except GatewayError as exc:
            logger.warning(f"Order lookup failed, will retry: {exc}", extra=log_context)
            return "failed"

        if order.capture_id:
            return self._recover_capture(tx, order, log_context)
        if order.status in ABANDONED_ORDER_STATUSES:
            return self._decline(tx, f"abandoned: gateway order {order.status}")
        if expired:
            return self._decline(tx, "abandoned: checkout expired")
        return "unchanged"

    def _recover_capture(self, tx: Transaction, order, log_context: dict) -> str:
        log_context = {**log_context, "capture_id": order.capture_id}
        capture = CaptureResult(
            order_id=order.order_id,
            capture_id=order.capture_id,
            status=order.capture_status or "",
            amount=order.capture_amount,
            currency=order.capture_currency,
            raw_response=order.raw_response,
        )
        try:
            self.orchestrator.apply_capture(tx, capture)
        except GatewayDeclinedError:
            return "declined"
        except GatewayCapturePendingError:
            return "unchanged"
        except GatewayCaptureMismatchError:
            return "failed"
        except IllegalTransitionError as exc:
            logger.warning(f"Could not record recovered capture: {exc}", extra=log_context)
            return "failed"
        logger.warning("Recovered capture missing from local state", extra=log_context)
        return "recovered"

    def _decline(self, tx: Transaction, reason: str) -> str:
        try:
            self.state_machine.decline(tx, reason=reason)
        except IllegalTransitionError as exc:
            logger.info(
                "Transaction moved on before it could be declined",
                extra={
                    "transaction_id": str(tx.pk),
                    "current_status": exc.details.get("current_status"),
                },
            )
            return "unchanged"
        logger.info(
            "Declined abandoned checkout",
            extra={"transaction_id": str(tx.pk), "reason": reason},
        )
        return "declined"


class PayoutFollowUp:
    """Tracks payout batches of COMPLETED transactions to a final status."""

    def __init__(self, orchestrator: SettlementOrchestrator):
        self.gateway = orchestrator.gateway
        self.repository = orchestrator.repository
        self.config = orchestrator.config

    def run(self, now: datetime | None = None) -> dict:
        """
        Check one batch of unsettled payouts.

        Returns:
            Dict with a count per outcome: settled, unpaid, pending, failed
        """
        now = now or timezone.now()
        unsettled = self.repository.list_unsettled_payouts()[: self.config.release_batch_size]
        counts = Counter({"settled": 0, "unpaid": 0, "pending": 0, "failed": 0})
        for tx in unsettled:
            counts[self.follow_up(tx, now)] += 1

        logger.info("Payout follow-up complete", extra=dict(counts))
        return dict(counts)

    def follow_up(self, tx: Transaction, now: datetime) -> str:
        log_context = {
            "transaction_id": str(tx.pk),
            "payout_id": tx.gateway_payout_id,
            "provider_id": str(tx.provider_id),
        }
        try:
            payout = self.gateway.get_payout_status(tx.gateway_payout_id)
        except GatewayError as exc:
            logger.warning(f"Payout lookup failed, will retry: {exc}", extra=log_context)
            return "failed"

        if payout.is_failed:
            status = (
                payout.item_status
                if payout.item_status in PAYOUT_FAILED_STATUSES
                else payout.status
            )
            self.repository.record_payout_status(
                tx.pk, status, now, requires_manual_settlement=True
            )
            logger.error(
                f"Payout {status}; provider was not paid, manual settlement required",
                extra={**log_context, "payout_status": status},
            )
            return "unpaid"

        if payout.is_settled:
            self.repository.record_payout_status(tx.pk, PAYOUT_SETTLED, now)
            logger.info("Payout settled", extra=log_context)
            return "settled"

        self.repository.record_payout_status(tx.pk, payout.item_status or payout.status, now)
        return "pending"


@shared_task(bind=True)
def reconcile_pending_transactions(self) -> dict:
    """
    Periodic reconciliation of stale PENDING transactions.

    Returns:
        Dict with recovered, declined, unchanged and failed counts
    """
    logger.info("Starting pending transaction reconciliation")
    return PendingReconciler(SettlementOrchestrator.from_settings()).run()


@shared_task(bind=True)
def check_payout_statuses(self) -> dict:
    """
    Periodic follow-up of payout batches that have not reached a final status.

    Returns:
        Dict with settled, unpaid, pending and failed counts
    """
    logger.info("Starting payout follow-up")
    return PayoutFollowUp(SettlementOrchestrator.from_settings()).run()


__all__ = [
    "PayoutFollowUp",
    "PendingReconciler",
    "check_payout_statuses",
    "reconcile_pending_transactions",
]
