"""
Workers for background settlement processing.

This module contains Celery tasks for:
- EscrowScheduler: starts provider reviews and releases funds at the deadline
- PendingReconciler: recovers lost captures and declines abandoned checkouts
- PayoutFollowUp: flags payouts the gateway denied or returned
- process_gateway_webhook: runs the handler for a stored gateway webhook

Usage:
    from settlement.workers import (
        process_escrow_releases,
        release_escrow_transaction,
        start_provider_reviews,
        reconcile_pending_transactions,
    )

    process_escrow_releases.delay()
    release_escrow_transaction.delay(str(transaction_id))
"""

from settlement.workers.escrow_scheduler import (
    EscrowScheduler,
    ReleaseOutcome,
    process_escrow_releases,
    release_escrow_transaction,
    start_provider_reviews,
)
from settlement.workers.reconciliation import (
    PayoutFollowUp,
    PendingReconciler,
    check_payout_statuses,
    reconcile_pending_transactions,
)
from settlement.workers.webhook_processor import (
    process_gateway_webhook,
    retry_failed_webhooks,
)

__all__ = [
    # Escrow Scheduler
    "EscrowScheduler",
    "ReleaseOutcome",
    "process_escrow_releases",
    "release_escrow_transaction",
    "start_provider_reviews",
    # Reconciliation
    "PayoutFollowUp",
    "PendingReconciler",
    "check_payout_statuses",
    "reconcile_pending_transactions",
    # Webhooks
    "process_gateway_webhook",
    "retry_failed_webhooks",
]
