"""
Celery tasks for settlement processing.

Celery's autodiscover_tasks() imports <app>.tasks; the tasks themselves live
in settlement.workers.

Usage:
    from settlement.tasks import process_escrow_releases

    process_escrow_releases.delay()
"""

from settlement.workers import (
    check_payout_statuses,
    process_escrow_releases,
    process_gateway_webhook,
    reconcile_pending_transactions,
    release_escrow_transaction,
    retry_failed_webhooks,
    start_provider_reviews,
)

__all__ = [
    "check_payout_statuses",
    "process_escrow_releases",
    "process_gateway_webhook",
    "reconcile_pending_transactions",
    "release_escrow_transaction",
    "retry_failed_webhooks",
    "start_provider_reviews",
]
