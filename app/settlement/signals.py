"""
Django signals for the settlement app.

transaction_status_changed is sent after every persisted transition, once
the guarded UPDATE has succeeded. Notification layers hook in here.

Signal kwargs:
    sender: Transaction model class
    transaction: Transaction instance (already in the new status)
    previous_status: Status before the transition
    transition: Name of the transition method (e.g. "capture")

Usage:
    from django.dispatch import receiver
    from settlement.signals import transaction_status_changed

    @receiver(transaction_status_changed)
    def notify_provider(sender, transaction, previous_status, transition, **kwargs):
        if transition == "begin_review":
            ...
"""

from __future__ import annotations

import logging

from django.dispatch import Signal, receiver

logger = logging.getLogger(__name__)

transaction_status_changed = Signal()


@receiver(transaction_status_changed)
def log_status_change(sender, transaction, previous_status, transition, **kwargs):
    """Audit trail of every state change."""
    logger.info(
        f"Transaction {transaction.pk} {previous_status} -> {transaction.status}",
        extra={
            "transaction_id": str(transaction.pk),
            "previous_status": previous_status,
            "new_status": transaction.status,
            "transition": transition,
            "version": transaction.version,
        },
    )
