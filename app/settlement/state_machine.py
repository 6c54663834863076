"""
Guarded application of Transaction transitions.

TransactionStateMachine is the only code that changes a Transaction's
status. For each transition it:

    1. Checks the django-fsm source states (can_proceed)
    2. Runs the transition method on the in-memory instance
    3. Persists it with a conditional UPDATE on the previous status
    4. Sends transaction_status_changed

Step 1 failing raises IllegalTransitionError. Step 3 writing no row means
another worker changed the record first; the record is re-read and
IllegalTransitionError is raised with details["concurrent"] = True and the
winner's status in details["current_status"]. In both cases the stored
record is unchanged and the in-memory instance must be discarded.

Usage:
    machine = TransactionStateMachine(TransactionRepository())
    machine.capture(tx, capture_id="CAP-1", review_window=timedelta(hours=72))
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from django.db.models import Q
from django_fsm import can_proceed

from settlement.exceptions import IllegalTransitionError
from settlement.models import Transaction
from settlement.repository import TransactionRepository
from settlement.signals import transaction_status_changed

logger = logging.getLogger(__name__)

# Fields each transition writes, besides status
TRANSITION_FIELDS = {
    "capture": ("gateway_capture_id", "escrow_start", "escrow_end"),
    "begin_review": ("review_started_at",),
    "complete": (
        "gateway_payout_id",
        "payout_status",
        "status_reason",
        "completed_at",
        "settlement_claimed_at",
    ),
    "refund": (
        "gateway_refund_id",
        "refunded_amount_minor",
        "status_reason",
        "refunded_at",
        "settlement_claimed_at",
    ),
    "decline": ("status_reason", "declined_at"),
    "dispute": ("status_reason", "disputed_at"),
    "resolve_completed": (
        "gateway_payout_id",
        "payout_status",
        "completed_at",
        "settlement_claimed_at",
    ),
    "resolve_refunded": (
        "gateway_refund_id",
        "refunded_amount_minor",
        "refunded_at",
        "settlement_claimed_at",
    ),
}


class TransactionStateMachine:
    """Applies and persists Transaction transitions."""

    def __init__(
        self,
        repository: TransactionRepository,
        claim_ttl: timedelta = timedelta(seconds=300),
    ):
        self.repository = repository
        self.claim_ttl = claim_ttl

    # =========================================================================
    # Transitions
    # =========================================================================

    def capture(
        self,
        tx: Transaction,
        capture_id: str,
        review_window: timedelta,
        now: datetime | None = None,
    ) -> Transaction:
        return self._apply(
            tx,
            "capture",
            guard=Q(gateway_capture_id__isnull=True),
            capture_id=capture_id,
            review_window=review_window,
            captured_at=now,
        )

    def begin_review(self, tx: Transaction, now: datetime | None = None) -> Transaction:
        """Start the review period, unless a refund for this transaction is in flight."""
        return self._apply(
            tx,
            "begin_review",
            guard=self.repository.no_live_claim(self.claim_ttl, now),
            started_at=now,
        )

    def complete(
        self,
        tx: Transaction,
        payout_id: str | None = None,
        reason: str = "",
        now: datetime | None = None,
        payout_status: str = "",
    ) -> Transaction:
        return self._apply(
            tx,
            "complete",
            payout_id=payout_id,
            reason=reason,
            completed_at=now,
            payout_status=payout_status,
        )

    def refund(
        self,
        tx: Transaction,
        refund_id: str | None = None,
        amount: Decimal | None = None,
        reason: str = "",
        now: datetime | None = None,
    ) -> Transaction:
        return self._apply(
            tx,
            "refund",
            refund_id=refund_id,
            amount=amount,
            reason=reason,
            refunded_at=now,
        )

    def decline(
        self, tx: Transaction, reason: str = "", now: datetime | None = None
    ) -> Transaction:
        return self._apply(tx, "decline", reason=reason, declined_at=now)

    def dispute(
        self,
        tx: Transaction,
        reason: str = "",
        now: datetime | None = None,
    ) -> Transaction:
        """Open a dispute, unless a payout for this transaction is in flight."""
        return self._apply(
            tx,
            "dispute",
            guard=self.repository.no_live_claim(self.claim_ttl, now),
            reason=reason,
            disputed_at=now,
        )

    def resolve_completed(
        self,
        tx: Transaction,
        payout_id: str | None = None,
        now: datetime | None = None,
        payout_status: str = "",
    ) -> Transaction:
        return self._apply(
            tx,
            "resolve_completed",
            payout_id=payout_id,
            completed_at=now,
            payout_status=payout_status,
        )

    def resolve_refunded(
        self,
        tx: Transaction,
        refund_id: str | None = None,
        amount: Decimal | None = None,
        now: datetime | None = None,
    ) -> Transaction:
        return self._apply(
            tx,
            "resolve_refunded",
            refund_id=refund_id,
            amount=amount,
            refunded_at=now,
        )

    # =========================================================================
    # Core
    # =========================================================================

    def _apply(
        self,
        tx: Transaction,
        name: str,
        guard: Q | None = None,
        **kwargs,
    ) -> Transaction:
        method = getattr(tx, name)
        previous_status = tx.status
        log_context = {
            "transaction_id": str(tx.pk),
            "current_status": previous_status,
            "transition": name,
        }

        if not can_proceed(method):
            logger.warning(
                f"Illegal transition {name} from {previous_status}",
                extra=log_context,
            )
            raise IllegalTransitionError(
                f"Cannot {name} a transaction in status {previous_status}",
                details=log_context,
            )

        method(**kwargs)

        if not self.repository.save(tx, previous_status, TRANSITION_FIELDS[name], guard):
            current = self.repository.get(tx.pk)
            details = {
                **log_context,
                "current_status": current.status,
                "concurrent": True,
            }
            logger.warning(
                f"Transition {name} lost a concurrent update",
                extra=details,
            )
            raise IllegalTransitionError(
                f"Transaction changed while applying {name} "
                f"(now {current.status})",
                details=details,
            )

        transaction_status_changed.send(
            sender=Transaction,
            transaction=tx,
            previous_status=previous_status,
            transition=name,
        )
        return tx
