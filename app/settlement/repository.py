"""
Persistence for Transactions.

Every state change is written with one conditional UPDATE:

    UPDATE settlement_transaction
       SET status = ?, <transition fields>, version = version + 1, updated_at = ?
     WHERE id = ? AND status = ? [AND guard]

so two workers acting on the same record cannot both succeed. The caller
learns it lost by getting 0 rows back.

Money movement (payouts, releases, refunds) is additionally single-flighted
by a settlement claim, a timestamp set with a conditional UPDATE that only
one worker can win until it is released or grows older than the TTL.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import F, Q, QuerySet
from django.utils import timezone

from settlement.exceptions import TransactionNotFoundError
from settlement.gateway.base import PAYOUT_FAILED_STATUSES, PAYOUT_SETTLED
from settlement.models import Transaction
from settlement.state_machines import TransactionStatus

logger = logging.getLogger(__name__)


class TransactionRepository:
    """Reads and guarded writes for Transaction records."""

    model = Transaction

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, transaction_id: uuid.UUID | str) -> Transaction:
        """
        Load a transaction by id.

        Raises:
            TransactionNotFoundError: No such transaction (or malformed id)
        """
        try:
            return self.model.objects.get(pk=transaction_id)
        except (self.model.DoesNotExist, DjangoValidationError, ValueError) as exc:
            raise TransactionNotFoundError(
                f"Transaction {transaction_id} not found",
                details={"transaction_id": str(transaction_id)},
            ) from exc

    def get_for_offer(self, offer_id: uuid.UUID) -> Transaction | None:
        return self.model.objects.filter(offer_id=offer_id).first()

    def find_by_order(self, order_id: str) -> Transaction | None:
        return self.model.objects.filter(gateway_order_id=order_id).first()

    def list_due_for_escrow_release(self, before: datetime) -> QuerySet[Transaction]:
        """PROVIDER_REVIEW transactions whose review deadline has passed, oldest first."""
        return self.model.objects.filter(
            status=TransactionStatus.PROVIDER_REVIEW,
            escrow_end__lte=before,
        ).order_by("escrow_end")

    def list_awaiting_review(self) -> QuerySet[Transaction]:
        """ESCROW transactions whose provider has not been notified yet."""
        return self.model.objects.filter(status=TransactionStatus.ESCROW).order_by(
            "escrow_start"
        )

    def list_stale_pending(self, before: datetime) -> QuerySet[Transaction]:
        """PENDING transactions created before the cutoff."""
        return self.model.objects.filter(
            status=TransactionStatus.PENDING,
            created_at__lt=before,
        ).order_by("created_at")

    def list_unsettled_payouts(self) -> QuerySet[Transaction]:
        """COMPLETED transactions whose payout batch has not reached a final status."""
        return (
            self.model.objects.filter(
                status=TransactionStatus.COMPLETED,
                gateway_payout_id__isnull=False,
                requires_manual_settlement=False,
            )
            .exclude(payout_status__in=[PAYOUT_SETTLED, *PAYOUT_FAILED_STATUSES])
            .order_by("completed_at")
        )

    # =========================================================================
    # Writes
    # =========================================================================

    def create(self, tx: Transaction) -> Transaction:
        """
        Insert a new transaction.

        Runs in its own savepoint so an IntegrityError (duplicate offer)
        leaves an enclosing atomic block usable.
        """
        with transaction.atomic():
            tx.save(force_insert=True)
        return tx

    def save(
        self,
        tx: Transaction,
        expected_status: str,
        fields: Iterable[str],
        guard: Q | None = None,
    ) -> bool:
        """
        Persist an in-memory transition if the stored status still matches.

        Args:
            tx: Transaction whose status and fields were changed in memory
            expected_status: Status the row must still have
            fields: Fields the transition changed, besides status
            guard: Extra condition on the row (e.g. capture id still null)

        Returns:
            True if the row was written, False if another writer got there first
        """
        now = timezone.now()
        values = {name: getattr(tx, name) for name in fields}
        values["status"] = tx.status

        queryset = self.model.objects.filter(pk=tx.pk, status=expected_status)
        if guard is not None:
            queryset = queryset.filter(guard)
        updated = queryset.update(**values, version=F("version") + 1, updated_at=now)

        if updated:
            tx.version += 1
            tx.updated_at = now
        return bool(updated)

    def claim_settlement(
        self,
        transaction_id: uuid.UUID,
        sources: Iterable[str],
        ttl: timedelta,
        now: datetime | None = None,
    ) -> bool:
        """
        Take the settlement claim on a transaction.

        Succeeds only if the transaction is in one of `sources` and nobody
        holds a live claim (claims older than ttl are considered abandoned).
        """
        now = now or timezone.now()
        updated = (
            self.model.objects.filter(pk=transaction_id, status__in=list(sources))
            .filter(self.no_live_claim(ttl, now))
            .update(settlement_claimed_at=now, updated_at=now)
        )
        return bool(updated)

    def record_payout_status(
        self,
        transaction_id: uuid.UUID,
        payout_status: str,
        checked_at: datetime,
        requires_manual_settlement: bool = False,
    ) -> None:
        """Store the payout status read from the gateway; optionally flag the row."""
        values = {
            "payout_status": payout_status,
            "payout_checked_at": checked_at,
            "updated_at": timezone.now(),
        }
        if requires_manual_settlement:
            values["requires_manual_settlement"] = True
        self.model.objects.filter(pk=transaction_id).update(**values)

    def release_settlement_claim(self, transaction_id: uuid.UUID) -> None:
        self.model.objects.filter(pk=transaction_id).update(
            settlement_claimed_at=None, updated_at=timezone.now()
        )

    @staticmethod
    def no_live_claim(ttl: timedelta, now: datetime | None = None) -> Q:
        """Guard matching rows nobody is currently settling."""
        now = now or timezone.now()
        return Q(settlement_claimed_at__isnull=True) | Q(
            settlement_claimed_at__lt=now - ttl
        )
