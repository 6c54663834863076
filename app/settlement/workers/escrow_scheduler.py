"""
Escrow scheduler: starts provider reviews and releases funds at the deadline.

EscrowScheduler does one pass over the database:

    1. ESCROW transactions -> PROVIDER_REVIEW (provider is notified)
    2. PROVIDER_REVIEW transactions past escrow_end -> COMPLETED, through the
       same payout path as a provider approval

Several schedulers (or a scheduler and an approving provider) may pick up
the same transaction. The settlement claim and the guarded transition make
sure it is paid once; the others report "already_settled" or "in_progress".

Tasks:
- process_escrow_releases: Periodic scan that queues one release task per due transaction
- release_escrow_transaction: Releases one transaction
- start_provider_reviews: Periodic ESCROW -> PROVIDER_REVIEW sweep

Usage:
    # Typically called via celery-beat schedule
    from settlement.workers import process_escrow_releases

    process_escrow_releases.delay()
    release_escrow_transaction.delay(str(transaction.id))

    # Synchronous pass (management shell, tests)
    EscrowScheduler(SettlementOrchestrator.from_settings()).run_once()
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime

from celery import shared_task
from django.utils import timezone

from core.services import ServiceResult
from settlement.exceptions import GatewayRateLimitError, GatewayUnavailableError
from settlement.services import SettlementOrchestrator

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

RELEASE_STATUS_BY_ERROR_CODE = {
    "TRANSACTION_NOT_FOUND": "not_found",
    "ESCROW_NOT_DUE": "not_due",
    "ILLEGAL_TRANSITION": "already_settled",
    "SETTLEMENT_IN_PROGRESS": "in_progress",
    "PROVIDER_NOT_SETTLEABLE": "not_settleable",
}

# Failures Celery should retry with backoff
RETRYABLE_RELEASE_ERRORS = {
    "GATEWAY_UNAVAILABLE": GatewayUnavailableError,
    "GATEWAY_RATE_LIMITED": GatewayRateLimitError,
}


@dataclass
class ReleaseOutcome:
    """Result of one release attempt, as reported by the release task."""

    status: str
    transaction_id: str
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def from_result(cls, transaction_id: str, result: ServiceResult) -> ReleaseOutcome:
        if result.success:
            return cls(status="released", transaction_id=transaction_id)
        return cls(
            status=RELEASE_STATUS_BY_ERROR_CODE.get(result.error_code, "release_failed"),
            transaction_id=transaction_id,
            error=result.error,
            error_code=result.error_code,
        )

    @property
    def is_retryable(self) -> bool:
        return self.error_code in RETRYABLE_RELEASE_ERRORS

    def to_dict(self) -> dict:
        data = {"status": self.status, "transaction_id": self.transaction_id}
        if self.error_code:
            data["error"] = self.error
            data["error_code"] = self.error_code
        return data


# =============================================================================
# Scheduler
# =============================================================================


class EscrowScheduler:
    """One synchronous pass of review promotion and deadline release."""

    def __init__(self, orchestrator: SettlementOrchestrator):
        self.orchestrator = orchestrator
        self.repository = orchestrator.repository
        self.batch_size = orchestrator.config.release_batch_size

    def run_once(self, now: datetime | None = None) -> dict:
        """
        Promote escrowed transactions, then release every due one.

        Returns:
            Dict with reviews_started and a count per release status
        """
        now = now or timezone.now()
        reviews_started = self.start_reviews()
        counts = Counter(
            self.release_one(transaction_id, now).status
            for transaction_id in self.due_transaction_ids(now)
        )
        logger.info(
            "Escrow scheduler pass complete",
            extra={"reviews_started": reviews_started, **counts},
        )
        return {"reviews_started": reviews_started, **counts}

    def start_reviews(self) -> int:
        ids = list(
            self.repository.list_awaiting_review().values_list("id", flat=True)[
                : self.batch_size
            ]
        )
        started = 0
        for transaction_id in ids:
            if self.orchestrator.begin_provider_review(transaction_id).success:
                started += 1
        return started

    def due_transaction_ids(self, now: datetime) -> list:
        return list(
            self.repository.list_due_for_escrow_release(now).values_list(
                "id", flat=True
            )[: self.batch_size]
        )

    def release_one(self, transaction_id, now: datetime | None = None) -> ReleaseOutcome:
        result = self.orchestrator.release_after_deadline(transaction_id, now=now)
        outcome = ReleaseOutcome.from_result(str(transaction_id), result)
        if outcome.status == "released":
            logger.info("Escrow released", extra={"transaction_id": str(transaction_id)})
        elif outcome.status == "release_failed":
            logger.error(
                f"Escrow release failed: {outcome.error}",
                extra={
                    "transaction_id": str(transaction_id),
                    "error_code": outcome.error_code,
                },
            )
        else:
            logger.info(
                f"Escrow release skipped: {outcome.status}",
                extra={"transaction_id": str(transaction_id)},
            )
        return outcome


# =============================================================================
# Periodic Task: Scan for Due Releases
# =============================================================================


@shared_task(bind=True)
def process_escrow_releases(self) -> dict:
    """
    Queue a release task for every transaction past its review deadline.

    Idempotent: a transaction queued twice is released once, the second
    task reports already_settled.

    Returns:
        Dict with queued_count
    """
    logger.info("Starting escrow release scan")
    scheduler = EscrowScheduler(SettlementOrchestrator.from_settings())

    queued_count = 0
    for transaction_id in scheduler.due_transaction_ids(timezone.now()):
        release_escrow_transaction.delay(str(transaction_id))
        queued_count += 1

    logger.info(
        f"Escrow release scan complete: queued {queued_count} transactions",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count}


@shared_task(bind=True)
def start_provider_reviews(self) -> dict:
    """Move escrowed transactions into provider review."""
    scheduler = EscrowScheduler(SettlementOrchestrator.from_settings())
    started = scheduler.start_reviews()
    logger.info(
        f"Started {started} provider reviews",
        extra={"started_count": started},
    )
    return {"started_count": started}


# =============================================================================
# Individual Release Task
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=tuple(RETRYABLE_RELEASE_ERRORS.values()),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def release_escrow_transaction(self, transaction_id: str) -> dict:
    """
    Release one transaction whose review deadline has passed.

    Returns:
        Dict with:
        - status: One of "released", "not_found", "not_due",
                  "already_settled", "in_progress", "not_settleable",
                  "release_failed"
        - transaction_id: The transaction processed
        - error / error_code: When not released

    Raises:
        GatewayUnavailableError, GatewayRateLimitError: To trigger Celery retry
    """
    scheduler = EscrowScheduler(SettlementOrchestrator.from_settings())
    outcome = scheduler.release_one(transaction_id)
    if outcome.is_retryable:
        raise RETRYABLE_RELEASE_ERRORS[outcome.error_code](
            outcome.error or "Gateway unavailable",
            details={"transaction_id": outcome.transaction_id},
        )
    return outcome.to_dict()


__all__ = [
    "EscrowScheduler",
    "ReleaseOutcome",
    "process_escrow_releases",
    "release_escrow_transaction",
    "start_provider_reviews",
]
