"""
State enums for settlement models.

These are Django TextChoices for database storage; TransactionStatus backs
the django-fsm field on Transaction.

Transaction lifecycle:
    PENDING → ESCROW → PROVIDER_REVIEW → COMPLETED
    PENDING/ESCROW/PROVIDER_REVIEW → REFUNDED
    PENDING → DECLINED
    PROVIDER_REVIEW → DISPUTED → COMPLETED | REFUNDED
"""

from django.db import models


class TransactionStatus(models.TextChoices):
    """
    States for the Transaction model lifecycle.

    Terminal states: COMPLETED, REFUNDED, DECLINED

    State Flow:
        PENDING: checkout started, gateway order open, nothing charged
        ESCROW: gateway confirmed capture, funds held
        PROVIDER_REVIEW: provider notified, review deadline running
        COMPLETED: provider paid (approval or deadline)
        REFUNDED: client refunded
        DECLINED: capture failed or checkout abandoned
        DISPUTED: client raised a dispute during review
    """

    PENDING = "pending", "Pending"
    ESCROW = "escrow", "Escrow"
    PROVIDER_REVIEW = "provider_review", "Provider Review"
    COMPLETED = "completed", "Completed"
    REFUNDED = "refunded", "Refunded"
    DECLINED = "declined", "Declined"
    DISPUTED = "disputed", "Disputed"

    @classmethod
    def terminal(cls) -> frozenset[str]:
        return frozenset({cls.COMPLETED, cls.REFUNDED, cls.DECLINED})


class SettlementStrategy(models.TextChoices):
    """
    How the provider gets paid.

    MARKETPLACE: split order with delayed disbursement to the provider's
        merchant account; settlement releases the held funds.
    PLAIN: the platform receives the whole charge; settlement sends a
        payout to the provider's email (or is handled manually).
    """

    PLAIN = "plain", "Plain Order"
    MARKETPLACE = "marketplace", "Marketplace Split"


class OfferStatus(models.TextChoices):
    """States of the offer a transaction settles."""

    PENDING = "pending", "Pending"
    ACCEPTED = "accepted", "Accepted"
    DECLINED = "declined", "Declined"
    CANCELLED = "cancelled", "Cancelled"
    EXPIRED = "expired", "Expired"

    @classmethod
    def payable(cls) -> frozenset[str]:
        return frozenset({cls.PENDING, cls.ACCEPTED})


class DisputeOutcome(models.TextChoices):
    """Admin decision closing a dispute."""

    COMPLETE = "complete", "Release to provider"
    REFUND = "refund", "Refund client"


class WebhookEventStatus(models.TextChoices):
    """Processing state of a stored gateway webhook event."""

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"
    FAILED = "failed", "Failed"
