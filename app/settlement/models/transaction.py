"""
Transaction model: the settlement record of one payment.

A Transaction is created PENDING at checkout and tracks the money from
gateway order, through escrow and provider review, to payout or refund.

Usage:
    from settlement.models import Transaction
    from settlement.state_machines import TransactionStatus

    tx = Transaction.objects.get(pk=tx_id)
    tx.status  # "escrow"

State changes never go through save(). They are django-fsm transitions
applied by settlement.state_machine.TransactionStateMachine, which persists
them with a guarded UPDATE (see settlement.repository).
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import MetadataModel, TimestampedModel, UUIDKeyedModel
from settlement.models.money import minor_unit_amount
from settlement.state_machines import SettlementStrategy, TransactionStatus

REFUNDABLE_SOURCES = [
    TransactionStatus.PENDING,
    TransactionStatus.ESCROW,
    TransactionStatus.PROVIDER_REVIEW,
]


class Transaction(UUIDKeyedModel, MetadataModel, TimestampedModel):
    """
    Settlement record for one offer.

    State Flow:
        PENDING -> ESCROW -> PROVIDER_REVIEW -> COMPLETED

    Refund Flow:
        PENDING/ESCROW/PROVIDER_REVIEW -> REFUNDED

    Decline Flow:
        PENDING -> DECLINED

    Dispute Flow:
        PROVIDER_REVIEW -> DISPUTED -> COMPLETED | REFUNDED

    Amounts:
        amount: Agreed base price (gross)
        client_fee: Added on top for the client
        platform_fee: Withheld from the provider
        provider_net: amount - platform_fee
        client_total: amount + client_fee (what the client is charged)

        Each is a Decimal view of an integer <name>_minor column holding
        minor units of currency, so the split is conserved exactly in SQL.

    Note:
        Amounts are written once at checkout and never recomputed.
        version is incremented by every persisted transition.
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    offer = models.OneToOneField(
        "settlement.Offer",
        on_delete=models.PROTECT,
        related_name="transaction",
        help_text="Offer this transaction settles",
    )

    client_id = models.UUIDField(
        db_index=True,
        help_text="Paying client, copied from the offer",
    )

    provider_id = models.UUIDField(
        db_index=True,
        help_text="Provider being paid, copied from the offer",
    )

    # ==========================================================================
    # Amounts
    # ==========================================================================

    currency = models.CharField(
        max_length=3,
        default="USD",
        help_text="ISO 4217 currency code",
    )

    amount_minor = models.PositiveBigIntegerField(
        help_text="Agreed base price, in minor units of currency",
    )

    client_fee_minor = models.PositiveBigIntegerField(
        default=0,
        help_text="Fee charged to the client on top of the base price, in minor units",
    )

    platform_fee_minor = models.PositiveBigIntegerField(
        help_text="Fee withheld from the provider, in minor units",
    )

    provider_net_minor = models.PositiveBigIntegerField(
        help_text="What the provider receives, in minor units",
    )

    refunded_amount_minor = models.PositiveBigIntegerField(
        null=True,
        blank=True,
        help_text="Amount returned to the client if refunded, in minor units",
    )

    amount = minor_unit_amount("amount_minor", "Agreed base price")
    client_fee = minor_unit_amount("client_fee_minor", "Client fee")
    platform_fee = minor_unit_amount("platform_fee_minor", "Platform fee")
    provider_net = minor_unit_amount("provider_net_minor", "Provider net")
    refunded_amount = minor_unit_amount("refunded_amount_minor", "Refunded amount")

    # ==========================================================================
    # Strategy & State
    # ==========================================================================

    status = FSMField(
        default=TransactionStatus.PENDING,
        choices=TransactionStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current state (managed by FSM)",
    )

    settlement_strategy = models.CharField(
        max_length=20,
        choices=SettlementStrategy.choices,
        default=SettlementStrategy.PLAIN,
    )

    payee_merchant_id = models.CharField(
        max_length=64,
        null=True,
        blank=True,
        help_text="Provider merchant id for marketplace orders",
    )

    requires_manual_settlement = models.BooleanField(
        default=False,
        help_text="No payout destination was known at checkout",
    )

    status_reason = models.TextField(
        blank=True,
        default="",
        help_text="Reason given for a decline, dispute or refund",
    )

    # ==========================================================================
    # Gateway References
    # ==========================================================================

    gateway_order_id = models.CharField(max_length=64, null=True, blank=True)
    gateway_capture_id = models.CharField(max_length=64, null=True, blank=True)
    gateway_payout_id = models.CharField(max_length=64, null=True, blank=True)
    gateway_refund_id = models.CharField(max_length=64, null=True, blank=True)

    payout_status = models.CharField(
        max_length=32,
        blank=True,
        default="",
        help_text="Last known status of the payout batch (plain orders only)",
    )
    payout_checked_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the payout status was last read from the gateway",
    )

    # ==========================================================================
    # Escrow & State Timestamps
    # ==========================================================================

    escrow_start = models.DateTimeField(null=True, blank=True)
    escrow_end = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Review deadline; funds release automatically after it",
    )
    review_started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    declined_at = models.DateTimeField(null=True, blank=True)
    disputed_at = models.DateTimeField(null=True, blank=True)

    # ==========================================================================
    # Concurrency Control
    # ==========================================================================

    settlement_claimed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Set while a worker is moving money for this transaction",
    )

    version = models.PositiveIntegerField(
        default=1,
        help_text="Incremented by every persisted transition",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Transaction"
        verbose_name_plural = "Transactions"
        indexes = [
            models.Index(
                fields=["status", "escrow_end"],
                name="tx_status_escrow_end_idx",
            ),
            models.Index(
                fields=["status", "created_at"],
                name="tx_status_created_idx",
            ),
            models.Index(
                fields=["provider_id", "status"],
                name="tx_provider_status_idx",
            ),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount_minor=F("provider_net_minor") + F("platform_fee_minor")),
                name="transaction_fee_split_conserved",
            ),
            models.CheckConstraint(
                condition=Q(escrow_end__isnull=True)
                | Q(escrow_start__isnull=True)
                | Q(escrow_end__gte=F("escrow_start")),
                name="transaction_escrow_end_after_start",
            ),
            models.UniqueConstraint(
                fields=["gateway_capture_id"],
                condition=Q(gateway_capture_id__isnull=False),
                name="transaction_unique_capture_id",
            ),
            models.UniqueConstraint(
                fields=["gateway_order_id"],
                condition=Q(gateway_order_id__isnull=False),
                name="transaction_unique_order_id",
            ),
        ]

    def __str__(self) -> str:
        return f"Transaction({self.id}, {self.status}, {self.amount} {self.currency})"

    @property
    def client_total(self) -> Decimal:
        """What the client is charged: base price plus client fee."""
        return self.amount + self.client_fee

    @property
    def is_marketplace(self) -> bool:
        return self.settlement_strategy == SettlementStrategy.MARKETPLACE

    @property
    def is_terminal(self) -> bool:
        return self.status in TransactionStatus.terminal()

    def is_due_for_release(self, now=None) -> bool:
        now = now or timezone.now()
        return self.escrow_end is not None and self.escrow_end <= now

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=TransactionStatus.PENDING,
        target=TransactionStatus.ESCROW,
    )
    def capture(self, capture_id: str, review_window: timedelta, captured_at=None):
        """
        Record the gateway capture and start the escrow clock.

        Transition: PENDING -> ESCROW

        escrow_start/escrow_end are only ever written here.
        """
        captured_at = captured_at or timezone.now()
        self.gateway_capture_id = capture_id
        self.escrow_start = captured_at
        self.escrow_end = captured_at + review_window

    @transition(
        field=status,
        source=TransactionStatus.ESCROW,
        target=TransactionStatus.PROVIDER_REVIEW,
    )
    def begin_review(self, started_at=None):
        """
        Provider has been notified; the review deadline now applies.

        Transition: ESCROW -> PROVIDER_REVIEW
        """
        self.review_started_at = started_at or timezone.now()

    @transition(
        field=status,
        source=TransactionStatus.PROVIDER_REVIEW,
        target=TransactionStatus.COMPLETED,
    )
    def complete(
        self,
        payout_id: str | None = None,
        reason: str = "",
        completed_at=None,
        payout_status: str = "",
    ):
        """
        Funds disbursed to the provider.

        Transition: PROVIDER_REVIEW -> COMPLETED

        payout_id is the payout batch for plain orders and None for
        marketplace orders, which are paid by releasing the held funds.
        """
        self.gateway_payout_id = payout_id
        self.payout_status = payout_status
        self.status_reason = reason
        self.completed_at = completed_at or timezone.now()
        self.settlement_claimed_at = None

    @transition(
        field=status,
        source=REFUNDABLE_SOURCES,
        target=TransactionStatus.REFUNDED,
    )
    def refund(
        self,
        refund_id: str | None = None,
        amount: Decimal | None = None,
        reason: str = "",
        refunded_at=None,
    ):
        """
        Return the client's money. Terminal, also for partial amounts.

        Transition: PENDING/ESCROW/PROVIDER_REVIEW -> REFUNDED

        From PENDING nothing was captured; refund_id stays None.
        """
        self.gateway_refund_id = refund_id
        self.refunded_amount = amount
        self.status_reason = reason
        self.refunded_at = refunded_at or timezone.now()
        self.settlement_claimed_at = None

    @transition(
        field=status,
        source=TransactionStatus.PENDING,
        target=TransactionStatus.DECLINED,
    )
    def decline(self, reason: str = "", declined_at=None):
        """
        Capture was declined or the checkout was abandoned.

        Transition: PENDING -> DECLINED
        """
        self.status_reason = reason
        self.declined_at = declined_at or timezone.now()

    @transition(
        field=status,
        source=TransactionStatus.PROVIDER_REVIEW,
        target=TransactionStatus.DISPUTED,
    )
    def dispute(self, reason: str = "", disputed_at=None):
        """
        Client disputes the service during review.

        Transition: PROVIDER_REVIEW -> DISPUTED
        """
        self.status_reason = reason
        self.disputed_at = disputed_at or timezone.now()

    @transition(
        field=status,
        source=TransactionStatus.DISPUTED,
        target=TransactionStatus.COMPLETED,
    )
    def resolve_completed(
        self, payout_id: str | None = None, completed_at=None, payout_status: str = ""
    ):
        """
        Dispute resolved in the provider's favour.

        Transition: DISPUTED -> COMPLETED
        """
        self.gateway_payout_id = payout_id
        self.payout_status = payout_status
        self.completed_at = completed_at or timezone.now()
        self.settlement_claimed_at = None

    @transition(
        field=status,
        source=TransactionStatus.DISPUTED,
        target=TransactionStatus.REFUNDED,
    )
    def resolve_refunded(
        self,
        refund_id: str | None = None,
        amount: Decimal | None = None,
        refunded_at=None,
    ):
        """
        Dispute resolved in the client's favour.

        Transition: DISPUTED -> REFUNDED
        """
        self.gateway_refund_id = refund_id
        self.refunded_amount = amount
        self.refunded_at = refunded_at or timezone.now()
        self.settlement_claimed_at = None
