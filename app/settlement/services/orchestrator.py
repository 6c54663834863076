"""
Settlement orchestrator: the entry point for every payment operation.

SettlementOrchestrator coordinates the fee calculator, the settlement
resolver, the gateway client and the transaction state machine. It is
built per call (or per request) around a frozen SettlementConfig, so one
operation always sees one set of fees and timings.

Every public operation returns ServiceResult[Transaction]. Domain errors
(BaseApplicationError subclasses) become failed results carrying the
error_code and details; anything else propagates.

Money movement (payout, release, refund) always follows the same steps:

    1. Claim the transaction (conditional UPDATE on status + free claim)
    2. Call the gateway
    3. Apply the transition, which clears the claim

A failed gateway call releases the claim so the next attempt can run.
A write that timed out keeps it until SETTLEMENT_CLAIM_TTL_SECONDS have
passed. The next attempt (the release scheduler or a repeated request)
sends the same idempotency key, so the gateway returns its earlier result
instead of moving money twice.

Usage:
    from settlement.services import SettlementOrchestrator

    orchestrator = SettlementOrchestrator.from_settings()

    result = orchestrator.initiate_checkout(offer)
    if result.success:
        approve_url = result.data.get_meta("approve_url")

    result = orchestrator.approve_by_provider(tx_id, provider_id=user.id)
    if result.error_code == "ILLEGAL_TRANSITION":
        result.details["current_status"]  # e.g. "completed"
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any

from django.db import IntegrityError
from django.utils import timezone

from core.exceptions import BaseApplicationError
from core.services import BaseService, ServiceResult
from settlement.config import SettlementConfig
from settlement.exceptions import (
    EscrowNotDueError,
    GatewayCaptureMismatchError,
    GatewayCapturePendingError,
    GatewayDeclinedError,
    GatewayError,
    GatewayRequestError,
    GatewayTimeoutError,
    IllegalTransitionError,
    InvalidOfferStateError,
    NotAuthorizedError,
    ProviderNotSettleableError,
    SettlementInProgressError,
    SettlementValidationError,
)
from settlement.fees import FeeCalculator, FeeSplit, quantize_money, to_decimal
from settlement.gateway import (
    CaptureResult,
    GatewayClient,
    IdempotencyKeyGenerator,
    OrderMetadata,
    OrderResult,
    PayoutResult,
    get_gateway_client,
    payout_batch_id,
)
from settlement.gateway.base import CAPTURE_COMPLETED, CAPTURE_REFUSED_STATUSES
from settlement.models import Offer, Transaction
from settlement.repository import TransactionRepository
from settlement.resolver import ProviderSettlementResolver, SettlementPlan
from settlement.state_machine import TransactionStateMachine
from settlement.state_machines import DisputeOutcome, TransactionStatus

logger = logging.getLogger(__name__)


class SettlementOrchestrator(BaseService):
    """
    Coordinates checkout, capture, escrow release, refunds and disputes.

    Collaborators are injected so tests can substitute any of them;
    from_settings() wires the production defaults.

    Operations:
        initiate_checkout: Offer -> PENDING transaction with a gateway order
        confirm_payment: PENDING -> ESCROW once the gateway captures
        begin_provider_review: ESCROW -> PROVIDER_REVIEW
        approve_by_provider: PROVIDER_REVIEW -> COMPLETED, provider paid
        release_after_deadline: Same as approval, once escrow_end has passed
        refund: PENDING/ESCROW/PROVIDER_REVIEW -> REFUNDED
        raise_dispute: PROVIDER_REVIEW -> DISPUTED
        resolve_dispute: DISPUTED -> COMPLETED or REFUNDED
        capture_reported: Capture webhook, PENDING -> ESCROW
        capture_denied: Capture webhook, PENDING -> DECLINED
    """

    def __init__(
        self,
        gateway: GatewayClient,
        config: SettlementConfig,
        resolver: ProviderSettlementResolver | None = None,
        repository: TransactionRepository | None = None,
        state_machine: TransactionStateMachine | None = None,
    ):
        self.gateway = gateway
        self.config = config
        self.resolver = resolver or ProviderSettlementResolver(config)
        self.repository = repository or TransactionRepository()
        self.state_machine = state_machine or TransactionStateMachine(
            self.repository, claim_ttl=config.claim_ttl
        )

    @classmethod
    def from_settings(cls) -> SettlementOrchestrator:
        return cls(
            gateway=get_gateway_client(),
            config=SettlementConfig.from_settings(),
        )

    # =========================================================================
    # Public Operations
    # =========================================================================

    def initiate_checkout(self, offer: Offer, booking: Any = None) -> ServiceResult[Transaction]:
        """
        Start payment for an offer.

        Computes the fee split, decides the settlement strategy, opens a
        gateway order and records a PENDING transaction. Calling it again
        for the same offer returns the existing PENDING transaction.

        Args:
            offer: Offer being paid
            booking: Optional booking (or booking id) recorded in metadata

        Returns:
            ServiceResult with the PENDING Transaction. The payer approval
            URL is in transaction.metadata["approve_url"].
        """
        return self._run("initiate_checkout", self._initiate_checkout, offer, booking)

    def confirm_payment(self, transaction_id: uuid.UUID) -> ServiceResult[Transaction]:
        """
        Capture the approved gateway order and start escrow.

        Safe to call repeatedly: an already captured transaction is
        returned unchanged. A decline moves the transaction to DECLINED
        and fails with GATEWAY_DECLINED.

        A capture the gateway has not completed fails with
        GATEWAY_CAPTURE_PENDING. A capture for the wrong amount fails with
        GATEWAY_CAPTURE_MISMATCH. Both, like other gateway errors, leave
        the transaction PENDING for reconciliation.
        """
        return self._run("confirm_payment", self._confirm_payment, transaction_id)

    def begin_provider_review(self, transaction_id: uuid.UUID) -> ServiceResult[Transaction]:
        """Move an escrowed transaction into provider review (idempotent)."""
        return self._run(
            "begin_provider_review", self._begin_provider_review, transaction_id
        )

    def approve_by_provider(
        self, transaction_id: uuid.UUID, provider_id: uuid.UUID
    ) -> ServiceResult[Transaction]:
        """
        Provider confirms the service; pay them now.

        Only the transaction's provider may approve, and only during
        PROVIDER_REVIEW. Marketplace orders are paid by releasing the held
        funds; plain orders by a payout of provider_net.
        """
        return self._run(
            "approve_by_provider", self._approve_by_provider, transaction_id, provider_id
        )

    def release_after_deadline(
        self, transaction_id: uuid.UUID, now: datetime | None = None
    ) -> ServiceResult[Transaction]:
        """Pay the provider because the review deadline passed without approval."""
        return self._run(
            "release_after_deadline", self._release_after_deadline, transaction_id, now
        )

    def refund(
        self,
        transaction_id: uuid.UUID,
        amount: Decimal | str | int | None = None,
        reason: str = "",
    ) -> ServiceResult[Transaction]:
        """
        Refund the client, in full (amount=None) or in part.

        Any refund is terminal. Before capture no gateway call is made.
        """
        return self._run("refund", self._refund, transaction_id, amount, reason)

    def raise_dispute(
        self, transaction_id: uuid.UUID, reason: str = ""
    ) -> ServiceResult[Transaction]:
        return self._run("raise_dispute", self._raise_dispute, transaction_id, reason)

    def resolve_dispute(
        self, transaction_id: uuid.UUID, outcome: str
    ) -> ServiceResult[Transaction]:
        """Close a dispute by paying the provider or refunding the client."""
        return self._run("resolve_dispute", self._resolve_dispute, transaction_id, outcome)

    def capture_reported(
        self, transaction_id: uuid.UUID, capture: CaptureResult
    ) -> ServiceResult[Transaction]:
        """
        Apply a capture the gateway announced on its own (capture webhook).

        Same checks as confirm_payment, without calling the gateway. A
        transaction that already holds a capture is returned unchanged.
        """
        return self._run("capture_reported", self._capture_reported, transaction_id, capture)

    def capture_denied(
        self, transaction_id: uuid.UUID, reason: str = ""
    ) -> ServiceResult[Transaction]:
        """Decline a PENDING transaction whose capture the gateway denied."""
        return self._run("capture_denied", self._capture_denied, transaction_id, reason)

    # =========================================================================
    # Checkout
    # =========================================================================

    def _initiate_checkout(self, offer: Offer, booking: Any) -> Transaction:
        if not offer.is_payable:
            raise InvalidOfferStateError(
                f"Offer cannot be paid in status {offer.status}",
                details={"offer_id": str(offer.pk), "offer_status": offer.status},
            )
        price = to_decimal(offer.price, "price")
        if price <= 0:
            raise SettlementValidationError(
                "Offer price must be positive",
                details={"offer_id": str(offer.pk), "price": str(price)},
            )

        existing = self.repository.get_for_offer(offer.pk)
        if existing is not None:
            return self._existing_checkout(existing, offer)

        currency = (offer.currency or self.config.default_currency).upper()
        split = FeeCalculator.compute_split(
            price,
            platform_fee_percent=self.config.platform_fee_percent,
            client_fee_percent=self.config.client_fee_percent,
            provider_fee_percent=self.config.provider_fee_percent,
            currency=currency,
        )
        plan = self.resolver.resolve(offer.provider_id, split.client_total)

        transaction_id = uuid.uuid4()
        metadata = OrderMetadata(
            custom_id=str(transaction_id),
            reference_id=str(offer.pk),
            description=offer.description or f"Booking {offer.pk}",
            item_name=offer.description or "Service booking",
            return_url=self.config.return_url or None,
            cancel_url=self.config.cancel_url or None,
        )
        order, plan = self._create_order(transaction_id, split, plan, metadata)

        tx_metadata = {"approve_url": order.approve_url}
        if plan.fallback_reason:
            tx_metadata["marketplace_fallback_reason"] = plan.fallback_reason
        if booking is not None:
            tx_metadata["booking_id"] = str(getattr(booking, "pk", booking))

        tx = Transaction(
            id=transaction_id,
            offer=offer,
            client_id=offer.client_id,
            provider_id=offer.provider_id,
            currency=split.currency,
            amount=split.base_price,
            client_fee=split.client_fee,
            platform_fee=split.platform_fee,
            provider_net=split.provider_net,
            settlement_strategy=plan.strategy,
            payee_merchant_id=plan.payee_merchant_id,
            requires_manual_settlement=plan.requires_manual_settlement,
            gateway_order_id=order.order_id,
            metadata=tx_metadata,
        )
        try:
            self.repository.create(tx)
        except IntegrityError:
            winner = self.repository.get_for_offer(offer.pk)
            if winner is None:
                raise
            logger.info(
                "Concurrent checkout for offer, returning existing transaction",
                extra={"offer_id": str(offer.pk), "transaction_id": str(winner.pk)},
            )
            return self._existing_checkout(winner, offer)

        if tx.requires_manual_settlement:
            logger.warning(
                "Transaction requires manual settlement",
                extra={"transaction_id": str(tx.pk), "provider_id": str(tx.provider_id)},
            )
        logger.info(
            "Checkout initiated",
            extra={
                "transaction_id": str(tx.pk),
                "offer_id": str(offer.pk),
                "strategy": tx.settlement_strategy,
                "client_total": str(tx.client_total),
                "gateway_order_id": tx.gateway_order_id,
            },
        )
        return tx

    @staticmethod
    def _existing_checkout(existing: Transaction, offer: Offer) -> Transaction:
        if existing.status != TransactionStatus.PENDING:
            raise InvalidOfferStateError(
                "Offer already has a transaction",
                details={
                    "offer_id": str(offer.pk),
                    "transaction_id": str(existing.pk),
                    "transaction_status": existing.status,
                },
            )
        return existing

    def _create_order(
        self,
        transaction_id: uuid.UUID,
        split: FeeSplit,
        plan: SettlementPlan,
        metadata: OrderMetadata,
    ) -> tuple[OrderResult, SettlementPlan]:
        """Open the gateway order, downgrading a rejected marketplace order to plain."""
        if plan.is_marketplace:
            try:
                order = self.gateway.create_marketplace_order(
                    amount=split.client_total,
                    currency=split.currency,
                    payee_merchant_id=plan.payee_merchant_id,
                    platform_fee=split.platform_revenue,
                    metadata=metadata,
                    idempotency_key=IdempotencyKeyGenerator.generate(
                        "create_order", transaction_id
                    ),
                )
                return order, plan
            except GatewayRequestError as exc:
                plan = plan.downgrade(f"{exc.error_code}: {exc.message}")
                logger.warning(
                    "Marketplace order rejected, falling back to plain order",
                    extra={
                        "transaction_id": str(transaction_id),
                        "error_code": exc.error_code,
                        "issue": exc.issue,
                    },
                )

        order = self.gateway.create_order(
            amount=split.client_total,
            currency=split.currency,
            metadata=metadata,
            idempotency_key=IdempotencyKeyGenerator.generate(
                "create_order", transaction_id, attempt=2 if plan.fallback_reason else 1
            ),
        )
        return order, plan

    # =========================================================================
    # Capture
    # =========================================================================

    def _confirm_payment(self, transaction_id: uuid.UUID) -> Transaction:
        tx = self.repository.get(transaction_id)
        if tx.gateway_capture_id:
            logger.info(
                "Payment already captured",
                extra={"transaction_id": str(tx.pk), "status": tx.status},
            )
            return tx
        if tx.status != TransactionStatus.PENDING:
            raise self._illegal(tx, "capture")

        try:
            capture = self.gateway.capture_order(
                tx.gateway_order_id,
                idempotency_key=IdempotencyKeyGenerator.generate("capture_order", tx.pk),
            )
        except GatewayDeclinedError as exc:
            self._decline_after_refusal(tx, exc)
            raise
        return self.apply_capture(tx, capture)

    def apply_capture(
        self, tx: Transaction, capture: CaptureResult, now: datetime | None = None
    ) -> Transaction:
        """
        Act on a capture the gateway reported for tx's order.

        Used by confirm_payment, reconciliation and the capture webhook.
        Only a COMPLETED capture of exactly client_total in the
        transaction's currency moves the transaction to ESCROW.

        Raises:
            GatewayDeclinedError: Capture DECLINED or FAILED; tx is DECLINED
            GatewayCapturePendingError: Capture not completed yet; tx stays PENDING
            GatewayCaptureMismatchError: Captured amount or currency differs;
                tx stays PENDING
        """
        status = (capture.status or "").upper()
        context = {
            "transaction_id": str(tx.pk),
            "capture_id": capture.capture_id,
            "capture_status": status,
        }
        if status in CAPTURE_REFUSED_STATUSES:
            exc = GatewayDeclinedError(
                f"Gateway reported the capture as {status}", issue=status, details=context
            )
            self._decline_after_refusal(tx, exc)
            raise exc
        if status != CAPTURE_COMPLETED:
            logger.info("Capture not completed yet", extra=context)
            raise GatewayCapturePendingError(
                f"Capture is {status or 'not completed'}", details=context
            )

        captured = (
            quantize_money(capture.amount, tx.currency) if capture.amount is not None else None
        )
        currency = (capture.currency or tx.currency).upper()
        if captured != tx.client_total or currency != tx.currency:
            context.update(
                captured_amount=str(capture.amount) if capture.amount is not None else None,
                captured_currency=capture.currency,
                client_total=str(tx.client_total),
                currency=tx.currency,
            )
            logger.error("Captured amount does not match the charge", extra=context)
            raise GatewayCaptureMismatchError(
                "Captured amount does not match the amount charged", details=context
            )
        return self.record_capture(tx, capture.capture_id, now=now)

    def record_capture(
        self, tx: Transaction, capture_id: str, now: datetime | None = None
    ) -> Transaction:
        """
        Persist a completed capture: PENDING -> ESCROW.

        Callers check the capture first (see apply_capture). Losing the
        race to another writer that recorded the capture returns that
        writer's record.
        """
        try:
            tx = self.state_machine.capture(
                tx, capture_id, self.config.review_window, now=now
            )
        except IllegalTransitionError as exc:
            if not exc.details.get("concurrent"):
                raise
            current = self.repository.get(tx.pk)
            if not current.gateway_capture_id:
                raise
            logger.info(
                "Capture recorded by a concurrent request",
                extra={"transaction_id": str(tx.pk), "status": current.status},
            )
            return current

        logger.info(
            "Payment captured, funds in escrow",
            extra={
                "transaction_id": str(tx.pk),
                "capture_id": capture_id,
                "escrow_end": tx.escrow_end.isoformat(),
            },
        )
        return tx

    def _capture_reported(
        self, transaction_id: uuid.UUID, capture: CaptureResult
    ) -> Transaction:
        tx = self.repository.get(transaction_id)
        if tx.gateway_capture_id:
            if tx.gateway_capture_id != capture.capture_id:
                logger.warning(
                    "Gateway reported a second capture for a captured transaction",
                    extra={
                        "transaction_id": str(tx.pk),
                        "capture_id": tx.gateway_capture_id,
                        "reported_capture_id": capture.capture_id,
                    },
                )
            return tx
        if tx.status != TransactionStatus.PENDING:
            raise self._illegal(tx, "capture")
        return self.apply_capture(tx, capture)

    def _capture_denied(self, transaction_id: uuid.UUID, reason: str) -> Transaction:
        tx = self.repository.get(transaction_id)
        if tx.status == TransactionStatus.DECLINED:
            return tx
        if tx.status != TransactionStatus.PENDING:
            raise self._illegal(tx, "decline")
        tx = self.state_machine.decline(tx, reason=reason or "capture denied")
        logger.info(
            "Capture denied by the gateway, transaction declined",
            extra={"transaction_id": str(tx.pk)},
        )
        return tx

    def _decline_after_refusal(self, tx: Transaction, exc: GatewayError) -> None:
        try:
            self.state_machine.decline(tx, reason=f"{exc.error_code}: {exc.message}")
        except IllegalTransitionError as transition_error:
            logger.warning(
                "Could not decline transaction after gateway refusal",
                extra={
                    "transaction_id": str(tx.pk),
                    "current_status": transition_error.details.get("current_status"),
                },
            )

    # =========================================================================
    # Review & Release
    # =========================================================================

    def _begin_provider_review(self, transaction_id: uuid.UUID) -> Transaction:
        tx = self.repository.get(transaction_id)
        if tx.status == TransactionStatus.PROVIDER_REVIEW:
            return tx
        try:
            return self.state_machine.begin_review(tx)
        except IllegalTransitionError as exc:
            current_status = exc.details.get("current_status")
            if current_status == TransactionStatus.PROVIDER_REVIEW:
                return self.repository.get(transaction_id)
            if exc.details.get("concurrent") and current_status == TransactionStatus.ESCROW:
                raise SettlementInProgressError(
                    "Transaction is being refunded",
                    details={"transaction_id": str(tx.pk)},
                ) from exc
            raise

    def _approve_by_provider(
        self, transaction_id: uuid.UUID, provider_id: uuid.UUID
    ) -> Transaction:
        tx = self.repository.get(transaction_id)
        if str(tx.provider_id) != str(provider_id):
            raise NotAuthorizedError(
                "Only the transaction's provider may approve it",
                details={"transaction_id": str(tx.pk)},
            )
        if tx.status != TransactionStatus.PROVIDER_REVIEW:
            raise self._illegal(tx, "complete")
        return self._settle(tx, reason="provider_approved")

    def _release_after_deadline(
        self, transaction_id: uuid.UUID, now: datetime | None
    ) -> Transaction:
        now = now or timezone.now()
        tx = self.repository.get(transaction_id)
        if tx.status != TransactionStatus.PROVIDER_REVIEW:
            raise self._illegal(tx, "complete")
        if not tx.is_due_for_release(now):
            raise EscrowNotDueError(
                "Review window has not ended",
                details={
                    "transaction_id": str(tx.pk),
                    "escrow_end": tx.escrow_end.isoformat() if tx.escrow_end else None,
                },
            )
        return self._settle(tx, reason="escrow_deadline", now=now)

    def _settle(
        self,
        tx: Transaction,
        reason: str = "",
        now: datetime | None = None,
        from_dispute: bool = False,
    ) -> Transaction:
        """Claim, pay the provider, then complete."""
        source = TransactionStatus.DISPUTED if from_dispute else TransactionStatus.PROVIDER_REVIEW
        transition = "resolve_completed" if from_dispute else "complete"
        tx = self._claim(tx, [source], transition, now)

        payout = self._with_claim(tx, "disburse", lambda: self._disburse(tx))
        payout_id = payout.batch_id if payout else None
        payout_status = (payout.item_status or payout.status) if payout else ""

        try:
            if from_dispute:
                tx = self.state_machine.resolve_completed(
                    tx, payout_id=payout_id, now=now, payout_status=payout_status
                )
            else:
                tx = self.state_machine.complete(
                    tx,
                    payout_id=payout_id,
                    reason=reason,
                    now=now,
                    payout_status=payout_status,
                )
        except IllegalTransitionError:
            logger.error(
                "Provider paid but transaction could not be completed",
                extra={"transaction_id": str(tx.pk), "payout_id": payout_id},
            )
            raise

        logger.info(
            "Transaction settled",
            extra={
                "transaction_id": str(tx.pk),
                "strategy": tx.settlement_strategy,
                "provider_net": str(tx.provider_net),
                "payout_id": payout_id,
                "reason": reason,
            },
        )
        return tx

    def _disburse(self, tx: Transaction) -> PayoutResult | None:
        """
        Move provider_net to the provider.

        Returns the payout batch for plain orders. The batch may still be
        processing; PayoutFollowUp tracks it to a final status.
        """
        if tx.is_marketplace:
            self.gateway.release_funds(
                tx.gateway_order_id,
                idempotency_key=IdempotencyKeyGenerator.generate("release_funds", tx.pk),
            )
            return None

        email = self.resolver.require_payout_destination(tx.provider_id)
        payout = self.gateway.create_payout(
            email=email,
            amount=tx.provider_net,
            currency=tx.currency,
            note=f"Payout for booking {tx.offer_id}",
            sender_batch_id=payout_batch_id(tx.pk),
        )
        return payout

    # =========================================================================
    # Refunds & Disputes
    # =========================================================================

    def _refund(
        self, transaction_id: uuid.UUID, amount, reason: str
    ) -> Transaction:
        tx = self.repository.get(transaction_id)
        if amount is not None:
            requested = to_decimal(amount, "amount")
            amount = quantize_money(requested, tx.currency)
            if amount != requested:
                raise SettlementValidationError(
                    f"Refund amount has more decimals than {tx.currency} allows",
                    details={"amount": str(requested), "currency": tx.currency},
                )
            if amount <= 0 or amount > tx.client_total:
                raise SettlementValidationError(
                    "Refund amount must be positive and at most the amount charged",
                    details={"amount": str(amount), "client_total": str(tx.client_total)},
                )

        if tx.status == TransactionStatus.PENDING:
            # Nothing captured yet; cancelling the order is enough
            return self.state_machine.refund(tx, reason=reason)

        if tx.status not in (TransactionStatus.ESCROW, TransactionStatus.PROVIDER_REVIEW):
            raise self._illegal(tx, "refund")

        return self._refund_capture(
            tx,
            amount,
            reason,
            sources=[TransactionStatus.ESCROW, TransactionStatus.PROVIDER_REVIEW],
        )

    def _refund_capture(
        self,
        tx: Transaction,
        amount: Decimal | None,
        reason: str,
        sources: list[str],
        from_dispute: bool = False,
    ) -> Transaction:
        transition = "resolve_refunded" if from_dispute else "refund"
        tx = self._claim(tx, sources, transition)
        refunded_amount = amount if amount is not None else tx.client_total

        result = self._with_claim(
            tx,
            "refund",
            lambda: self.gateway.refund_capture(
                tx.gateway_capture_id,
                idempotency_key=IdempotencyKeyGenerator.generate("refund_capture", tx.pk),
                amount=amount,
                currency=tx.currency if amount is not None else None,
                note=reason,
            ),
        )

        if from_dispute:
            tx = self.state_machine.resolve_refunded(
                tx, refund_id=result.refund_id, amount=refunded_amount
            )
        else:
            tx = self.state_machine.refund(
                tx, refund_id=result.refund_id, amount=refunded_amount, reason=reason
            )
        logger.info(
            "Transaction refunded",
            extra={
                "transaction_id": str(tx.pk),
                "refund_id": result.refund_id,
                "refunded_amount": str(refunded_amount),
            },
        )
        return tx

    def _raise_dispute(self, transaction_id: uuid.UUID, reason: str) -> Transaction:
        tx = self.repository.get(transaction_id)
        try:
            return self.state_machine.dispute(tx, reason=reason)
        except IllegalTransitionError as exc:
            if (
                exc.details.get("concurrent")
                and exc.details.get("current_status") == TransactionStatus.PROVIDER_REVIEW
            ):
                raise SettlementInProgressError(
                    "Provider payout is in progress",
                    details={"transaction_id": str(tx.pk)},
                ) from exc
            raise

    def _resolve_dispute(self, transaction_id: uuid.UUID, outcome: str) -> Transaction:
        try:
            outcome = DisputeOutcome(outcome)
        except ValueError as exc:
            raise SettlementValidationError(
                f"Unknown dispute outcome: {outcome}",
                details={"outcome": str(outcome)},
            ) from exc

        tx = self.repository.get(transaction_id)
        if tx.status != TransactionStatus.DISPUTED:
            raise self._illegal(
                tx,
                "resolve_completed" if outcome == DisputeOutcome.COMPLETE else "resolve_refunded",
            )
        if outcome == DisputeOutcome.COMPLETE:
            return self._settle(tx, reason="dispute_resolved", from_dispute=True)
        return self._refund_capture(
            tx,
            amount=None,
            reason="dispute_resolved",
            sources=[TransactionStatus.DISPUTED],
            from_dispute=True,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _claim(
        self,
        tx: Transaction,
        sources: list[str],
        transition: str,
        now: datetime | None = None,
    ) -> Transaction:
        """
        Take the settlement claim and return the freshly loaded record.

        Raises:
            SettlementInProgressError: Another worker holds the claim
            IllegalTransitionError: The transaction left the source states
        """
        if self.repository.claim_settlement(tx.pk, sources, self.config.claim_ttl, now):
            return self.repository.get(tx.pk)

        current = self.repository.get(tx.pk)
        if current.status in sources:
            raise SettlementInProgressError(
                "Transaction is already being settled",
                details={
                    "transaction_id": str(tx.pk),
                    "current_status": current.status,
                    "claimed_at": current.settlement_claimed_at.isoformat()
                    if current.settlement_claimed_at
                    else None,
                },
            )
        raise IllegalTransitionError(
            f"Cannot {transition} a transaction in status {current.status}",
            details={
                "transaction_id": str(tx.pk),
                "current_status": current.status,
                "transition": transition,
                "concurrent": True,
            },
        )

    def _with_claim(self, tx: Transaction, step: str, call: Callable[[], Any]) -> Any:
        """
        Run a gateway call while holding the claim.

        Releases the claim on failure so the next attempt can run. A write
        that timed out (GatewayTimeoutError with is_retryable=False) may
        have been carried out, so its claim is kept; it lapses after
        SETTLEMENT_CLAIM_TTL_SECONDS and the next attempt reuses the same
        idempotency key.
        """
        try:
            return call()
        except GatewayTimeoutError as exc:
            if exc.is_retryable:
                self.repository.release_settlement_claim(tx.pk)
                raise
            logger.error(
                f"Gateway {step} timed out; claim kept until it expires",
                extra={
                    "transaction_id": str(tx.pk),
                    "claim_ttl_seconds": self.config.claim_ttl_seconds,
                },
            )
            raise
        except BaseApplicationError:
            self.repository.release_settlement_claim(tx.pk)
            raise

    @staticmethod
    def _illegal(tx: Transaction, transition: str) -> IllegalTransitionError:
        return IllegalTransitionError(
            f"Cannot {transition} a transaction in status {tx.status}",
            details={
                "transaction_id": str(tx.pk),
                "current_status": tx.status,
                "transition": transition,
            },
        )

    def _run(self, operation: str, func: Callable[..., Transaction], *args) -> ServiceResult[Transaction]:
        try:
            return ServiceResult.success(func(*args))
        except (GatewayError, ProviderNotSettleableError) as exc:
            return self.handle_exception(exc, operation, log_level=logging.ERROR)
        except BaseApplicationError as exc:
            return self.handle_exception(exc, operation, log_level=logging.WARNING)
