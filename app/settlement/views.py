"""
DRF views for the settlement app.

This module provides API views for:
- Checkout (creating a transaction and gateway order for an offer)
- Payment confirmation (capture into escrow)
- Provider approval, refunds and disputes
- Dispute resolution (staff only)

Related files:
    - services/orchestrator.py: SettlementOrchestrator
    - serializers.py: Request/response serializers
    - urls.py: URL routing

Endpoints:
    POST /api/v1/settlement/checkout/ - Start checkout for an offer
    GET /api/v1/settlement/transactions/{id}/ - Get a transaction
    POST /api/v1/settlement/transactions/{id}/confirm/ - Capture payment
    POST /api/v1/settlement/transactions/{id}/approve/ - Provider approval
    POST /api/v1/settlement/transactions/{id}/refund/ - Refund the client
    POST /api/v1/settlement/transactions/{id}/dispute/ - Raise a dispute
    POST /api/v1/settlement/transactions/{id}/resolve-dispute/ - Resolve a dispute

Security:
    - All endpoints require authentication
    - The caller is always request.user (see settlement.permissions)
    - Checkout: the offer's client
    - Detail: client, provider or staff
    - Confirm: client or staff
    - Approve: provider
    - Refund: provider or staff
    - Dispute: client
    - Dispute resolution: staff

Errors:
    Failed operations return ServiceResult.to_response() with the HTTP
    status from ERROR_STATUS (502 for unlisted gateway errors, 400 otherwise).
"""

from __future__ import annotations

import logging

from rest_framework import status
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.services import ServiceResult
from settlement.exceptions import TransactionNotFoundError
from settlement.models import Offer, Transaction
from settlement.models.party import party_id_for
from settlement.permissions import (
    CanRefundTransaction,
    IsTransactionClient,
    IsTransactionClientOrStaff,
    IsTransactionParty,
    IsTransactionProvider,
)
from settlement.repository import TransactionRepository
from settlement.services import SettlementOrchestrator

from .serializers import (
    CheckoutRequestSerializer,
    DisputeRequestSerializer,
    RefundRequestSerializer,
    ResolveDisputeRequestSerializer,
    TransactionSerializer,
)

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
    "NOT_TRANSACTION_PROVIDER": status.HTTP_403_FORBIDDEN,
    "TRANSACTION_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "ILLEGAL_TRANSITION": status.HTTP_409_CONFLICT,
    "INVALID_OFFER_STATE": status.HTTP_409_CONFLICT,
    "SETTLEMENT_IN_PROGRESS": status.HTTP_409_CONFLICT,
    "ESCROW_NOT_DUE": status.HTTP_409_CONFLICT,
    "GATEWAY_CAPTURE_PENDING": status.HTTP_409_CONFLICT,
    "PROVIDER_NOT_SETTLEABLE": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "GATEWAY_UNAVAILABLE": status.HTTP_503_SERVICE_UNAVAILABLE,
    "GATEWAY_TIMEOUT": status.HTTP_503_SERVICE_UNAVAILABLE,
    "GATEWAY_RATE_LIMITED": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def error_status(error_code: str | None) -> int:
    """HTTP status for a failed ServiceResult's error code."""
    if error_code in ERROR_STATUS:
        return ERROR_STATUS[error_code]
    if error_code and error_code.startswith("GATEWAY_"):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_400_BAD_REQUEST


def result_response(result: ServiceResult, success_status: int = status.HTTP_200_OK) -> Response:
    """Render a ServiceResult[Transaction] as a DRF Response."""
    if result.success:
        return Response(TransactionSerializer(result.data).data, status=success_status)
    return Response(result.to_response(), status=error_status(result.error_code))


class SettlementAPIView(APIView):
    """Base view: authenticated, with an orchestrator built per request."""

    permission_classes = [IsAuthenticated]

    def get_orchestrator(self) -> SettlementOrchestrator:
        return SettlementOrchestrator.from_settings()


class TransactionAPIView(SettlementAPIView):
    """
    Base view for endpoints acting on one transaction.

    get_transaction() loads the record and runs the view's object
    permissions against it before any operation starts.
    """

    def get_transaction(self, request, transaction_id) -> Transaction:
        tx = TransactionRepository().get(transaction_id)
        self.check_object_permissions(request, tx)
        return tx

    def handle_exception(self, exc):
        if isinstance(exc, TransactionNotFoundError):
            return result_response(ServiceResult.from_exception(exc))
        return super().handle_exception(exc)


class CheckoutView(SettlementAPIView):
    """
    Start checkout for an offer.

    POST /api/v1/settlement/checkout/

    Request body:
        {
            "offer_id": "uuid",
            "booking_id": "uuid"  (optional)
        }

    Only the offer's client may check out.

    Returns:
        201 with the PENDING transaction (approve_url sends the payer to the gateway)
    """

    def post(self, request):
        serializer = CheckoutRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        offer = Offer.objects.filter(pk=serializer.validated_data["offer_id"]).first()
        if offer is None:
            return Response(
                {"success": False, "error": "Offer not found", "error_code": "NOT_FOUND"},
                status=status.HTTP_404_NOT_FOUND,
            )
        if party_id_for(request.user) != offer.client_id:
            self.permission_denied(request, message="Only the offer's client can pay for it.")

        result = self.get_orchestrator().initiate_checkout(
            offer, booking=serializer.validated_data.get("booking_id")
        )
        return result_response(result, success_status=status.HTTP_201_CREATED)


class TransactionDetailView(TransactionAPIView):
    """
    Get a transaction.

    GET /api/v1/settlement/transactions/{id}/

    Visible to its client, its provider and staff.
    """

    permission_classes = [IsAuthenticated, IsTransactionParty]

    def get(self, request, transaction_id):
        tx = self.get_transaction(request, transaction_id)
        return Response(TransactionSerializer(tx).data)


class ConfirmPaymentView(TransactionAPIView):
    """
    Capture an approved payment into escrow.

    POST /api/v1/settlement/transactions/{id}/confirm/

    Called after the payer returns from the gateway approval page.
    """

    permission_classes = [IsAuthenticated, IsTransactionClientOrStaff]

    def post(self, request, transaction_id):
        tx = self.get_transaction(request, transaction_id)
        return result_response(self.get_orchestrator().confirm_payment(tx.pk))


class ApproveView(TransactionAPIView):
    """
    Provider approves the completed service and gets paid.

    POST /api/v1/settlement/transactions/{id}/approve/

    No body. The provider is the authenticated user.
    """

    permission_classes = [IsAuthenticated, IsTransactionProvider]

    def post(self, request, transaction_id):
        tx = self.get_transaction(request, transaction_id)
        result = self.get_orchestrator().approve_by_provider(
            tx.pk, party_id_for(request.user)
        )
        return result_response(result)


class RefundView(TransactionAPIView):
    """
    Refund the client.

    POST /api/v1/settlement/transactions/{id}/refund/

    Issued by the provider, or by staff.

    Request body:
        {
            "amount": "50.00",  (optional, full refund when omitted)
            "reason": "Service cancelled"
        }
    """

    permission_classes = [IsAuthenticated, CanRefundTransaction]

    def post(self, request, transaction_id):
        tx = self.get_transaction(request, transaction_id)
        serializer = RefundRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = self.get_orchestrator().refund(
            tx.pk,
            amount=serializer.validated_data.get("amount"),
            reason=serializer.validated_data["reason"],
        )
        return result_response(result)


class DisputeView(TransactionAPIView):
    """
    Raise a dispute during provider review.

    POST /api/v1/settlement/transactions/{id}/dispute/

    Only the paying client may dispute.
    """

    permission_classes = [IsAuthenticated, IsTransactionClient]

    def post(self, request, transaction_id):
        tx = self.get_transaction(request, transaction_id)
        serializer = DisputeRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = self.get_orchestrator().raise_dispute(
            tx.pk, reason=serializer.validated_data["reason"]
        )
        return result_response(result)


class ResolveDisputeView(SettlementAPIView):
    """
    Resolve a dispute.

    POST /api/v1/settlement/transactions/{id}/resolve-dispute/

    Request body:
        {"outcome": "complete" | "refund"}
    """

    permission_classes = [IsAuthenticated, IsAdminUser]

    def post(self, request, transaction_id):
        serializer = ResolveDisputeRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = self.get_orchestrator().resolve_dispute(
            transaction_id, serializer.validated_data["outcome"]
        )
        return result_response(result)
