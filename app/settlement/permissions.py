"""
Permission classes for the settlement API.

Object permissions are checked against the Transaction being acted on.
The caller's identity is always request.user, mapped to a party id
through SettlementParty:

- IsTransactionParty: client, provider or staff (read)
- IsTransactionClient: the paying client (dispute)
- IsTransactionClientOrStaff: the paying client or staff (confirm)
- IsTransactionProvider: the provider being paid (approve)
- CanRefundTransaction: the provider or staff (refund)

Dispute resolution uses DRF's IsAdminUser.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rest_framework import permissions

from settlement.models.party import party_id_for

if TYPE_CHECKING:
    from rest_framework.request import Request
    from rest_framework.views import APIView

    from settlement.models import Transaction


def _is_staff(request: Request) -> bool:
    return bool(request.user and request.user.is_staff)


def _is_client(request: Request, obj: Transaction) -> bool:
    party_id = party_id_for(request.user)
    return party_id is not None and party_id == obj.client_id


def _is_provider(request: Request, obj: Transaction) -> bool:
    party_id = party_id_for(request.user)
    return party_id is not None and party_id == obj.provider_id


class IsTransactionParty(permissions.BasePermission):
    """Client, provider or staff."""

    message = "You are not a party to this transaction."

    def has_object_permission(self, request: Request, view: APIView, obj: Transaction) -> bool:
        return _is_staff(request) or _is_client(request, obj) or _is_provider(request, obj)


class IsTransactionClient(permissions.BasePermission):
    message = "Only the paying client can perform this action."

    def has_object_permission(self, request: Request, view: APIView, obj: Transaction) -> bool:
        return _is_client(request, obj)


class IsTransactionClientOrStaff(permissions.BasePermission):
    message = "Only the paying client can confirm this payment."

    def has_object_permission(self, request: Request, view: APIView, obj: Transaction) -> bool:
        return _is_staff(request) or _is_client(request, obj)


class IsTransactionProvider(permissions.BasePermission):
    message = "Only the transaction's provider can perform this action."

    def has_object_permission(self, request: Request, view: APIView, obj: Transaction) -> bool:
        return _is_provider(request, obj)


class CanRefundTransaction(permissions.BasePermission):
    """
    Refunds are issued by the provider, or by staff on the client's behalf.

    The client cannot pull money back out of escrow; a client who is
    unhappy raises a dispute instead.
    """

    message = "Only the provider or staff can refund this transaction."

    def has_object_permission(self, request: Request, view: APIView, obj: Transaction) -> bool:
        return _is_staff(request) or _is_provider(request, obj)
