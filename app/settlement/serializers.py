"""
DRF serializers for the settlement app.

This module provides serializers for:
- Transaction responses
- Checkout, refund and dispute requests

Related files:
    - models: Transaction, Offer
    - views.py: Settlement API views

Usage:
    serializer = RefundRequestSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    amount = serializer.validated_data.get("amount")
"""

from __future__ import annotations

from decimal import Decimal

from rest_framework import serializers

from settlement.fees import format_money
from settlement.models import Transaction
from settlement.state_machines import DisputeOutcome


class MoneyField(serializers.Field):
    """
    Read-only amount rendered as a decimal string in the object's currency.

    Reads the Decimal property named like the field ("provider_net"), so
    "90.00" for USD, "10.005" for BHD and "1500" for JPY.
    """

    def __init__(self, **kwargs):
        kwargs["source"] = "*"
        kwargs["read_only"] = True
        super().__init__(**kwargs)

    def to_representation(self, obj):
        value = getattr(obj, self.field_name)
        if value is None:
            return None
        return format_money(value, obj.currency)


class TransactionSerializer(serializers.ModelSerializer):
    """
    Transaction serializer for API responses.

    Amounts are rendered as decimal strings with the currency's own
    number of decimals, never floats.
    """

    amount = MoneyField()
    client_fee = MoneyField()
    client_total = MoneyField()
    platform_fee = MoneyField()
    provider_net = MoneyField()
    refunded_amount = MoneyField()
    approve_url = serializers.SerializerMethodField()

    class Meta:
        model = Transaction
        fields = [
            "id",
            "offer",
            "client_id",
            "provider_id",
            "status",
            "settlement_strategy",
            "requires_manual_settlement",
            "currency",
            "amount",
            "client_fee",
            "client_total",
            "platform_fee",
            "provider_net",
            "refunded_amount",
            "gateway_order_id",
            "gateway_capture_id",
            "gateway_payout_id",
            "gateway_refund_id",
            "approve_url",
            "escrow_start",
            "escrow_end",
            "review_started_at",
            "completed_at",
            "refunded_at",
            "declined_at",
            "disputed_at",
            "status_reason",
            "version",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_approve_url(self, obj: Transaction) -> str | None:
        return obj.get_meta("approve_url")


class CheckoutRequestSerializer(serializers.Serializer):
    """
    Request body for starting checkout.

    Fields:
        offer_id: Offer being paid
        booking_id: Optional booking recorded with the transaction
    """

    offer_id = serializers.UUIDField()
    booking_id = serializers.UUIDField(required=False, allow_null=True)


class RefundRequestSerializer(serializers.Serializer):
    """
    Request body for a refund.

    Omitting amount refunds the full amount charged. Up to three
    decimals are accepted here; the orchestrator rejects more than the
    transaction currency has.
    """

    amount = serializers.DecimalField(
        max_digits=15,
        decimal_places=3,
        required=False,
        allow_null=True,
        min_value=Decimal("0.001"),
    )
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class DisputeRequestSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class ResolveDisputeRequestSerializer(serializers.Serializer):
    outcome = serializers.ChoiceField(choices=DisputeOutcome.choices)
