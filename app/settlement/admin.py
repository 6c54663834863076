"""
Settlement admin configuration.

Read-mostly visibility into transactions. Transaction status is a protected
FSM field; state changes go through SettlementOrchestrator, never the admin.
"""

from django.contrib import admin

from settlement.fees import format_money
from settlement.models import (
    GatewayWebhookEvent,
    Offer,
    PlatformSetting,
    ProviderPayoutProfile,
    SettlementParty,
    Transaction,
)


@admin.register(Transaction)
class TransactionAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "provider_id",
        "amount_display",
        "status",
        "settlement_strategy",
        "requires_manual_settlement",
        "escrow_end",
        "created_at",
    ]
    list_filter = [
        "status",
        "settlement_strategy",
        "requires_manual_settlement",
        "currency",
    ]
    search_fields = [
        "id",
        "gateway_order_id",
        "gateway_capture_id",
        "gateway_payout_id",
    ]
    readonly_fields = [field.name for field in Transaction._meta.fields] + [
        "amount",
        "client_fee",
        "platform_fee",
        "provider_net",
        "refunded_amount",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    fieldsets = (
        (None, {"fields": ("id", "offer", "client_id", "provider_id", "status")}),
        (
            "Amounts",
            {
                "fields": (
                    "currency",
                    "amount",
                    "client_fee",
                    "platform_fee",
                    "provider_net",
                    "refunded_amount",
                ),
            },
        ),
        (
            "Settlement",
            {
                "fields": (
                    "settlement_strategy",
                    "payee_merchant_id",
                    "requires_manual_settlement",
                    "status_reason",
                    "settlement_claimed_at",
                    "payout_status",
                    "payout_checked_at",
                ),
            },
        ),
        (
            "Gateway References",
            {
                "fields": (
                    "gateway_order_id",
                    "gateway_capture_id",
                    "gateway_payout_id",
                    "gateway_refund_id",
                ),
                "classes": ("collapse",),
            },
        ),
        (
            "State Timestamps",
            {
                "fields": (
                    "escrow_start",
                    "escrow_end",
                    "review_started_at",
                    "completed_at",
                    "refunded_at",
                    "declined_at",
                    "disputed_at",
                ),
                "classes": ("collapse",),
            },
        ),
        (
            "Metadata",
            {"fields": ("metadata", "version"), "classes": ("collapse",)},
        ),
        ("Timestamps", {"fields": ("created_at", "updated_at")}),
    )

    @admin.display(description="Amount")
    def amount_display(self, obj: Transaction) -> str:
        return f"{format_money(obj.amount, obj.currency)} {obj.currency}"

    def has_add_permission(self, request) -> bool:
        """Transactions are only created by checkout."""
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for transactions (audit trail)."""
        return False


@admin.register(Offer)
class OfferAdmin(admin.ModelAdmin):
    list_display = ["id", "client_id", "provider_id", "price", "currency", "status"]
    list_filter = ["status", "currency"]
    search_fields = ["id", "client_id", "provider_id"]
    readonly_fields = ["id", "price", "created_at", "updated_at"]


@admin.register(ProviderPayoutProfile)
class ProviderPayoutProfileAdmin(admin.ModelAdmin):
    list_display = [
        "provider_id",
        "merchant_id",
        "onboarding_complete",
        "payout_email",
        "updated_at",
    ]
    list_filter = ["onboarding_complete"]
    search_fields = ["provider_id", "merchant_id", "payout_email"]
    readonly_fields = ["id", "created_at", "updated_at"]


@admin.register(PlatformSetting)
class PlatformSettingAdmin(admin.ModelAdmin):
    list_display = ["key", "value", "description", "updated_at"]
    search_fields = ["key"]


@admin.register(SettlementParty)
class SettlementPartyAdmin(admin.ModelAdmin):
    list_display = ["user", "party_id", "created_at"]
    search_fields = ["party_id", "user__username", "user__email"]
    readonly_fields = ["created_at", "updated_at"]
    raw_id_fields = ["user"]


@admin.register(GatewayWebhookEvent)
class GatewayWebhookEventAdmin(admin.ModelAdmin):
    """Webhook processing status. Events are immutable once received."""

    list_display = [
        "event_id",
        "event_type",
        "status",
        "retry_count",
        "processed_at",
        "created_at",
    ]
    list_filter = ["status", "event_type"]
    search_fields = ["id", "event_id", "event_type"]
    readonly_fields = [
        "id",
        "event_id",
        "event_type",
        "payload",
        "processed_at",
        "created_at",
        "updated_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    fieldsets = (
        (None, {"fields": ("id", "event_id", "event_type", "status")}),
        ("Processing", {"fields": ("processed_at", "retry_count")}),
        ("Error Info", {"fields": ("error_message",), "classes": ("collapse",)}),
        ("Payload", {"fields": ("payload",), "classes": ("collapse",)}),
        ("Timestamps", {"fields": ("created_at", "updated_at")}),
    )

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for webhook events (audit trail)."""
        return False
