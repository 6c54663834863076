"""
Settlement app configuration.

This app provides escrow-based payment settlement for the marketplace:
- Checkout with marketplace split or plain gateway orders
- Escrow hold with provider review and deadline release
- Refunds, disputes and reconciliation against the gateway
"""

from django.apps import AppConfig


class SettlementConfig(AppConfig):
    """Configuration for the settlement application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "settlement"
    verbose_name = "Settlement"

    def ready(self):
        from settlement import signals  # noqa: F401
