"""
Payment gateway access for the settlement engine.

Usage:
    from settlement.gateway import get_gateway_client

    gateway = get_gateway_client()
    order = gateway.create_order(...)

get_gateway_client() decides between the PayPal client and the mock from
settings:

    PAYPAL_MOCK_MODE=True   -> mock (refused when PAYPAL_MODE=live)
    PAYPAL_MOCK_MODE=False  -> PayPal, credentials required
    PAYPAL_MOCK_MODE unset  -> mock when credentials are missing, else PayPal
"""

import logging
from functools import lru_cache

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from .base import (
    CaptureResult,
    GatewayClient,
    IdempotencyKeyGenerator,
    OrderMetadata,
    OrderResult,
    OrderStatusResult,
    PayoutResult,
    RefundResult,
    ReleaseResult,
    WebhookSignature,
    payout_batch_id,
)
from .mock import MockGatewayClient
from .paypal import PayPalGatewayClient

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_gateway_client() -> GatewayClient:
    """
    Return the process-wide gateway client.

    Cached so every caller shares one access-token cache. Tests reset it
    with get_gateway_client.cache_clear().

    Raises:
        ImproperlyConfigured: Mock mode in live mode, or live mode without
            credentials
    """
    has_credentials = bool(settings.PAYPAL_CLIENT_ID and settings.PAYPAL_CLIENT_SECRET)
    mock_mode = settings.PAYPAL_MOCK_MODE
    if mock_mode is None:
        mock_mode = not has_credentials

    if mock_mode:
        if settings.PAYPAL_MODE == "live":
            raise ImproperlyConfigured(
                "PAYPAL_MOCK_MODE cannot be used with PAYPAL_MODE=live"
            )
        logger.warning(
            "Payment gateway running in MOCK mode; no money will move",
            extra={"paypal_mode": settings.PAYPAL_MODE},
        )
        return MockGatewayClient()

    if not has_credentials:
        raise ImproperlyConfigured(
            "PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET are required when "
            "PAYPAL_MOCK_MODE is disabled"
        )
    return PayPalGatewayClient.from_settings()


__all__ = [
    "CaptureResult",
    "GatewayClient",
    "IdempotencyKeyGenerator",
    "MockGatewayClient",
    "OrderMetadata",
    "OrderResult",
    "OrderStatusResult",
    "PayPalGatewayClient",
    "PayoutResult",
    "RefundResult",
    "ReleaseResult",
    "WebhookSignature",
    "get_gateway_client",
    "payout_batch_id",
]
