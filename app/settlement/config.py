"""
Settlement settings snapshot.

SettlementConfig freezes every tunable the engine reads at the moment an
orchestrator is built, so a single operation never sees fees change
half-way through. Values come from Django settings, overridden by
PlatformSetting rows.

Usage:
    config = SettlementConfig.from_settings()
    config.review_window  # timedelta(hours=72)

    # Tests pass explicit values
    config = SettlementConfig(platform_fee_percent=Decimal("10"))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from django.conf import settings

logger = logging.getLogger(__name__)

# PlatformSetting key -> (SettlementConfig field, converter)
OVERRIDABLE = {
    "platform_fee_percent": ("platform_fee_percent", Decimal),
    "client_fee_percent": ("client_fee_percent", Decimal),
    "provider_fee_percent": ("provider_fee_percent", Decimal),
    "escrow_review_window_hours": ("review_window_hours", int),
}


@dataclass(frozen=True)
class SettlementConfig:
    """
    Immutable engine configuration.

    Attributes:
        platform_fee_percent: Platform-wide fee percentage
        client_fee_percent: Fee added on top for the client
        provider_fee_percent: Fee withheld from the provider
        review_window_hours: Escrow window before automatic release
        default_currency: Currency for offers that do not name one
        claim_ttl_seconds: Age after which a settlement claim may be taken over
        release_batch_size: Transactions queued per scheduler pass
        stale_pending_after_minutes: Reconciliation looks at PENDING older than this
        stale_pending_expire_hours: PENDING older than this is declined
        marketplace_enabled: Allow split orders for verified merchants
        return_url: Where the payer lands after approving at the gateway
        cancel_url: Where the payer lands after cancelling at the gateway
    """

    platform_fee_percent: Decimal = Decimal("10")
    client_fee_percent: Decimal = Decimal("5")
    provider_fee_percent: Decimal = Decimal("10")
    review_window_hours: int = 72
    default_currency: str = "USD"
    claim_ttl_seconds: int = 300
    release_batch_size: int = 100
    stale_pending_after_minutes: int = 60
    stale_pending_expire_hours: int = 24
    marketplace_enabled: bool = True
    return_url: str = ""
    cancel_url: str = ""
    overrides: dict = field(default_factory=dict, compare=False)

    def __post_init__(self):
        if self.review_window_hours < 0:
            raise ValueError("review_window_hours must not be negative")
        if self.claim_ttl_seconds <= 0:
            raise ValueError("claim_ttl_seconds must be positive")
        if self.release_batch_size <= 0:
            raise ValueError("release_batch_size must be positive")

    @property
    def review_window(self) -> timedelta:
        return timedelta(hours=self.review_window_hours)

    @property
    def claim_ttl(self) -> timedelta:
        return timedelta(seconds=self.claim_ttl_seconds)

    @property
    def stale_pending_after(self) -> timedelta:
        return timedelta(minutes=self.stale_pending_after_minutes)

    @property
    def stale_pending_expire(self) -> timedelta:
        return timedelta(hours=self.stale_pending_expire_hours)

    @classmethod
    def from_settings(cls, use_platform_settings: bool = True) -> SettlementConfig:
        """Build a snapshot from Django settings and PlatformSetting rows."""
        config = cls(
            platform_fee_percent=Decimal(str(settings.PLATFORM_FEE_PERCENT)),
            client_fee_percent=Decimal(str(settings.CLIENT_FEE_PERCENT)),
            provider_fee_percent=Decimal(str(settings.PROVIDER_FEE_PERCENT)),
            review_window_hours=settings.ESCROW_REVIEW_WINDOW_HOURS,
            default_currency=settings.SETTLEMENT_DEFAULT_CURRENCY,
            claim_ttl_seconds=settings.SETTLEMENT_CLAIM_TTL_SECONDS,
            release_batch_size=settings.ESCROW_RELEASE_BATCH_SIZE,
            stale_pending_after_minutes=settings.STALE_PENDING_AFTER_MINUTES,
            stale_pending_expire_hours=settings.STALE_PENDING_EXPIRE_HOURS,
            marketplace_enabled=settings.PAYPAL_MARKETPLACE_ENABLED,
            return_url=settings.PAYPAL_RETURN_URL,
            cancel_url=settings.PAYPAL_CANCEL_URL,
        )
        if not use_platform_settings:
            return config

        from settlement.models import PlatformSetting

        return config.with_overrides(PlatformSetting.as_dict())

    def with_overrides(self, values: dict[str, str]) -> SettlementConfig:
        """
        Apply PlatformSetting values. Unknown keys are skipped; bad values
        are logged and skipped.
        """
        changes = {}
        for key, raw in values.items():
            if key not in OVERRIDABLE:
                continue
            field_name, convert = OVERRIDABLE[key]
            try:
                changes[field_name] = convert(str(raw).strip())
            except (InvalidOperation, ValueError):
                logger.warning(
                    f"Ignoring invalid platform setting {key}={raw!r}",
                    extra={"setting_key": key},
                )
        if not changes:
            return self
        try:
            return replace(self, overrides=changes, **changes)
        except ValueError as exc:
            logger.warning(f"Ignoring platform setting overrides: {exc}")
            return self
