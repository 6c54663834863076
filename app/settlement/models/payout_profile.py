"""
ProviderPayoutProfile: where a provider's money goes.
"""

from __future__ import annotations

from django.db import models

from core.models import TimestampedModel, UUIDKeyedModel


class ProviderPayoutProfile(UUIDKeyedModel, TimestampedModel):
    """
    Payout destination for one provider.

    A provider can be paid in one of two ways:
        - merchant_id with onboarding_complete: marketplace split orders,
          the gateway pays the provider when funds are released
        - payout_email: plain orders, paid by a payout after release

    Fields:
        provider_id: Provider user id (one profile per provider)
        merchant_id: Gateway merchant account id from onboarding
        payout_email: Email that receives payouts
        onboarding_complete: Merchant onboarding finished and verified
    """

    provider_id = models.UUIDField(
        unique=True,
        help_text="Provider user id",
    )

    merchant_id = models.CharField(
        max_length=64,
        null=True,
        blank=True,
        help_text="Gateway merchant account id",
    )

    payout_email = models.EmailField(
        null=True,
        blank=True,
        help_text="Email address receiving payouts",
    )

    onboarding_complete = models.BooleanField(
        default=False,
        help_text="Whether merchant onboarding is complete and verified",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Provider Payout Profile"
        verbose_name_plural = "Provider Payout Profiles"

    def __str__(self) -> str:
        return f"ProviderPayoutProfile(provider={self.provider_id})"

    @property
    def verified_merchant_id(self) -> str | None:
        """Merchant id if it may receive marketplace orders, else None."""
        if self.merchant_id and self.onboarding_complete:
            return self.merchant_id
        return None
