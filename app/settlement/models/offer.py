"""
Offer model: the agreed deal a transaction settles.

Offers are owned by the booking side of the product. The settlement engine
only reads them: client, provider, price and whether the offer can still be
paid.
"""

from __future__ import annotations

from django.db import models

from core.models import TimestampedModel, UUIDKeyedModel
from settlement.models.money import minor_unit_amount
from settlement.state_machines import OfferStatus


class Offer(UUIDKeyedModel, TimestampedModel):
    """
    A priced offer between a client and a provider for a service.

    Fields:
        client_id: User paying for the service
        provider_id: User delivering the service
        service_id: Service being booked
        price: Agreed base price before any fees (Decimal view of price_minor)
        currency: ISO 4217 code (uppercase)
        status: Offer lifecycle state; only PENDING and ACCEPTED are payable
        description: Shown to the payer at checkout
    """

    client_id = models.UUIDField(
        db_index=True,
        help_text="User paying for the service",
    )

    provider_id = models.UUIDField(
        db_index=True,
        help_text="User delivering the service",
    )

    service_id = models.UUIDField(
        null=True,
        blank=True,
        help_text="Service being booked",
    )

    price_minor = models.PositiveBigIntegerField(
        help_text="Agreed base price before fees, in minor units of currency",
    )

    currency = models.CharField(
        max_length=3,
        default="USD",
        help_text="ISO 4217 currency code",
    )

    price = minor_unit_amount("price_minor", "Agreed base price before fees")

    status = models.CharField(
        max_length=20,
        choices=OfferStatus.choices,
        default=OfferStatus.PENDING,
        db_index=True,
    )

    description = models.CharField(
        max_length=255,
        blank=True,
        default="",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Offer"
        verbose_name_plural = "Offers"

    def __str__(self) -> str:
        return f"Offer({self.id}, {self.status}, {self.price} {self.currency})"

    @property
    def is_payable(self) -> bool:
        return self.status in OfferStatus.payable()
