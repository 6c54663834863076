"""
SettlementParty: links an authenticated user to the id offers use for them.

Offers and transactions name their client and provider by UUID
(client_id / provider_id). The API resolves the caller's UUID through
this table; nothing is ever taken from the request body.

Usage:
    from settlement.models.party import party_id_for

    if party_id_for(request.user) == tx.provider_id:
        ...
"""

from __future__ import annotations

import uuid

from django.conf import settings
from django.db import models

from core.models import TimestampedModel


class SettlementParty(TimestampedModel):
    """One user's identity as a client or provider in settlement."""

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="settlement_party",
        primary_key=True,
        help_text="User this party id belongs to",
    )

    party_id = models.UUIDField(
        default=uuid.uuid4,
        unique=True,
        help_text="Id used as client_id / provider_id on offers and transactions",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Settlement Party"
        verbose_name_plural = "Settlement Parties"

    def __str__(self) -> str:
        return f"SettlementParty({self.user_id}, {self.party_id})"


def party_id_for(user) -> uuid.UUID | None:
    """The user's party id, or None for anonymous users and users without one."""
    if user is None or not user.is_authenticated:
        return None
    party = SettlementParty.objects.filter(user=user).only("party_id").first()
    return party.party_id if party else None
