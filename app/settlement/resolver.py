"""
Decide how a provider gets paid.

ProviderSettlementResolver looks at the provider's payout profile and
returns a SettlementPlan:

    verified merchant id + marketplace enabled -> MARKETPLACE
    payout email                               -> PLAIN, paid by payout
    nothing                                    -> PLAIN, manual settlement

Usage:
    resolver = ProviderSettlementResolver(config)
    plan = resolver.resolve(offer.provider_id, split.client_total)
    if plan.requires_manual_settlement:
        ...
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from decimal import Decimal

from settlement.config import SettlementConfig
from settlement.exceptions import ProviderNotSettleableError, SettlementValidationError
from settlement.fees import to_decimal
from settlement.models import ProviderPayoutProfile
from settlement.state_machines import SettlementStrategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementPlan:
    """
    How one transaction will be settled.

    Attributes:
        strategy: MARKETPLACE or PLAIN
        payee_merchant_id: Set for MARKETPLACE only
        payout_email: Destination for a PLAIN payout, if known
        fallback_reason: Why a marketplace plan was downgraded to PLAIN
    """

    strategy: str
    payee_merchant_id: str | None = None
    payout_email: str | None = None
    fallback_reason: str | None = None

    def __post_init__(self):
        if self.strategy == SettlementStrategy.MARKETPLACE and not self.payee_merchant_id:
            raise ValueError("A marketplace plan needs a payee merchant id")

    @property
    def is_marketplace(self) -> bool:
        return self.strategy == SettlementStrategy.MARKETPLACE

    @property
    def requires_manual_settlement(self) -> bool:
        return not self.is_marketplace and not self.payout_email

    def downgrade(self, reason: str) -> SettlementPlan:
        """Same destination, paid as a plain order."""
        return replace(
            self,
            strategy=SettlementStrategy.PLAIN,
            payee_merchant_id=None,
            fallback_reason=reason,
        )


class ProviderSettlementResolver:
    """Resolves SettlementPlans from ProviderPayoutProfile rows."""

    def __init__(self, config: SettlementConfig):
        self.config = config

    @staticmethod
    def _profile(provider_id: uuid.UUID) -> ProviderPayoutProfile | None:
        return ProviderPayoutProfile.objects.filter(provider_id=provider_id).first()

    def resolve(self, provider_id: uuid.UUID, amount: Decimal) -> SettlementPlan:
        """
        Pick the settlement strategy for a payment to provider_id.

        Raises:
            SettlementValidationError: amount is not positive
        """
        amount = to_decimal(amount)
        if amount <= 0:
            raise SettlementValidationError(
                "Settlement amount must be positive",
                details={"amount": str(amount)},
            )

        profile = self._profile(provider_id)
        merchant_id = profile.verified_merchant_id if profile else None
        payout_email = profile.payout_email if profile else None

        if merchant_id and self.config.marketplace_enabled:
            return SettlementPlan(
                strategy=SettlementStrategy.MARKETPLACE,
                payee_merchant_id=merchant_id,
                payout_email=payout_email,
            )

        plan = SettlementPlan(
            strategy=SettlementStrategy.PLAIN,
            payout_email=payout_email,
        )
        if plan.requires_manual_settlement:
            logger.warning(
                "Provider has no payout destination, settlement will be manual",
                extra={"provider_id": str(provider_id)},
            )
        return plan

    def require_payout_destination(self, provider_id: uuid.UUID) -> str:
        """
        Current payout email for provider_id.

        Read at release time, not checkout time, so a provider who adds an
        email while funds are in escrow still gets paid.

        Raises:
            ProviderNotSettleableError: No payout email on file
        """
        profile = self._profile(provider_id)
        if profile is None or not profile.payout_email:
            raise ProviderNotSettleableError(
                "Provider has no payout destination configured",
                details={"provider_id": str(provider_id)},
            )
        return profile.payout_email
