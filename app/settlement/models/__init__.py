"""
Settlement domain models.

- Transaction: settlement record of one payment, FSM-managed status
- Offer: the priced deal a transaction settles (read-only to settlement)
- ProviderPayoutProfile: where a provider's money goes
- PlatformSetting: operator overrides for fees and escrow timing
- SettlementParty: maps an authenticated user to their client/provider id
- GatewayWebhookEvent: stored gateway webhooks, processed once
"""

from settlement.models.offer import Offer
from settlement.models.payout_profile import ProviderPayoutProfile
from settlement.models.party import SettlementParty
from settlement.models.platform_setting import PlatformSetting
from settlement.models.transaction import Transaction
from settlement.models.webhook_event import GatewayWebhookEvent

__all__ = [
    "GatewayWebhookEvent",
    "Offer",
    "PlatformSetting",
    "ProviderPayoutProfile",
    "SettlementParty",
    "Transaction",
]
