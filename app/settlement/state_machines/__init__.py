"""
State machine enums for settlement models.
"""

from settlement.state_machines.states import (
    DisputeOutcome,
    OfferStatus,
    SettlementStrategy,
    TransactionStatus,
    WebhookEventStatus,
)

__all__ = [
    "DisputeOutcome",
    "OfferStatus",
    "SettlementStrategy",
    "TransactionStatus",
    "WebhookEventStatus",
]
