"""
Settlement services.

Usage:
    from settlement.services import SettlementOrchestrator

    result = SettlementOrchestrator.from_settings().confirm_payment(tx_id)
"""

from settlement.services.orchestrator import SettlementOrchestrator

__all__ = ["SettlementOrchestrator"]
