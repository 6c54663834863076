"""
Escrow marketplace settlement.

Clients pay for a provider's offer; funds are captured into escrow, the
provider has a review window to approve, and the provider is paid on
approval or when the window ends. Refunds and disputes are supported until
the provider is paid.

Entry point: settlement.services.SettlementOrchestrator
"""
