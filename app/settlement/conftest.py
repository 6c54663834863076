"""
Pytest fixtures shared by all settlement test packages.

Transactions past PENDING are built by driving the orchestrator against
the mock gateway, so the gateway remembers their orders and captures and
later refunds or releases behave as they would in production.

Usage:
    def test_refund_from_escrow(orchestrator, escrow_transaction):
        result = orchestrator.refund(escrow_transaction.pk)
        assert result.data.status == TransactionStatus.REFUNDED
"""

import pytest

from settlement.config import SettlementConfig
from settlement.gateway import MockGatewayClient, get_gateway_client
from settlement.services import SettlementOrchestrator
from settlement.tests.factories import OfferFactory, ProviderPayoutProfileFactory


@pytest.fixture(autouse=True)
def reset_gateway_client():
    """get_gateway_client() is cached per process; start every test fresh."""
    get_gateway_client.cache_clear()
    yield
    get_gateway_client.cache_clear()


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def settlement_config():
    """Default fees (10% platform, 5% client, 10% provider) and a 72h window."""
    return SettlementConfig()


@pytest.fixture
def mock_gateway():
    return MockGatewayClient()


@pytest.fixture
def orchestrator(db, mock_gateway, settlement_config):
    return SettlementOrchestrator(gateway=mock_gateway, config=settlement_config)


# =============================================================================
# Offer and Provider Fixtures
# =============================================================================


@pytest.fixture
def offer(db):
    """An accepted 100.00 USD offer."""
    return OfferFactory()


@pytest.fixture
def plain_provider(db, offer):
    """Payout profile with an email only: plain orders, paid by payout."""
    return ProviderPayoutProfileFactory(provider_id=offer.provider_id)


@pytest.fixture
def marketplace_provider(db, offer):
    """Payout profile with a verified merchant account."""
    return ProviderPayoutProfileFactory(
        provider_id=offer.provider_id,
        merchant_id="MERCHANT-7Q3",
        onboarding_complete=True,
    )


# =============================================================================
# Transaction State Fixtures
# =============================================================================


@pytest.fixture
def pending_transaction(orchestrator, offer, plain_provider):
    """PENDING plain transaction with an open mock order."""
    result = orchestrator.initiate_checkout(offer)
    assert result.success, result.error
    return result.data


@pytest.fixture
def escrow_transaction(orchestrator, pending_transaction):
    """Captured transaction, funds in escrow."""
    result = orchestrator.confirm_payment(pending_transaction.pk)
    assert result.success, result.error
    return result.data


@pytest.fixture
def review_transaction(orchestrator, escrow_transaction):
    """Transaction in PROVIDER_REVIEW."""
    result = orchestrator.begin_provider_review(escrow_transaction.pk)
    assert result.success, result.error
    return result.data


@pytest.fixture
def disputed_transaction(orchestrator, review_transaction):
    result = orchestrator.raise_dispute(review_transaction.pk, reason="No show")
    assert result.success, result.error
    return result.data


@pytest.fixture
def marketplace_review_transaction(orchestrator, offer, marketplace_provider):
    """Marketplace transaction in PROVIDER_REVIEW."""
    tx = orchestrator.initiate_checkout(offer).data
    orchestrator.confirm_payment(tx.pk)
    result = orchestrator.begin_provider_review(tx.pk)
    assert result.success, result.error
    return result.data
