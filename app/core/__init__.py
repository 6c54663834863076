"""
Project-wide infrastructure with no payment knowledge.

    core.models           abstract model bases (timestamps, UUID keys, metadata)
    core.services         ServiceResult and BaseService
    core.exceptions       BaseApplicationError hierarchy
    core.circuit_breaker  cache-backed circuit breaker for remote calls
    core.views            /health/ endpoint
"""
