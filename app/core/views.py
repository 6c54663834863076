"""
/health/ for load balancers and container health checks.

The database decides liveness. A dead cache or an open gateway circuit
leaves the service up but "degraded": checkouts and releases will fail
fast until the gateway recovers, reads still work.
"""

import logging

from django.conf import settings
from django.core.cache import cache
from django.db import DatabaseError, connection
from django.http import JsonResponse

from core.circuit_breaker import CircuitBreaker, CircuitState

logger = logging.getLogger(__name__)


def _database_reachable() -> bool:
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
    except DatabaseError as exc:
        logger.error(f"Health check: database unreachable: {exc}")
        return False
    return True


def _cache_reachable() -> bool:
    try:
        cache.set("health:check", 1, timeout=5)
        return cache.get("health:check") == 1
    except Exception as exc:
        logger.warning(f"Health check: cache unreachable: {exc}")
        return False


def health_check(request):
    """
    Component report, e.g.

        {"status": "degraded", "database": "connected",
         "cache": "connected", "circuits": {"paypal-api": "open"}}

    503 when the database is down, 200 otherwise.
    """
    database_ok = _database_reachable()
    circuits = {
        name: CircuitBreaker(name=name).get_status()["state"]
        for name in getattr(settings, "HEALTH_CHECK_CIRCUITS", [])
    }

    if not database_ok:
        overall = "unhealthy"
    elif any(state != CircuitState.CLOSED.value for state in circuits.values()):
        overall = "degraded"
    else:
        overall = "healthy"

    body = {
        "status": overall,
        "database": "connected" if database_ok else "disconnected",
        "cache": "connected" if _cache_reachable() else "disconnected",
        "circuits": circuits,
    }
    return JsonResponse(body, status=200 if database_ok else 503)
