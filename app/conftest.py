"""
Project-wide pytest setup.

Settlement fixtures (offers, transactions, orchestrator) live in
settlement/conftest.py; factories in settlement/tests/factories.py.
"""

import os

import django
import pytest

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

# filename -> marker; anything unlisted touches the database and counts as integration
_MARKERS_BY_FILE = {
    "test_integration.py": "e2e",
    "test_fees.py": "unit",
    "test_config.py": "unit",
    "test_state_transitions.py": "unit",
    "test_paypal_client.py": "unit",
    "test_mock_client.py": "unit",
    "test_factory.py": "unit",
}


def pytest_configure():
    django.setup()

    from django.conf import settings

    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_CLASSES"] = []
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_RATES"] = {}
    settings.PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]


def pytest_collection_modifyitems(items):
    """Tag each test unit, integration or e2e unless it carries one already."""
    for item in items:
        if {m.name for m in item.iter_markers()} & {"unit", "integration", "e2e"}:
            continue
        marker = _MARKERS_BY_FILE.get(item.path.name, "integration")
        item.add_marker(getattr(pytest.mark, marker))


@pytest.fixture(autouse=True)
def _plain_http(settings):
    settings.SECURE_SSL_REDIRECT = False


@pytest.fixture(autouse=True)
def _clear_cache():
    """Breaker state, PayPal tokens and platform settings are cached."""
    from django.core.cache import cache

    cache.clear()
    yield
    cache.clear()
