"""
Pytest fixtures for M-Pesa adapter tests.

Sections:
    - Cache Fixtures
    - Mock HTTP Response Fixtures
    - Request Parameter Fixtures
"""

from unittest.mock import MagicMock, patch

import pytest
import requests
from django.core.cache import cache

from premiums.adapters import AccessTokenCache, B2CParams, StkPushParams


# =============================================================================
# Cache Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def clear_token_cache():
    """Every test starts without a cached access token."""
    cache.delete(AccessTokenCache.CACHE_KEY)
    yield
    cache.delete(AccessTokenCache.CACHE_KEY)


@pytest.fixture
def cached_token():
    """A valid token already in the cache, so no OAuth call is made."""
    AccessTokenCache.store("cached-token", expires_in=3599)
    return "cached-token"


# =============================================================================
# Mock HTTP Response Fixtures
# =============================================================================


@pytest.fixture
def mock_response():
    """
    Build a requests.Response stand-in.

    Usage:
        response = mock_response(200, {"ResponseCode": "0"})
    """

    def _create(status_code: int = 200, body=None, json_error: bool = False):
        response = MagicMock(spec=requests.Response)
        response.status_code = status_code
        if json_error:
            response.json.side_effect = ValueError("No JSON")
        else:
            response.json.return_value = body if body is not None else {}
        return response

    return _create


@pytest.fixture
def mock_post():
    with patch("premiums.adapters.mpesa_adapter.requests.post") as mocked:
        yield mocked


@pytest.fixture
def mock_get():
    with patch("premiums.adapters.mpesa_adapter.requests.get") as mocked:
        yield mocked


# =============================================================================
# Request Parameter Fixtures
# =============================================================================


@pytest.fixture
def stk_params():
    return StkPushParams(
        phone_number="254712345678",
        amount=50,
        account_reference="MWU1A2B3C4D5",
        description="Premium payment",
        callback_url="https://api.example.com/api/v1/premiums/webhooks/mpesa/stk/",
    )


@pytest.fixture
def b2c_params():
    return B2CParams(
        phone_number="254712345678",
        amount=120,
        originator_conversation_id="5f2c6e0d9b0a4c7e8f1a2b3c4d5e6f70",
        remarks="Commission 2025-01-15",
        result_url="https://api.example.com/api/v1/premiums/webhooks/mpesa/b2c/result/",
        timeout_url="https://api.example.com/api/v1/premiums/webhooks/mpesa/b2c/timeout/",
        occasion="tier_1",
    )
