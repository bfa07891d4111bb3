#  EdgeGuard - Test Fixtures
#
#  Shared fixtures for the test suite.
#  Uses an in-process fakeredis server and DI container overrides instead
#  of monkey-patching singletons.
#
#  Depends on: edgeguard/store/connection.py, edgeguard/container.py, edgeguard/app.py
#  Used by:    all test files

from unittest.mock import AsyncMock

import fakeredis
import pytest
from dependency_injector import providers

ADMIN_TOKEN = "test-admin-token-0123456789abcdef0123"


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_server():
    """Fresh fakeredis server. Set .connected = False to simulate an outage."""
    return fakeredis.FakeServer()


@pytest.fixture
async def store(fake_server):
    """KeyValueStore backed by fakeredis."""
    from edgeguard.store.connection import KeyValueStore

    client = fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True)
    kv = KeyValueStore(client)
    yield kv
    await client.aclose()


@pytest.fixture
def ban_registry(store):
    from edgeguard.services.ban_registry import BanRegistry
    return BanRegistry(store)


def _limits(**overrides):
    from edgeguard.config import RATE_LIMITS
    return {**RATE_LIMITS, **overrides}


@pytest.fixture
def limiter_bank(store, ban_registry):
    from edgeguard.services.limiter_bank import RateLimiterBank
    return RateLimiterBank(store, ban_registry, limits=_limits())


# ---------------------------------------------------------------------------
# FastAPI client fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def app_client(store, ban_registry, monkeypatch):
    """httpx client against the app with fakeredis-backed services.

    The auth limiter is widened so admin tests are not throttled by their
    own setup calls; test_admin_ban_api covers the real limit separately.
    """
    from httpx import ASGITransport, AsyncClient
    from edgeguard.app import app, container
    from edgeguard.services.limiter_bank import RateLimiterBank
    from edgeguard.services.request_governor import RequestGovernor

    monkeypatch.setattr("edgeguard.config.ADMIN_API_TOKEN", ADMIN_TOKEN)

    bank = RateLimiterBank(
        store, ban_registry, limits=_limits(auth={"limit": 100, "window_sec": 10}),
    )
    mock_http = AsyncMock()
    mock_http.aclose = AsyncMock()

    container.store.override(providers.Object(store))
    container.ban_registry.override(providers.Object(ban_registry))
    container.limiter_bank.override(providers.Object(bank))
    container.governor.override(providers.Object(RequestGovernor()))
    container.http_client.override(providers.Object(mock_http))

    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        container.store.reset_override()
        container.ban_registry.reset_override()
        container.limiter_bank.reset_override()
        container.governor.reset_override()
        container.http_client.reset_override()


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
