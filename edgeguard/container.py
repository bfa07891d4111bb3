#  EdgeGuard - Dependency Injection Container
#
#  DeclarativeContainer wiring the store, ban/limit services and the
#  outbound request governor.
#
#  Depends on: config.py, store/connection.py, services/*
#  Used by:    app.py, routes/*, middleware/admin.py

import httpx
from dependency_injector import containers, providers

from edgeguard.config import HTTP_TIMEOUT, RATE_LIMITS, REDIS_URL, STORE_SOCKET_TIMEOUT
from edgeguard.services.ban_registry import BanRegistry
from edgeguard.services.cidr_matcher import CidrMatcher
from edgeguard.services.governed_client import GovernedClient
from edgeguard.services.limiter_bank import RateLimiterBank
from edgeguard.services.request_governor import RequestGovernor
from edgeguard.store.connection import KeyValueStore


class Container(containers.DeclarativeContainer):
    """DI container for EdgeGuard.

    All services are Singletons, one instance per application lifecycle.
    Routes access them via @inject + Depends(Provide[Container.xxx]); the
    edge middleware calls the providers per request.
    Tests override them via container.xxx.override(providers.Object(obj)).
    """

    wiring_config = containers.WiringConfiguration(
        modules=[
            "edgeguard.routes.admin_ban",
            "edgeguard.routes.health",
            "edgeguard.middleware.admin",
        ]
    )

    # --- Core ---
    store = providers.Singleton(
        KeyValueStore.from_url, REDIS_URL, socket_timeout=STORE_SOCKET_TIMEOUT,
    )
    http_client = providers.Singleton(httpx.AsyncClient, timeout=HTTP_TIMEOUT)

    # --- Edge security ---
    cidr_matcher = providers.Singleton(CidrMatcher, store=store)
    ban_registry = providers.Singleton(BanRegistry, store=store, cidr_matcher=cidr_matcher)
    limiter_bank = providers.Singleton(
        RateLimiterBank, store=store, ban_registry=ban_registry, limits=RATE_LIMITS,
    )

    # --- Outbound ---
    governor = providers.Singleton(RequestGovernor.from_config)
    governed_client = providers.Singleton(GovernedClient, http_client=http_client, governor=governor)
