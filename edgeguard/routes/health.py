#  EdgeGuard - Health Routes
#
#  Liveness endpoint (exempt from the edge pipeline) reporting store
#  reachability and governor state.
#
#  Depends on: container.py, models/schemas.py
#  Used by:    app.py

import logging

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends

from edgeguard.container import Container
from edgeguard.exceptions import StoreUnavailableError
from edgeguard.models.schemas import HealthOut
from edgeguard.services.request_governor import RequestGovernor
from edgeguard.store.connection import KeyValueStore

logger = logging.getLogger("edgeguard.health")

router = APIRouter(tags=["health"])


@router.get("/health")
@inject
async def health(
    store: KeyValueStore = Depends(Provide[Container.store]),
    governor: RequestGovernor = Depends(Provide[Container.governor]),
) -> HealthOut:
    try:
        store_up = await store.ping()
    except StoreUnavailableError as e:
        logger.warning("Health check: store unreachable: %s", e)
        store_up = False

    return HealthOut(
        status="ok" if store_up else "degraded",
        store="up" if store_up else "down",
        governor={**governor.stats(), "sweeping": governor.running},
    )
