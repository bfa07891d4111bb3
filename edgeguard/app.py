#  EdgeGuard - FastAPI Application
#
#  Main app setup: lifespan, exception handlers, middleware, routers.
#  Creates the DI container and manages service lifecycle.
#
#  Depends on: config.py, container.py, routes/*.py, middleware/*.py
#  Used by:    run.py

import logging
import uuid
from contextlib import AsyncExitStack, asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from edgeguard.config import SWEEP_TEMPORARY_BANS, TEMP_BAN_SWEEP_INTERVAL, validate_config
from edgeguard.container import Container
from edgeguard.exceptions import (
    EdgeGuardError,
    InvalidCidrError,
    InvalidIdentifierError,
    StoreUnavailableError,
)
from edgeguard.logging_config import set_request_id
from edgeguard.middleware.security import EdgeSecurityMiddleware
from edgeguard.routes.admin_ban import router as admin_ban_router
from edgeguard.routes.health import router as health_router

logger = logging.getLogger("edgeguard.app")

# Create and wire the DI container
container = Container()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle.

    Uses AsyncExitStack so that if any startup step fails, all previously
    initialized resources are cleaned up in reverse order.
    """
    logger.info("EdgeGuard starting...")

    validate_config()

    store = container.store()
    http_client = container.http_client()
    governor = container.governor()
    ban_registry = container.ban_registry()

    async with AsyncExitStack() as stack:
        stack.push_async_callback(store.close)
        try:
            await store.ping()
            logger.info("Store reachable")
        except StoreUnavailableError as e:
            # Checks fail open, so the app still serves traffic
            logger.warning("Store unreachable at startup: %s", e)

        stack.push_async_callback(http_client.aclose)

        await governor.start()
        stack.push_async_callback(governor.stop)

        if SWEEP_TEMPORARY_BANS:
            await ban_registry.start_background(TEMP_BAN_SWEEP_INTERVAL)
            stack.push_async_callback(ban_registry.stop_background)
            logger.info("Temporary ban sweep started (every %ss)", TEMP_BAN_SWEEP_INTERVAL)

        yield

    logger.info("EdgeGuard shutting down")


app = FastAPI(
    title="EdgeGuard",
    version="0.1.0",
    lifespan=lifespan,
)


# Global exception handlers: safety net for uncaught errors
@app.exception_handler(InvalidCidrError)
async def invalid_cidr_handler(request: Request, exc: InvalidCidrError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(InvalidIdentifierError)
async def invalid_identifier_handler(request: Request, exc: InvalidIdentifierError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    logger.error("Store unavailable: %s", exc)
    return JSONResponse(status_code=503, content={"detail": "Backing store unavailable"})


@app.exception_handler(EdgeGuardError)
async def edgeguard_handler(request: Request, exc: EdgeGuardError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def unhandled_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Request ID tracing
class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = uuid.uuid4().hex[:12]
        set_request_id(rid)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = rid
            return response
        finally:
            set_request_id(None)


# Added last = outermost, so request ids cover edge rejections too
app.add_middleware(
    EdgeSecurityMiddleware,
    ban_registry=container.ban_registry,
    limiter_bank=container.limiter_bank,
)
app.add_middleware(RequestIDMiddleware)

# Health check (exempt from the edge pipeline, for liveness probes)
app.include_router(health_router, prefix="/api")

# Admin ban API (bearer token, see middleware/admin.py)
app.include_router(admin_ban_router, prefix="/api")
