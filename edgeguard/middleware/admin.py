#  EdgeGuard - Admin Guard
#
#  FastAPI dependency protecting the admin ban API with a static bearer
#  token (EDGEGUARD_ADMIN_TOKEN). Every check consumes the auth limiter
#  keyed by client IP, so token guessing is rate limited.
#
#  Depends on: container.py, config.py, services/limiter_bank.py,
#              middleware/security.py
#  Used by:    routes/admin_ban.py

import hmac
import logging

from dependency_injector.wiring import inject, Provide
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from edgeguard import config
from edgeguard.container import Container
from edgeguard.middleware.security import get_client_ip
from edgeguard.models.enums import LimiterKind
from edgeguard.services.limiter_bank import RateLimiterBank

logger = logging.getLogger("edgeguard.admin")

_bearer_scheme = HTTPBearer(auto_error=False)


@inject
async def require_admin_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    limiter_bank: RateLimiterBank = Depends(Provide[Container.limiter_bank]),
) -> str:
    """Validate the admin bearer token. Returns the caller's IP."""
    client_ip = get_client_ip(request)

    result = await limiter_bank.check_and_consume(LimiterKind.AUTH, client_ip)
    if not result.allowed:
        logger.warning("Admin auth rate limit exceeded for %s", client_ip)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many authentication attempts",
            headers={"Retry-After": str(result.retry_after)},
        )

    # Read at call time so tests and operators can rotate the token
    expected = config.ADMIN_API_TOKEN
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API is not configured",
        )

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        logger.warning("Invalid admin token from %s", client_ip)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return client_ip
