#  EdgeGuard - Edge Security Middleware
#
#  Per-request pipeline in front of the application:
#    exempt path -> ban check (403) -> CSRF cookie -> rate limit (429)
#    -> security headers -> response
#  Any failure inside the pipeline lets the request through unmodified.
#
#  Depends on: config.py, logging_config.py, services/ban_registry.py,
#              services/limiter_bank.py, models/enums.py
#  Used by:    app.py, middleware/admin.py

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from edgeguard.config import (
    CSP_CONNECT_SOURCES,
    CSP_FONT_SOURCES,
    CSP_FRAME_SOURCES,
    CSP_STYLE_SOURCES,
    CSRF_COOKIE_MAX_AGE,
    CSRF_COOKIE_NAME,
    ENFORCE_BANS,
    ENFORCE_RATE_LIMITS,
    EXEMPT_PATHS,
    IS_PRODUCTION,
    PERMISSIONS_POLICY,
    RATE_LIMIT_PATH_RULES,
)
from edgeguard.logging_config import client_ip_context
from edgeguard.models.enums import LimiterKind
from edgeguard.services.ban_registry import BanRegistry
from edgeguard.services.limiter_bank import RateLimiterBank, RateLimitResult

logger = logging.getLogger("edgeguard.edge")

LOOPBACK = "127.0.0.1"


# ---------------------------------------------------------------------------
# Client IP resolution
# ---------------------------------------------------------------------------

def _first(value: str | None) -> str | None:
    if not value:
        return None
    head = value.split(",")[0].strip()
    return head or None


def get_client_ip(request: Request) -> str:
    """Originating client IP.

    Priority: CF-Connecting-IP -> X-Real-IP -> first X-Forwarded-For hop
    -> socket peer -> 127.0.0.1.
    """
    for header in ("cf-connecting-ip", "x-real-ip", "x-forwarded-for"):
        ip = _first(request.headers.get(header))
        if ip:
            return ip
    if request.client and request.client.host:
        return request.client.host
    return LOOPBACK


# ---------------------------------------------------------------------------
# Path rules
# ---------------------------------------------------------------------------

def is_exempt(path: str, exempt_paths: list[str] = EXEMPT_PATHS) -> bool:
    return any(path.startswith(prefix) for prefix in exempt_paths)


def limiter_kind_for_path(path: str, rules: list[list[str]] = RATE_LIMIT_PATH_RULES) -> LimiterKind:
    for prefix, kind in rules:
        if path.startswith(prefix):
            return LimiterKind(kind)
    return LimiterKind.DEFAULT


# ---------------------------------------------------------------------------
# Header assembly (pure)
# ---------------------------------------------------------------------------

def build_csp(
    nonce: str,
    *,
    production: bool = IS_PRODUCTION,
    connect_sources: list[str] = CSP_CONNECT_SOURCES,
    frame_sources: list[str] = CSP_FRAME_SOURCES,
    font_sources: list[str] = CSP_FONT_SOURCES,
    style_sources: list[str] = CSP_STYLE_SOURCES,
) -> str:
    directives = [
        "default-src 'self'",
        f"script-src 'self' 'nonce-{nonce}' 'strict-dynamic' 'unsafe-inline'",
        " ".join(["style-src 'self' 'unsafe-inline'", *style_sources]),
        "img-src 'self' data: https:",
        " ".join(["connect-src 'self'", *connect_sources]),
        " ".join(["frame-src", *frame_sources]) if frame_sources else "frame-src 'none'",
        "worker-src 'self' blob:",
        "object-src 'none'",
        "base-uri 'none'",
        "frame-ancestors 'none'",
        " ".join(["font-src 'self'", *font_sources]),
        "upgrade-insecure-requests",
    ]
    # Trusted types break dev-server hot reload
    if production:
        directives += [
            "require-trusted-types-for 'script'",
            "trusted-types default dompurify",
        ]
    return "; ".join(directives)


def security_headers(nonce: str, *, production: bool = IS_PRODUCTION) -> dict[str, str]:
    return {
        "Content-Security-Policy": build_csp(nonce, production=production),
        "X-Content-Type-Options": "nosniff",
        "Permissions-Policy": PERMISSIONS_POLICY,
        "Referrer-Policy": "no-referrer",
        "Cross-Origin-Opener-Policy": "same-origin",
        "Cross-Origin-Resource-Policy": "same-site",
        "Cross-Origin-Embedder-Policy": "require-corp",
    }


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset),
    }


# ---------------------------------------------------------------------------
# Structured rejections
# ---------------------------------------------------------------------------

def forbidden_response() -> JSONResponse:
    return JSONResponse(
        status_code=403,
        content={"error": "Forbidden", "message": "Access denied"},
    )


def too_many_requests_response(result: RateLimitResult) -> JSONResponse:
    retry_after = result.retry_after
    reset_at = datetime.fromtimestamp(result.reset, tz=timezone.utc).isoformat()
    headers = rate_limit_headers(result)
    headers["X-RateLimit-Remaining"] = "0"
    headers["Retry-After"] = str(retry_after)
    return JSONResponse(
        status_code=429,
        content={
            "error": "Too Many Requests",
            "message": f"Please try again later. Reset time: {reset_at}",
            "retryAfter": retry_after,
        },
        headers=headers,
    )


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

@dataclass
class _Preflight:
    nonce: str
    csrf_token: str | None = None
    rate_limit: RateLimitResult | None = None
    rejection: Response | None = None


class EdgeSecurityMiddleware(BaseHTTPMiddleware):
    """Ban, CSRF, rate-limit and header stages for every non-exempt request.

    Collaborators are resolved per request through provider callables, so
    DI container overrides apply without rebuilding the middleware stack.
    """

    def __init__(
        self,
        app,
        *,
        ban_registry: Callable[[], BanRegistry],
        limiter_bank: Callable[[], RateLimiterBank],
        enforce_bans: bool = ENFORCE_BANS,
        enforce_rate_limits: bool = ENFORCE_RATE_LIMITS,
        production: bool = IS_PRODUCTION,
        exempt_paths: list[str] | None = None,
    ):
        super().__init__(app)
        self._ban_registry = ban_registry
        self._limiter_bank = limiter_bank
        self._enforce_bans = enforce_bans
        self._enforce_rate_limits = enforce_rate_limits
        self._production = production
        self._exempt_paths = EXEMPT_PATHS if exempt_paths is None else exempt_paths

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path

        if is_exempt(path, self._exempt_paths):
            logger.debug("Skipping edge pipeline for exempt path %s", path)
            return await call_next(request)

        client_ip = get_client_ip(request)
        with client_ip_context(client_ip):
            return await self._run_pipeline(request, call_next, client_ip)

    async def _run_pipeline(self, request: Request, call_next, client_ip: str) -> Response:
        path = request.url.path
        try:
            preflight = await self._preflight(request, client_ip)
        except Exception as e:
            logger.error("Edge pipeline error on %s: %s", path, e, exc_info=True)
            return await call_next(request)

        if preflight.rejection is not None:
            return preflight.rejection

        response = await call_next(request)

        try:
            self._decorate(response, preflight)
        except Exception as e:
            logger.error("Edge header assembly failed on %s: %s", path, e, exc_info=True)
        return response

    async def _preflight(self, request: Request, client_ip: str) -> _Preflight:
        path = request.url.path

        if self._enforce_bans and await self._ban_registry().is_address_banned(client_ip):
            logger.warning("Blocked banned IP %s at edge (path=%s)", client_ip, path)
            return _Preflight(nonce="", rejection=forbidden_response())

        nonce = uuid.uuid4().hex
        request.state.csp_nonce = nonce
        request.scope["headers"] = [
            (k, v) for k, v in request.scope["headers"] if k != b"x-nonce"
        ] + [(b"x-nonce", nonce.encode())]
        preflight = _Preflight(nonce=nonce)

        if not request.cookies.get(CSRF_COOKIE_NAME):
            logger.debug("Issuing CSRF token cookie")
            preflight.csrf_token = secrets.token_hex(32)

        if self._enforce_rate_limits:
            kind = limiter_kind_for_path(path)
            result = await self._limiter_bank().check_and_consume(kind, client_ip)
            preflight.rate_limit = result
            if not result.allowed:
                logger.warning("Rate limit exceeded for %s on %s (%s), reset=%d",
                               client_ip, path, kind.value, result.reset,
                               extra={"limiter": kind.value, "remaining": 0})
                preflight.rejection = too_many_requests_response(result)

        return preflight

    def _decorate(self, response: Response, preflight: _Preflight):
        response.headers.update(security_headers(preflight.nonce, production=self._production))
        if preflight.rate_limit is not None:
            response.headers.update(rate_limit_headers(preflight.rate_limit))
        if preflight.csrf_token:
            response.set_cookie(
                CSRF_COOKIE_NAME,
                preflight.csrf_token,
                max_age=CSRF_COOKIE_MAX_AGE,
                httponly=True,
                secure=self._production,
                samesite="strict",
            )
