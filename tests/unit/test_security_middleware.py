#  EdgeGuard - Edge Security Middleware Tests
#
#  Tests for client IP resolution, header assembly and the per-request
#  pipeline (exempt -> ban -> CSRF -> rate limit -> headers).
#
#  Depends on: edgeguard/middleware/security.py
#  Used by:    pytest

import re
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI, Request
from httpx import ASGITransport, AsyncClient
from starlette.requests import Request as StarletteRequest

from edgeguard.config import RATE_LIMITS
from edgeguard.middleware.security import (
    EdgeSecurityMiddleware,
    build_csp,
    get_client_ip,
    is_exempt,
    limiter_kind_for_path,
    security_headers,
)
from edgeguard.models.enums import LimiterKind
from edgeguard.services.limiter_bank import RateLimiterBank

CLIENT = "198.51.100.20"


def _request(headers: dict, client=("192.0.2.1", 4321)) -> StarletteRequest:
    return StarletteRequest({
        "type": "http",
        "method": "GET",
        "path": "/",
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
        "client": client,
    })


def _build_app(ban_registry, limiter_bank, **options) -> tuple[FastAPI, dict]:
    app = FastAPI()
    counters = {"boom": 0}

    @app.get("/page")
    async def page(request: Request):
        return {
            "nonce": request.state.csp_nonce,
            "header_nonce": request.headers.get("x-nonce"),
        }

    @app.get("/api/v1/items")
    async def items():
        return {"items": []}

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/assets/app.js")
    async def asset():
        return {"asset": True}

    @app.get("/boom")
    async def boom():
        counters["boom"] += 1
        raise RuntimeError("handler failed")

    app.add_middleware(
        EdgeSecurityMiddleware,
        ban_registry=lambda: ban_registry,
        limiter_bank=lambda: limiter_bank,
        **options,
    )
    return app, counters


@pytest.fixture
def tight_bank(store, ban_registry):
    limits = dict(RATE_LIMITS, api_v1={"limit": 2, "window_sec": 60})
    return RateLimiterBank(store, ban_registry, limits=limits)


@pytest.fixture
async def edge_client(ban_registry, tight_bank):
    app, _ = _build_app(ban_registry, tight_bank, production=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

class TestClientIp:
    def test_priority_order(self):
        headers = {
            "CF-Connecting-IP": "203.0.113.1",
            "X-Real-IP": "203.0.113.2",
            "X-Forwarded-For": "203.0.113.3, 10.0.0.1",
        }
        assert get_client_ip(_request(headers)) == "203.0.113.1"
        del headers["CF-Connecting-IP"]
        assert get_client_ip(_request(headers)) == "203.0.113.2"
        del headers["X-Real-IP"]
        assert get_client_ip(_request(headers)) == "203.0.113.3"

    def test_peer_then_loopback_fallback(self):
        assert get_client_ip(_request({})) == "192.0.2.1"
        assert get_client_ip(_request({}, client=None)) == "127.0.0.1"

    def test_blank_header_ignored(self):
        assert get_client_ip(_request({"X-Forwarded-For": " , 10.0.0.1"})) == "192.0.2.1"


class TestPathRules:
    def test_exempt(self):
        assert is_exempt("/api/health")
        assert is_exempt("/assets/logo.svg")
        assert is_exempt("/favicon.ico")
        assert not is_exempt("/api/admin/ban")

    def test_limiter_kind_first_match_wins(self):
        assert limiter_kind_for_path("/api/v1/items") == LimiterKind.API_V1
        assert limiter_kind_for_path("/api/other") == LimiterKind.API
        assert limiter_kind_for_path("/blog") == LimiterKind.DEFAULT


class TestHeaderAssembly:
    def test_csp_embeds_nonce(self):
        csp = build_csp("abc123", production=False)
        assert "script-src 'self' 'nonce-abc123' 'strict-dynamic'" in csp
        assert "frame-ancestors 'none'" in csp
        assert "object-src 'none'" in csp
        assert "trusted-types" not in csp

    def test_trusted_types_in_production(self):
        csp = build_csp("abc123", production=True)
        assert "require-trusted-types-for 'script'" in csp

    def test_hardening_headers(self):
        headers = security_headers("n", production=False)
        assert headers["X-Content-Type-Options"] == "nosniff"
        assert headers["Referrer-Policy"] == "no-referrer"
        assert headers["Cross-Origin-Opener-Policy"] == "same-origin"
        assert headers["Cross-Origin-Resource-Policy"] == "same-site"
        assert headers["Cross-Origin-Embedder-Policy"] == "require-corp"
        assert "camera=()" in headers["Permissions-Policy"]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class TestPipeline:
    async def test_headers_and_nonce(self, edge_client):
        resp = await edge_client.get("/page", headers={"X-Forwarded-For": CLIENT})
        assert resp.status_code == 200

        body = resp.json()
        assert re.fullmatch(r"[0-9a-f]{32}", body["nonce"])
        assert body["header_nonce"] == body["nonce"]
        assert f"'nonce-{body['nonce']}'" in resp.headers["content-security-policy"]
        assert resp.headers["x-content-type-options"] == "nosniff"

    async def test_nonce_unique_per_request(self, edge_client):
        first = (await edge_client.get("/page")).json()["nonce"]
        second = (await edge_client.get("/page")).json()["nonce"]
        assert first != second

    async def test_csrf_cookie_issued_once(self, edge_client):
        resp = await edge_client.get("/page")
        cookie = resp.headers["set-cookie"]
        assert re.match(r"csrfToken=[0-9a-f]{64};", cookie)
        assert "HttpOnly" in cookie
        assert "samesite=strict" in cookie.lower()
        assert "Secure" not in cookie

        # Client now carries the cookie, so no new token
        again = await edge_client.get("/page")
        assert "set-cookie" not in again.headers

    async def test_exempt_paths_skip_pipeline(self, edge_client, ban_registry):
        await ban_registry.ban(CLIENT)
        for path in ("/api/health", "/assets/app.js"):
            resp = await edge_client.get(path, headers={"X-Forwarded-For": CLIENT})
            assert resp.status_code == 200
            assert "content-security-policy" not in resp.headers
            assert "set-cookie" not in resp.headers

    async def test_banned_ip_gets_403(self, edge_client, ban_registry):
        await ban_registry.ban(CLIENT)
        resp = await edge_client.get("/page", headers={"X-Forwarded-For": f"{CLIENT}, 10.0.0.1"})
        assert resp.status_code == 403
        assert resp.json() == {"error": "Forbidden", "message": "Access denied"}

    async def test_banned_cidr_gets_403(self, edge_client, ban_registry):
        await ban_registry.ban_cidr("198.51.100.0/24")
        resp = await edge_client.get("/page", headers={"CF-Connecting-IP": CLIENT})
        assert resp.status_code == 403

    async def test_rate_limit_headers_and_429(self, edge_client):
        headers = {"X-Real-IP": CLIENT}
        first = await edge_client.get("/api/v1/items", headers=headers)
        assert first.status_code == 200
        assert first.headers["x-ratelimit-limit"] == "2"
        assert first.headers["x-ratelimit-remaining"] == "1"

        await edge_client.get("/api/v1/items", headers=headers)
        limited = await edge_client.get("/api/v1/items", headers=headers)

        assert limited.status_code == 429
        body = limited.json()
        assert body["error"] == "Too Many Requests"
        assert body["message"].startswith("Please try again later. Reset time: ")
        assert 0 <= body["retryAfter"] <= 61
        assert limited.headers["retry-after"] == str(body["retryAfter"])
        assert limited.headers["x-ratelimit-remaining"] == "0"

    async def test_limits_are_per_client(self, edge_client):
        for _ in range(2):
            await edge_client.get("/api/v1/items", headers={"X-Real-IP": CLIENT})
        other = await edge_client.get("/api/v1/items", headers={"X-Real-IP": "198.51.100.21"})
        assert other.status_code == 200

    async def test_pipeline_error_passes_request_through(self, tight_bank):
        broken = MagicMock()
        broken.is_address_banned = AsyncMock(side_effect=RuntimeError("store client exploded"))
        app, _ = _build_app(broken, tight_bank)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.get("/api/v1/items", headers={"X-Real-IP": CLIENT})

        assert resp.status_code == 200
        assert "content-security-policy" not in resp.headers

    async def test_store_outage_fails_open(self, edge_client, fake_server):
        fake_server.connected = False
        resp = await edge_client.get("/api/v1/items", headers={"X-Real-IP": CLIENT})
        assert resp.status_code == 200
        assert "content-security-policy" in resp.headers

    async def test_handler_errors_are_not_retried(self, ban_registry, tight_bank):
        app, counters = _build_app(ban_registry, tight_bank)
        transport = ASGITransport(app=app)

        async with AsyncClient(transport=transport, base_url="http://test") as client:
            with pytest.raises(RuntimeError):
                await client.get("/boom")

        assert counters["boom"] == 1

    async def test_enforcement_switches(self, ban_registry, tight_bank):
        await ban_registry.ban(CLIENT)
        app, _ = _build_app(ban_registry, tight_bank, enforce_bans=False, enforce_rate_limits=False)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.get("/api/v1/items", headers={"X-Real-IP": CLIENT})

        assert resp.status_code == 200
        assert "x-ratelimit-limit" not in resp.headers

    async def test_production_cookie_is_secure(self, ban_registry, tight_bank):
        app, _ = _build_app(ban_registry, tight_bank, production=True)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="https://test") as client:
            resp = await client.get("/page")

        assert "Secure" in resp.headers["set-cookie"]
        assert "require-trusted-types-for" in resp.headers["content-security-policy"]
