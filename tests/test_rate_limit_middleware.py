"""Tests for the rate limit middleware and route dependencies."""

import asyncio
from datetime import datetime

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from verbaguard.app.core.store import InMemoryStore
from verbaguard.app.exceptions import RateLimitExceededError
from verbaguard.app.middleware.rate_limit import (
    PolicyTable,
    RateLimitConfig,
    RateLimiter,
    RateLimitMiddleware,
    RateLimitPolicy,
    public_route,
    rate_limit,
    rate_limit_response,
)
from verbaguard.app.middleware.rate_limit.middleware import _is_exempt


def _limiter(clock, default=3) -> RateLimiter:
    table = PolicyTable([
        RateLimitPolicy("global_user", RateLimitConfig(60_000, 100, name="global_user")),
        RateLimitPolicy("global_ip", RateLimitConfig(60_000, 100, name="global_ip")),
        RateLimitPolicy("default", RateLimitConfig(60_000, default, name="default")),
    ])
    return RateLimiter(
        store=InMemoryStore(clock=clock),
        policies=table,
        default_strategy="fixed_window",
        clock=clock,
        timeout=1.0,
        fail_closed=False,
    )


def _app(limiter: RateLimiter, **middleware_kwargs) -> FastAPI:
    app = FastAPI()
    middleware_kwargs.setdefault("enabled", True)
    middleware_kwargs.setdefault("exempt_paths", ["/health"])
    app.add_middleware(RateLimitMiddleware, limiter=limiter, **middleware_kwargs)

    @app.get("/api/items")
    async def items():
        return {"ok": True}

    @app.get("/api/other")
    async def other():
        return {"ok": True}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


class TestIsExempt:
    """Exempt path matching."""

    @pytest.mark.parametrize(
        ("path", "exempt_paths", "expected"),
        [
            ("/health", ["/health"], True),
            ("/health/live", ["/health"], True),
            ("/health/live", ["/health/"], True),
            ("/healthz", ["/health"], False),
            ("/", ["/"], True),
            ("/api/items", ["/"], False),
            ("/api/items", [], False),
        ],
    )
    def test_matching(self, path, exempt_paths, expected):
        assert _is_exempt(path, exempt_paths) is expected


class TestRateLimitMiddleware:
    """Middleware behaviour end to end."""

    def test_allowed_requests_carry_headers(self, clock):
        client = TestClient(_app(_limiter(clock)))

        resp = client.get("/api/items")

        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Limit"] == "3"
        assert resp.headers["X-RateLimit-Remaining"] == "2"
        reset = datetime.fromisoformat(resp.headers["X-RateLimit-Reset"])
        assert reset.timestamp() * 1000 == clock.now_ms + 60_000

    def test_rejects_with_429(self, clock):
        client = TestClient(_app(_limiter(clock)))
        for _ in range(3):
            assert client.get("/api/items").status_code == 200

        resp = client.get("/api/items")

        assert resp.status_code == 429
        assert resp.json() == {"error": "Rate limit exceeded", "retryAfter": 60}
        assert resp.headers["Retry-After"] == "60"
        assert resp.headers["X-RateLimit-Limit"] == "3"
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        assert resp.headers["X-RateLimit-Reset"].endswith("Z")

    def test_retry_after_counts_down(self, clock):
        client = TestClient(_app(_limiter(clock)))
        for _ in range(3):
            client.get("/api/items")

        clock.advance(45_500)
        resp = client.get("/api/items")

        assert resp.json()["retryAfter"] == 15

    def test_endpoints_have_separate_quotas(self, clock):
        client = TestClient(_app(_limiter(clock, default=1)))

        assert client.get("/api/items").status_code == 200
        assert client.get("/api/items").status_code == 429
        assert client.get("/api/other").status_code == 200

    def test_exempt_paths_bypass(self, clock):
        client = TestClient(_app(_limiter(clock, default=1)))

        for _ in range(3):
            resp = client.get("/health")
            assert resp.status_code == 200
            assert "X-RateLimit-Limit" not in resp.headers

    def test_root_exempt_path_does_not_cover_api(self, clock):
        client = TestClient(_app(_limiter(clock, default=1), exempt_paths=["/"]))

        assert client.get("/api/items").status_code == 200
        assert client.get("/api/items").status_code == 429

    def test_options_not_throttled(self, clock):
        client = TestClient(_app(_limiter(clock, default=1)))
        client.get("/api/items")

        resp = client.options("/api/items")

        assert resp.status_code != 429

    def test_disabled(self, clock):
        client = TestClient(_app(_limiter(clock, default=1), enabled=False))

        for _ in range(3):
            resp = client.get("/api/items")
            assert resp.status_code == 200
            assert "X-RateLimit-Limit" not in resp.headers

    def test_forwarded_clients_are_separate(self, clock):
        client = TestClient(_app(_limiter(clock, default=1), scope="ip"))

        assert client.get("/api/items", headers={"X-Forwarded-For": "203.0.113.1"}).status_code == 200
        assert client.get("/api/items", headers={"X-Forwarded-For": "203.0.113.1"}).status_code == 429
        assert client.get("/api/items", headers={"X-Forwarded-For": "203.0.113.2"}).status_code == 200

    def test_user_scope_with_resolver(self, clock):
        app = _app(
            _limiter(clock, default=1),
            scope="user",
            user_id_resolver=lambda request: request.headers.get("X-User"),
        )
        client = TestClient(app)

        assert client.get("/api/items", headers={"X-User": "alice"}).status_code == 200
        assert client.get("/api/items", headers={"X-User": "alice"}).status_code == 429
        assert client.get("/api/items", headers={"X-User": "bob"}).status_code == 200

        # Anonymous callers are not limited in user scope
        resp = client.get("/api/items")
        assert resp.status_code == 200
        assert "X-RateLimit-Limit" not in resp.headers

    def test_store_outage_allows_traffic(self, clock):
        limiter = _limiter(clock, default=1)
        client = TestClient(_app(limiter))

        asyncio.run(limiter.store.close())

        for _ in range(3):
            assert client.get("/api/items").status_code == 200


class TestRouteDependencies:
    """Per-route rate limiting."""

    def _app(self, dependency) -> FastAPI:
        app = FastAPI()

        @app.exception_handler(RateLimitExceededError)
        async def handler(request: Request, exc: RateLimitExceededError):
            return rate_limit_response(exc)

        @app.post("/api/translate", dependencies=[Depends(dependency)])
        async def translate():
            return {"translation": "hola"}

        return app

    def test_dependency_limits_route(self, clock):
        dependency = rate_limit(scope="ip", limiter=_limiter(clock, default=2))
        client = TestClient(self._app(dependency))

        first = client.post("/api/translate")
        assert first.status_code == 200
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert client.post("/api/translate").status_code == 200

        resp = client.post("/api/translate")
        assert resp.status_code == 429
        assert resp.json()["error"] == "Rate limit exceeded"
        assert resp.headers["Retry-After"] == "60"

    def test_public_route_uses_application_policies(self):
        client = TestClient(self._app(public_route))

        resp = client.post("/api/translate")

        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Limit"] == "30"

    @pytest.mark.parametrize("scope", ["user", "ip", "both"])
    def test_scopes_accepted(self, clock, scope):
        dependency = rate_limit(scope=scope, limiter=_limiter(clock))
        client = TestClient(self._app(dependency))

        assert client.post("/api/translate").status_code == 200
