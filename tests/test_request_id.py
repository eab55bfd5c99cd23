"""Tests for request ID middleware."""

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from verbaguard.app.core.logging import current_request_id
from verbaguard.app.middleware.request_id import RequestIdMiddleware, get_request_id


def _app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/echo")
    async def echo(request: Request):
        return {
            "state": get_request_id(request),
            "context": current_request_id(),
        }

    return app


class TestRequestIdMiddleware:
    """Request id propagation."""

    def test_generates_request_id(self):
        client = TestClient(_app())

        resp = client.get("/echo")

        request_id = resp.headers["X-Request-ID"]
        assert len(request_id) == 36
        assert resp.json() == {"state": request_id, "context": request_id}

    def test_preserves_incoming_request_id(self):
        client = TestClient(_app())

        resp = client.get("/echo", headers={"X-Request-ID": "client-req-1"})

        assert resp.headers["X-Request-ID"] == "client-req-1"
        assert resp.json()["context"] == "client-req-1"

    def test_replaces_oversized_request_id(self):
        client = TestClient(_app())

        resp = client.get("/echo", headers={"X-Request-ID": "x" * 500})

        assert resp.headers["X-Request-ID"] != "x" * 500
        assert len(resp.headers["X-Request-ID"]) == 36

    def test_get_request_id_without_middleware(self):
        app = FastAPI()

        @app.get("/echo")
        async def echo(request: Request):
            return {"state": get_request_id(request)}

        assert TestClient(app).get("/echo").json() == {"state": "unknown"}

    def test_rate_limited_responses_carry_request_id(self):
        from verbaguard.app.main import app

        resp = TestClient(app).get("/api/translate", headers={"X-Request-ID": "req-429"})

        assert resp.headers["X-Request-ID"] == "req-429"
        assert resp.headers["X-RateLimit-Limit"] == "30"
