import asyncio
import time

import pytest
import structlog
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from middleware import RateLimitMiddleware, RequestIDMiddleware

pytestmark = pytest.mark.unit


@pytest.fixture
def limited_app():
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, window_seconds=60, api_limit=3, auth_limit=1)
    app.add_middleware(RequestIDMiddleware)

    @app.get("/api/songs")
    def songs():
        return {"ok": True}

    @app.post("/api/auth/login")
    def login():
        return {"ok": True}

    @app.get("/")
    def root():
        return {"ok": True}

    return TestClient(app)


class TestRateLimit:
    def test_api_budget(self, limited_app):
        for _ in range(3):
            assert limited_app.get("/api/songs").status_code == 200
        res = limited_app.get("/api/songs")
        assert res.status_code == 429
        assert res.json()["message"] == "Too many requests from this IP, please try again later."
        assert int(res.headers["Retry-After"]) > 0

    def test_auth_has_its_own_budget(self, limited_app):
        assert limited_app.post("/api/auth/login").status_code == 200
        res = limited_app.post("/api/auth/login")
        assert res.status_code == 429
        assert res.json()["message"].startswith("Too many authentication attempts")
        assert limited_app.get("/api/songs").status_code == 200

    def test_non_api_paths_are_unlimited(self, limited_app):
        for _ in range(5):
            assert limited_app.get("/").status_code == 200

    def test_forwarded_ip_gets_separate_window(self, limited_app):
        limited_app.post("/api/auth/login")
        res = limited_app.post("/api/auth/login", headers={"X-Forwarded-For": "10.0.0.9, 172.16.0.1"})
        assert res.status_code == 200

    def test_window_resets(self):
        limiter = RateLimitMiddleware(FastAPI(), window_seconds=60, auth_limit=1)
        key = ("1.2.3.4", "auth")
        assert limiter._hit(key, 1) == (False, 0)
        limited, retry_after = limiter._hit(key, 1)
        assert limited and 0 < retry_after <= 61
        limiter._windows[key] = (time.time() - 61, 1)
        assert limiter._hit(key, 1) == (False, 0)

    def test_expired_windows_are_swept(self):
        limiter = RateLimitMiddleware(FastAPI(), window_seconds=1, sweep_threshold=100)
        stale = time.time() - 5
        for i in range(100):
            limiter._windows[(f"10.0.{i // 256}.{i % 256}", "api")] = (stale, 1)
        limiter._hit(("1.2.3.4", "api"), 10)
        assert list(limiter._windows) == [("1.2.3.4", "api")]

    def test_live_windows_survive_sweep(self):
        limiter = RateLimitMiddleware(FastAPI(), window_seconds=60, sweep_threshold=2)
        limiter._hit(("1.1.1.1", "api"), 10)
        limiter._hit(("2.2.2.2", "api"), 10)
        limiter._hit(("3.3.3.3", "api"), 10)
        assert len(limiter._windows) == 3
        assert limiter.cleanup(time.time() + 61) == 3
        assert limiter._windows == {}


class TestRequestID:
    def test_generated(self, limited_app):
        assert len(limited_app.get("/").headers["X-Request-ID"]) == 16

    def test_propagated(self, limited_app):
        res = limited_app.get("/", headers={"X-Request-ID": "abc-123"})
        assert res.headers["X-Request-ID"] == "abc-123"

    def test_context_cleared_when_handler_raises(self):
        middleware = RequestIDMiddleware(FastAPI())
        request = Request({"type": "http", "method": "GET", "path": "/", "headers": [], "query_string": b""})

        async def failing(_):
            raise RuntimeError("boom")

        async def run():
            with pytest.raises(RuntimeError):
                await middleware.dispatch(request, failing)
            return structlog.contextvars.get_contextvars()

        assert "request_id" not in asyncio.run(run())
