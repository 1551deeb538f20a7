"""Integration tests for the rate limit middleware in the full app stack."""

import asyncio
from unittest.mock import Mock

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from app.adapters.rate_limit.in_memory import InMemorySlidingWindowRateLimiter
from app.core import rate_limit
from app.core.app_factory import create_app
from app.core.errors import RateLimitBackendError

RATE_LIMITED_BODY = {"message": "Too many requests, please try again later."}


class UnavailableRateLimiter(AbstractRateLimiter):
    backend = "redis"

    async def consume(self, key: str, *, cost: int = 1) -> RateLimitResult:
        raise RateLimitBackendError(
            code="rate_limit_backend_unavailable",
            message="Rate limit backend failed during consume",
        )


@pytest.fixture
def probe_app() -> FastAPI:
    """Full app plus a probe route counting how often it was reached."""
    app = create_app()
    app.state.probe_calls = 0

    @app.get("/probe")
    async def probe() -> dict:
        app.state.probe_calls += 1
        return {"ok": True}

    return app


@pytest.fixture
def use_limiter(monkeypatch: pytest.MonkeyPatch):
    def _use(limiter: AbstractRateLimiter) -> AbstractRateLimiter:
        monkeypatch.setattr(rate_limit, "get_rate_limiter", lambda: limiter)
        return limiter

    return _use


def test_allowed_request_reaches_route(probe_app: FastAPI) -> None:
    client = TestClient(probe_app)

    resp = client.get("/probe")

    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    assert probe_app.state.probe_calls == 1


def test_rejects_after_quota_with_exact_body(probe_app: FastAPI, rate_limit_settings) -> None:
    rate_limit_settings(rate_limit_requests=2)
    client = TestClient(probe_app)

    assert client.get("/probe").status_code == 200
    assert client.get("/probe").status_code == 200

    resp = client.get("/probe")

    assert resp.status_code == 429
    assert resp.json() == RATE_LIMITED_BODY
    assert probe_app.state.probe_calls == 2


def test_rejection_is_sticky_and_covers_every_route(probe_app: FastAPI, rate_limit_settings) -> None:
    rate_limit_settings(rate_limit_requests=1)
    client = TestClient(probe_app)

    client.get("/probe")

    for path in ("/probe", "/health", "/does-not-exist"):
        resp = client.get(path)
        assert resp.status_code == 429
        assert resp.json() == RATE_LIMITED_BODY


def test_example_scenario_over_http(probe_app: FastAPI, use_limiter) -> None:
    clock = Mock(return_value=0.0)
    use_limiter(InMemorySlidingWindowRateLimiter(limit=2, window_seconds=60, clock=clock))
    client = TestClient(probe_app)

    assert client.get("/probe").status_code == 200
    assert client.get("/probe").status_code == 200

    clock.return_value = 10.0
    resp = client.get("/probe")
    assert resp.status_code == 429
    assert resp.text == '{"message":"Too many requests, please try again later."}'

    clock.return_value = 65.0
    assert client.get("/probe").status_code == 200


def test_throttle_headers(probe_app: FastAPI, rate_limit_settings) -> None:
    rate_limit_settings(rate_limit_requests=1, rate_limit_include_headers=True)
    client = TestClient(probe_app)

    client.get("/probe")
    resp = client.get("/probe")

    assert resp.status_code == 429
    assert resp.headers["X-RateLimit-Limit"] == "1"
    assert resp.headers["X-RateLimit-Remaining"] == "0"
    assert int(resp.headers["Retry-After"]) > 0


def test_throttle_headers_can_be_disabled(probe_app: FastAPI, rate_limit_settings) -> None:
    rate_limit_settings(rate_limit_requests=1, rate_limit_include_headers=False)
    client = TestClient(probe_app)

    client.get("/probe")
    resp = client.get("/probe")

    assert resp.status_code == 429
    assert "Retry-After" not in resp.headers


def test_throttled_response_keeps_request_id(probe_app: FastAPI, rate_limit_settings) -> None:
    rate_limit_settings(rate_limit_requests=1)
    client = TestClient(probe_app)

    client.get("/probe")
    resp = client.get("/probe", headers={"X-Request-ID": "req-429"})

    assert resp.status_code == 429
    assert resp.headers["X-Request-ID"] == "req-429"


def test_forwarded_clients_get_separate_buckets(probe_app: FastAPI, rate_limit_settings) -> None:
    rate_limit_settings(rate_limit_requests=1, rate_limit_trust_proxy_headers=True)
    client = TestClient(probe_app)

    assert client.get("/probe", headers={"X-Forwarded-For": "203.0.113.1"}).status_code == 200
    assert client.get("/probe", headers={"X-Forwarded-For": "203.0.113.2"}).status_code == 200
    assert client.get("/probe", headers={"X-Forwarded-For": "203.0.113.1"}).status_code == 429


def test_disabled_rate_limit_never_throttles(probe_app: FastAPI, rate_limit_settings) -> None:
    rate_limit_settings(rate_limit_enabled=False, rate_limit_requests=1)
    client = TestClient(probe_app)

    for _ in range(5):
        assert client.get("/probe").status_code == 200


def test_backend_failure_goes_to_generic_error_path(probe_app: FastAPI, use_limiter) -> None:
    use_limiter(UnavailableRateLimiter())
    client = TestClient(probe_app, raise_server_exceptions=False)

    resp = client.get("/probe")

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "internal_server_error"
    assert body != RATE_LIMITED_BODY
    assert "Rate limit backend" not in resp.text
    assert probe_app.state.probe_calls == 0


def test_backend_failure_response_keeps_request_id(probe_app: FastAPI, use_limiter) -> None:
    use_limiter(UnavailableRateLimiter())
    client = TestClient(probe_app, raise_server_exceptions=False)

    resp = client.get("/probe", headers={"X-Request-ID": "req-500"})

    assert resp.status_code == 500
    assert resp.json()["error"]["request_id"] == "req-500"
    assert resp.headers["X-Request-ID"] == "req-500"


def test_backend_failure_is_raised_to_the_server(probe_app: FastAPI, use_limiter) -> None:
    use_limiter(UnavailableRateLimiter())
    client = TestClient(probe_app)

    with pytest.raises(RateLimitBackendError):
        client.get("/probe")

    assert probe_app.state.probe_calls == 0


def test_misconfigured_backend_is_a_server_error(probe_app: FastAPI, rate_limit_settings) -> None:
    rate_limit_settings(rate_limit_backend="memcached")
    client = TestClient(probe_app, raise_server_exceptions=False)

    resp = client.get("/probe")

    assert resp.status_code == 500
    assert probe_app.state.probe_calls == 0


@pytest.mark.asyncio
async def test_concurrent_requests_with_one_slot_left(probe_app: FastAPI, use_limiter) -> None:
    use_limiter(InMemorySlidingWindowRateLimiter(limit=3, window_seconds=60))
    transport = httpx.ASGITransport(app=probe_app)

    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        await client.get("/probe")
        await client.get("/probe")

        responses = await asyncio.gather(client.get("/probe"), client.get("/probe"))

    assert sorted(r.status_code for r in responses) == [200, 429]
    assert probe_app.state.probe_calls == 3


def test_openapi_documents_throttling(probe_app: FastAPI) -> None:
    client = TestClient(probe_app)

    schema = client.get("/openapi.json").json()

    assert "429" in schema["paths"]["/health"]["get"]["responses"]
    assert "RateLimitExceeded" in schema["components"]["responses"]
    assert "RateLimitExceededResponse" in schema["components"]["schemas"]
