"""
Tests for the fixed-window rate limiter and its middleware.
"""

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from starlette.requests import Request

from storefront.exceptions import RateLimitExceededError
from storefront.security.rate_limit import RateLimiter, RateLimitMiddleware, caller_address
from storefront.security.store import MemoryKeyValueStore
from storefront.settings import RouteClassConfig, Settings
from tests.conftest import FakeClock

pytestmark = pytest.mark.unit


def _config(**overrides) -> Settings.SecuritySettings.RateLimitSettings:
    route_classes = [
        RouteClassConfig(
            name="auth",
            path_prefixes=["/api/auth/login"],
            window_seconds=60,
            max_requests=3,
            message="Too many authentication attempts.",
        ),
        RouteClassConfig(
            name="general",
            path_prefixes=["/api/"],
            window_seconds=60,
            max_requests=5,
            message="Too many requests.",
        ),
    ]
    return Settings.SecuritySettings.RateLimitSettings(route_classes=route_classes, **overrides)


def _request(path: str = "/api/items", headers: dict[str, str] | None = None,
             client: tuple[str, int] | None = ("10.0.0.9", 5000)) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


class TestCallerAddress:
    def test_socket_peer_by_default(self):
        request = _request(
            headers={"X-Forwarded-For": "203.0.113.7", "X-Real-IP": "198.51.100.2"}
        )
        assert caller_address(request) == "10.0.0.9"

    def test_prefers_first_forwarded_hop_when_trusted(self):
        request = _request(headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})
        assert caller_address(request, trust_forwarded=True) == "203.0.113.7"

    def test_falls_back_to_real_ip_then_peer(self):
        request = _request(headers={"X-Real-IP": "198.51.100.2"})
        assert caller_address(request, trust_forwarded=True) == "198.51.100.2"
        assert caller_address(_request(), trust_forwarded=True) == "10.0.0.9"

    def test_unknown_without_any_source(self):
        assert caller_address(_request(client=None)) == "unknown"


class TestRateLimiter:
    """Admission decisions for one caller and route class."""

    def test_classify_first_prefix_wins(self, store: MemoryKeyValueStore):
        limiter = RateLimiter(store, _config())

        assert limiter.classify("/api/auth/login").name == "auth"
        assert limiter.classify("/api/products").name == "general"
        assert limiter.classify("/static/app.js") is None

    async def test_cap_plus_one_is_rejected(self, store: MemoryKeyValueStore):
        """The C-th request is admitted and the (C+1)-th rejected."""
        limiter = RateLimiter(store, _config())
        route_class = limiter.classify("/api/auth/login")

        decisions = [await limiter.admit("1.2.3.4", route_class) for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions] == [2, 1, 0, 0]

    async def test_new_window_after_expiry(self, store: MemoryKeyValueStore, clock: FakeClock):
        limiter = RateLimiter(store, _config())
        route_class = limiter.classify("/api/auth/login")
        for _ in range(4):
            await limiter.admit("1.2.3.4", route_class)

        clock.advance(61)
        decision = await limiter.admit("1.2.3.4", route_class)

        assert decision.allowed is True
        assert decision.remaining == 2

    async def test_rejections_do_not_extend_window(
        self, store: MemoryKeyValueStore, clock: FakeClock
    ):
        limiter = RateLimiter(store, _config())
        route_class = limiter.classify("/api/auth/login")
        for _ in range(3):
            await limiter.admit("1.2.3.4", route_class)

        clock.advance(45)
        rejected = await limiter.admit("1.2.3.4", route_class)
        clock.advance(16)
        admitted = await limiter.admit("1.2.3.4", route_class)

        assert rejected.allowed is False
        assert rejected.retry_after_seconds == 15
        assert admitted.allowed is True

    async def test_retry_after_is_at_least_one(
        self, store: MemoryKeyValueStore, clock: FakeClock
    ):
        limiter = RateLimiter(store, _config())
        route_class = limiter.classify("/api/auth/login")
        for _ in range(3):
            await limiter.admit("1.2.3.4", route_class)

        clock.advance(59.9)
        decision = await limiter.admit("1.2.3.4", route_class)

        assert decision.allowed is False
        assert decision.retry_after_seconds == 1

    async def test_callers_and_classes_are_isolated(self, store: MemoryKeyValueStore):
        limiter = RateLimiter(store, _config())
        auth = limiter.classify("/api/auth/login")
        general = limiter.classify("/api/products")
        for _ in range(3):
            await limiter.admit("1.2.3.4", auth)

        assert (await limiter.admit("1.2.3.4", auth)).allowed is False
        assert (await limiter.admit("5.6.7.8", auth)).allowed is True
        assert (await limiter.admit("1.2.3.4", general)).allowed is True

    async def test_check_raises_with_message_and_retry_hint(self, store: MemoryKeyValueStore):
        limiter = RateLimiter(store, _config())
        request = _request("/api/auth/login")
        for _ in range(3):
            await limiter.check(request)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.check(request)

        assert exc_info.value.status_code == 429
        assert exc_info.value.to_dict() == {
            "message": "Too many authentication attempts.",
            "retryAfter": 60,
        }

    async def test_unclassified_path_is_unlimited(self, store: MemoryKeyValueStore):
        limiter = RateLimiter(store, _config())
        assert await limiter.check(_request("/favicon.ico")) is None
        assert len(store) == 0


class TestRateLimitMiddleware:
    @pytest.fixture
    def limited_app(self, store: MemoryKeyValueStore) -> FastAPI:
        app = FastAPI()
        app.add_middleware(RateLimitMiddleware, limiter=RateLimiter(store, _config()))

        @app.post("/api/auth/login")
        async def login():  # type: ignore
            return {"ok": True}

        return app

    async def test_rejects_with_429_body_and_header(self, limited_app: FastAPI):
        transport = ASGITransport(app=limited_app)
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            ok = [await client.post("/api/auth/login") for _ in range(3)]
            rejected = await client.post("/api/auth/login")

        assert all(r.status_code == 200 for r in ok)
        assert ok[0].headers["RateLimit-Limit"] == "3"
        assert ok[-1].headers["RateLimit-Remaining"] == "0"
        assert rejected.status_code == 429
        assert rejected.json() == {"message": "Too many authentication attempts.", "retryAfter": 60}
        assert rejected.headers["Retry-After"] == "60"

    async def test_rotating_forwarded_header_shares_one_bucket(self, limited_app: FastAPI):
        transport = ASGITransport(app=limited_app)
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            responses = [
                await client.post("/api/auth/login", headers={"X-Forwarded-For": f"1.2.3.{i}"})
                for i in range(4)
            ]

        assert [r.status_code for r in responses] == [200, 200, 200, 429]

    async def test_disabled_limiter_admits_everything(self, store: MemoryKeyValueStore):
        app = FastAPI()
        app.add_middleware(
            RateLimitMiddleware, limiter=RateLimiter(store, _config(enabled=False))
        )

        @app.get("/api/items")
        async def items():  # type: ignore
            return []

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            responses = [await client.get("/api/items") for _ in range(10)]

        assert {r.status_code for r in responses} == {200}
