"""
Fixed-window rate limiting per caller address and route class.
"""

import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from storefront.exceptions import RateLimitExceededError, error_response
from storefront.settings import RouteClassConfig, Settings

from .store import KeyValueStore

logger = structlog.get_logger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]

RateLimitSettings = Settings.SecuritySettings.RateLimitSettings


def caller_address(request: Request, trust_forwarded: bool = False) -> str:
    """Best-effort client address.

    First X-Forwarded-For hop, then X-Real-IP, then the socket peer. Forwarded
    headers are only honoured when the deployment sits behind a trusted proxy.
    """
    if trust_forwarded:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            first_hop = forwarded_for.split(",")[0].strip()
            if first_hop:
                return first_hop

        real_ip = request.headers.get("X-Real-IP")
        if real_ip and real_ip.strip():
            return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host

    return "unknown"


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    """Outcome of one admission check."""

    allowed: bool
    retry_after_seconds: int
    limit: int
    remaining: int


class RateLimiter:
    """Caps requests per caller and route class inside a fixed window.

    The window opens at the caller's first request and closes ``W`` seconds
    later regardless of traffic. Request ``C + 1`` inside the window is the
    first one rejected. Rejections do not extend the window.
    """

    def __init__(self, store: KeyValueStore, config: RateLimitSettings) -> None:
        self.store = store
        self.config = config

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def classify(self, path: str) -> RouteClassConfig | None:
        """First route class with a matching path prefix, or None if unlimited."""
        for route_class in self.config.route_classes:
            if any(path.startswith(prefix) for prefix in route_class.path_prefixes):
                return route_class
        return None

    def caller_address(self, request: Request) -> str:
        return caller_address(request, self.config.trust_forwarded_headers)

    async def admit(self, caller_key: str, route_class: RouteClassConfig) -> RateLimitDecision:
        """Count one request and decide whether it is admitted."""
        key = f"ratelimit:{route_class.name}:{caller_key}"
        state = await self.store.increment(key, route_class.window_seconds)

        allowed = state.count <= route_class.max_requests
        return RateLimitDecision(
            allowed=allowed,
            retry_after_seconds=max(1, math.ceil(state.ttl_remaining)),
            limit=route_class.max_requests,
            remaining=max(0, route_class.max_requests - state.count),
        )

    async def check(self, request: Request) -> RateLimitDecision | None:
        """Admit a request or raise RateLimitExceededError. None when unlimited."""
        route_class = self.classify(request.url.path)
        if route_class is None:
            return None

        address = self.caller_address(request)
        decision = await self.admit(address, route_class)
        if not decision.allowed:
            logger.warning(
                "rate_limit.rejected",
                route_class=route_class.name,
                address=address,
                path=request.url.path,
                retry_after=decision.retry_after_seconds,
            )
            raise RateLimitExceededError(
                route_class.message,
                retry_after=decision.retry_after_seconds,
                route_class=route_class.name,
            )
        return decision


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rejects over-limit callers with 429 before any downstream work."""

    def __init__(self, app: ASGIApp, limiter: RateLimiter) -> None:
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:
        if not self.limiter.enabled:
            return await call_next(request)

        try:
            decision = await self.limiter.check(request)
        except RateLimitExceededError as exc:
            return error_response(exc)

        response = await call_next(request)
        if decision is not None:
            response.headers["RateLimit-Limit"] = str(decision.limit)
            response.headers["RateLimit-Remaining"] = str(decision.remaining)
        return response
