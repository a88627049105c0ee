"""
Brute-force protection for authentication endpoints.

Counts every gated attempt per client address in a sliding window. Once the
count passes the threshold, further attempts are refused until the address
has stayed quiet for a full window.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from storefront.exceptions import BruteForceBlockedError, error_response
from storefront.settings import Settings

from .rate_limit import caller_address
from .store import KeyValueStore

logger = structlog.get_logger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]

BruteForceSettings = Settings.SecuritySettings.BruteForceSettings


@dataclass(frozen=True, slots=True)
class BruteForceDecision:
    allowed: bool
    attempts: int


class BruteForceGuard:
    """Per-address attempt counter with a sliding lockout window."""

    def __init__(
        self,
        store: KeyValueStore,
        config: BruteForceSettings,
        *,
        trust_forwarded_headers: bool = False,
    ) -> None:
        self.store = store
        self.config = config
        self.trust_forwarded_headers = trust_forwarded_headers
        self._protected = {self._normalize(path) for path in config.protected_paths}
        self._methods = {method.upper() for method in config.methods}

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @staticmethod
    def _normalize(path: str) -> str:
        return path.rstrip("/") or "/"

    def is_protected(self, method: str, path: str) -> bool:
        return method.upper() in self._methods and self._normalize(path) in self._protected

    async def check(self, address: str) -> BruteForceDecision:
        """Record one attempt for ``address`` and decide whether it may proceed.

        Blocked attempts are counted too and push the window forward.
        """
        state = await self.store.increment(
            f"bruteforce:{address}",
            self.config.window_seconds,
            refresh_ttl=True,
        )
        return BruteForceDecision(
            allowed=state.count <= self.config.max_attempts,
            attempts=state.count,
        )

    async def guard(self, request: Request) -> BruteForceDecision | None:
        """Gate a request or raise BruteForceBlockedError. None when not gated."""
        if not self.is_protected(request.method, request.url.path):
            return None

        address = caller_address(request, self.trust_forwarded_headers)
        decision = await self.check(address)
        if not decision.allowed:
            logger.warning(
                "brute_force.blocked",
                address=address,
                path=request.url.path,
                attempts=decision.attempts,
            )
            raise BruteForceBlockedError(self.config.message, address=address)
        return decision


class BruteForceMiddleware(BaseHTTPMiddleware):
    """Applies the guard to protected authentication paths."""

    def __init__(self, app: ASGIApp, guard: BruteForceGuard) -> None:
        super().__init__(app)
        self.guard = guard

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:
        if not self.guard.enabled:
            return await call_next(request)

        try:
            await self.guard.guard(request)
        except BruteForceBlockedError as exc:
            return error_response(exc)

        return await call_next(request)
