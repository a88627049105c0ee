"""
Middleware that records one activity entry per request.

It sits outermost, so requests refused by the rate limiter, the brute-force
guard or the CSRF check are recorded too, as failures.
"""

import json
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import parse_qs

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from storefront.auth.core import request_user
from storefront.security.rate_limit import caller_address

from .models import ActivityAction
from .recorder import ActivityRecorder, RequestContext, declared_action_for

logger = structlog.get_logger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]


class ActivityLogMiddleware(BaseHTTPMiddleware):
    """Captures the request, lets it run, then schedules the audit write."""

    def __init__(
        self,
        app: ASGIApp,
        recorder: ActivityRecorder,
        *,
        trust_forwarded_headers: bool = True,
    ) -> None:
        super().__init__(app)
        self.recorder = recorder
        self.trust_forwarded_headers = trust_forwarded_headers

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:
        path = request.url.path
        if not self.recorder.enabled or self.recorder.should_skip(path):
            return await call_next(request)

        declared = declared_action_for(request)
        action = self.recorder.resolve_action(request.method, path, declared)

        login_identifier = None
        if action == ActivityAction.LOGIN:
            login_identifier = await self._login_identifier(request)

        try:
            response = await call_next(request)
        except Exception:
            self.recorder.schedule(
                self._context(request, 500, declared, login_identifier)
            )
            raise

        self.recorder.schedule(
            self._context(request, response.status_code, declared, login_identifier)
        )
        return response

    def _context(
        self,
        request: Request,
        status_code: int,
        declared: str | None,
        login_identifier: str | None,
    ) -> RequestContext:
        state = request.state
        user = request_user(request)
        session = getattr(state, "session", None)
        url = request.url.path
        if request.url.query:
            url = f"{url}?{request.url.query}"

        return RequestContext(
            method=request.method,
            path=request.url.path,
            url=url,
            status_code=status_code,
            ip_address=caller_address(request, self.trust_forwarded_headers),
            user_agent=request.headers.get("User-Agent"),
            referer=request.headers.get("Referer"),
            user_id=user.user_id if user is not None else None,
            declared_action=getattr(state, "audit_action", None) or declared,
            outcome=getattr(state, "audit_outcome", None),
            details=dict(getattr(state, "audit_details", None) or {}),
            login_identifier=login_identifier,
            has_body=request.headers.get("Content-Length", "0") not in ("", "0"),
            session_id=getattr(session, "session_id", None),
            request_id=request.headers.get("X-Request-ID"),
        )

    async def _login_identifier(self, request: Request) -> str | None:
        """Identifier from a JSON or form body, used to attribute login attempts."""
        field = self.recorder.config.login_identifier_field
        try:
            body = await request.body()
        except Exception as e:
            logger.debug("audit.body_unavailable", path=request.url.path, error=str(e))
            return None
        if not body:
            return None

        content_type = (request.headers.get("Content-Type") or "").lower()
        value: Any = None
        if "application/json" in content_type:
            try:
                payload = json.loads(body)
            except (json.JSONDecodeError, UnicodeDecodeError):
                return None
            if isinstance(payload, dict):
                value = payload.get(field)
        elif "application/x-www-form-urlencoded" in content_type:
            parsed = parse_qs(body.decode("utf-8", errors="ignore"))
            value = parsed.get(field, [None])[0]

        if isinstance(value, str) and value.strip():
            return value.strip()
        return None
