"""CSRF protection with session-bound synchronizer tokens."""

import secrets
from collections.abc import Awaitable, Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from storefront.exceptions import CSRFValidationError, error_response
from storefront.settings import Settings

from .sessions import SessionData, SessionManager, get_request_session

logger = structlog.get_logger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]

CSRFSettings = Settings.SecuritySettings.CSRFSettings

CSRF_SESSION_KEY = "csrf_token"


class CSRFTokenService:
    """Issues one token per session and checks it on state-changing requests."""

    def __init__(self, sessions: SessionManager, config: CSRFSettings) -> None:
        self.sessions = sessions
        self.config = config
        self._safe_methods = {method.upper() for method in config.safe_methods}
        self._exempt_paths = set(config.exempt_paths)

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def issue(self, session: SessionData) -> str:
        """Token bound to ``session``, generated on first call only."""
        token = session.get(CSRF_SESSION_KEY)
        if not token:
            token = secrets.token_hex(self.config.token_bytes)
            session.set(CSRF_SESSION_KEY, token)
            logger.debug("csrf.token_issued", session_id=session.session_id)
        return str(token)

    def validate(self, session: SessionData | None, supplied: str | None) -> bool:
        return self._failure_reason(session, supplied) is None

    def require_valid(self, session: SessionData | None, supplied: str | None) -> None:
        reason = self._failure_reason(session, supplied)
        if reason is not None:
            raise CSRFValidationError(self.config.message, reason=reason)

    def _failure_reason(self, session: SessionData | None, supplied: str | None) -> str | None:
        if session is None:
            return "missing_session"
        expected = session.get(CSRF_SESSION_KEY)
        if not expected:
            return "missing_session_token"
        if not supplied:
            return "missing_token"
        if not secrets.compare_digest(str(expected), supplied):
            return "token_mismatch"
        return None

    def requires_check(self, method: str, path: str) -> bool:
        return method.upper() not in self._safe_methods and path not in self._exempt_paths

    def token_from_request(self, request: Request) -> str | None:
        for header in self.config.header_names:
            value = request.headers.get(header)
            if value:
                return value
        return None


class CSRFMiddleware(BaseHTTPMiddleware):
    """Require a valid CSRF token header on state-changing requests."""

    def __init__(self, app: ASGIApp, service: CSRFTokenService) -> None:
        super().__init__(app)
        self.service = service

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:
        if not self.service.enabled or not self.service.requires_check(
            request.method, request.url.path
        ):
            return await call_next(request)

        try:
            self.service.require_valid(
                get_request_session(request), self.service.token_from_request(request)
            )
        except CSRFValidationError as exc:
            logger.warning(
                "csrf.rejected",
                path=request.url.path,
                method=request.method,
                reason=exc.context.get("reason"),
            )
            return error_response(exc)

        return await call_next(request)
