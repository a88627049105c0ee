"""
Server-side sessions backed by the shared key-value store.

The browser only holds an opaque session id cookie. Session contents (the
anti-forgery token among them) live in the store under ``session:<id>``.
"""

import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from storefront.db import utcnow
from storefront.settings import Settings

from .store import KeyValueStore

logger = structlog.get_logger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]

SessionSettings = Settings.SecuritySettings.SessionSettings

SESSION_KEY_PREFIX = "session:"


@dataclass
class SessionData:
    """Session data structure."""

    session_id: str
    created_at: datetime
    values: dict[str, Any] = field(default_factory=dict)
    is_new: bool = False
    modified: bool = False
    destroyed: bool = False

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.values[key] = value
        self.modified = True

    def pop(self, key: str, default: Any = None) -> Any:
        if key in self.values:
            self.modified = True
        return self.values.pop(key, default)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "values": self.values,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionData":
        """Create from dictionary."""
        return cls(
            session_id=data["session_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            values=dict(data.get("values") or {}),
        )


class SessionManager:
    """Creates, loads, persists and destroys server-side sessions."""

    def __init__(self, store: KeyValueStore, config: SessionSettings) -> None:
        self.store = store
        self.config = config

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    def create(self) -> SessionData:
        """New, unsaved session. Persisted by ``save`` or by the middleware."""
        return SessionData(
            session_id=secrets.token_urlsafe(32),
            created_at=utcnow(),
            is_new=True,
        )

    async def get(self, session_id: str) -> SessionData | None:
        if not session_id:
            return None
        data = await self.store.get_json(self._key(session_id))
        if data is None:
            return None
        try:
            return SessionData.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("session.corrupt", session_id=session_id, error=str(e))
            return None

    async def save(self, session: SessionData) -> None:
        await self.store.set_json(
            self._key(session.session_id), session.to_dict(), self.config.ttl_seconds
        )
        session.is_new = False
        session.modified = False

    async def destroy(self, session_id: str) -> bool:
        return await self.store.delete(self._key(session_id))

    async def destroy_all(self) -> int:
        """Drop every session. Every browser must start a new one."""
        count = await self.store.delete_prefix(SESSION_KEY_PREFIX)
        logger.warning("session.all_destroyed", count=count)
        return count


def get_request_session(request: Request) -> SessionData | None:
    """Session loaded by SessionMiddleware for this request, if any."""
    return getattr(request.state, "session", None)


def ensure_session(request: Request) -> SessionData:
    """Session for this request, creating one lazily."""
    session = get_request_session(request)
    if session is None:
        manager: SessionManager = request.app.state.sessions
        session = manager.create()
        request.state.session = session
    return session


class SessionMiddleware(BaseHTTPMiddleware):
    """Loads the cookie's session into ``request.state.session``.

    New or modified sessions are saved after the handler ran and the cookie
    is (re)issued. Destroyed sessions clear the cookie.
    """

    def __init__(self, app: ASGIApp, manager: SessionManager) -> None:
        super().__init__(app)
        self.manager = manager

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:
        cookie_name = self.manager.config.cookie_name
        session_id = request.cookies.get(cookie_name)
        request.state.session = await self.manager.get(session_id) if session_id else None

        response = await call_next(request)

        session = get_request_session(request)
        if session is None:
            return response

        if session.destroyed:
            await self.manager.destroy(session.session_id)
            response.delete_cookie(cookie_name, path="/")
        elif session.is_new or session.modified:
            await self.manager.save(session)
            response.set_cookie(
                cookie_name,
                session.session_id,
                max_age=self.manager.config.ttl_seconds,
                path="/",
                secure=self.manager.config.secure_cookie,
                httponly=True,
                samesite=self.manager.config.same_site,  # type: ignore[arg-type]
            )
        return response
