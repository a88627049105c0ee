"""
Activity recorder.

Turns a finished request into one activity record and writes it off the
response path. A failed write is logged on the audit channel and dropped;
it never reaches the caller.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.requests import Request
from starlette.routing import Match

from storefront.logging import get_audit_logger
from storefront.settings import Settings
from storefront.users.models import User

from .models import ActivityAction, ActivityOutcome, ActivityRecord, ActivityRecordCreate
from .service import AuditService

logger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

AUDIT_ACTION_ATTR = "__audit_action__"


def audit_action(action: ActivityAction | str) -> Callable[[F], F]:
    """Declare the audit action of a route handler.

    Declared actions take precedence over path heuristics::

        @router.post("/checkout")
        @audit_action(ActivityAction.ORDER_CREATE)
        async def checkout(...): ...
    """
    value = ActivityAction(action).value

    def decorator(func: F) -> F:
        setattr(func, AUDIT_ACTION_ATTR, value)
        return func

    return decorator


def declared_action_for(request: Request) -> str | None:
    """Action declared on the route this request matches, if any.

    Works before routing has happened, so requests rejected by an outer gate
    still resolve to their route's declaration.
    """
    router = getattr(request.app, "router", None)
    for route in getattr(router, "routes", ()):
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            endpoint = getattr(route, "endpoint", None)
            return getattr(endpoint, AUDIT_ACTION_ATTR, None)
    return None


@dataclass
class RequestContext:
    """Everything the recorder needs to know about one finished request."""

    method: str
    path: str
    status_code: int
    ip_address: str = "unknown"
    url: str | None = None
    user_agent: str | None = None
    referer: str | None = None
    user_id: UUID | None = None
    declared_action: str | None = None
    outcome: ActivityOutcome | str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    login_identifier: str | None = None
    has_body: bool = False
    session_id: str | None = None
    request_id: str | None = None


class ActivityRecorder:
    """Builds and writes activity records for finished requests."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self.config = settings.audit
        self._skip_paths = frozenset(self.config.skip_paths)
        self._pending: set[asyncio.Task[ActivityRecord | None]] = set()
        self._audit_logger = get_audit_logger()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def pending(self) -> int:
        """Writes scheduled but not yet finished."""
        return len(self._pending)

    def should_skip(self, path: str) -> bool:
        return path in self._skip_paths

    def resolve_action(self, method: str, path: str, declared: str | None = None) -> ActivityAction:
        """Declared action, else the first matching path rule, else the HTTP method."""
        if declared:
            try:
                return ActivityAction(declared)
            except ValueError:
                logger.warning("audit.unknown_declared_action", action=declared, path=path)

        for rule in self.config.action_rules:
            if rule.substring in path:
                try:
                    return ActivityAction(rule.action)
                except ValueError:
                    logger.warning("audit.unknown_rule_action", action=rule.action)

        try:
            return ActivityAction(method.lower())
        except ValueError:
            return ActivityAction.REQUEST

    @staticmethod
    def resolve_outcome(
        status_code: int, override: ActivityOutcome | str | None = None
    ) -> ActivityOutcome:
        if override is not None:
            return ActivityOutcome(override)
        return ActivityOutcome.SUCCESS if status_code < 400 else ActivityOutcome.FAILURE

    def build_record(self, context: RequestContext) -> ActivityRecordCreate | None:
        """Record for ``context``, or None when the path is skip-listed."""
        if self.should_skip(context.path):
            return None

        action = self.resolve_action(context.method, context.path, context.declared_action)
        details: dict[str, Any] = {
            "url": context.url or context.path,
            "method": context.method,
            "userAgent": context.user_agent,
            "referer": context.referer,
            "responseStatus": context.status_code,
            "requestBody": context.has_body,
        }
        details.update(context.details)

        return ActivityRecordCreate(
            action=action,
            status=self.resolve_outcome(context.status_code, context.outcome),
            user_id=context.user_id,
            details=details,
            ip_address=context.ip_address or "unknown",
            user_agent=context.user_agent,
            method=context.method,
            path=context.path,
            session_id=context.session_id,
            request_id=context.request_id,
        )

    async def record(self, context: RequestContext) -> ActivityRecord | None:
        """Write one record. Failures are logged and swallowed."""
        data: ActivityRecordCreate | None = None
        try:
            data = self.build_record(context)
            if data is None:
                return None

            async with self._session_factory() as session:
                if (
                    data.action == ActivityAction.LOGIN
                    and data.user_id is None
                    and context.login_identifier
                ):
                    data.user_id = await self._lookup_login_actor(
                        session, context.login_identifier
                    )
                return await AuditService(session).add(data)
        except Exception as e:
            self._audit_logger.error(
                "audit.write_failed",
                path=context.path,
                method=context.method,
                action=data.action.value if data is not None else None,
                error=str(e),
                exc_info=True,
            )
            return None

    def schedule(self, context: RequestContext) -> "asyncio.Task[ActivityRecord | None] | None":
        """Fire-and-forget write. The caller never awaits the task."""
        if not self.enabled or self.should_skip(context.path):
            return None
        task = asyncio.create_task(self.record(context))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _lookup_login_actor(self, session: AsyncSession, identifier: str) -> UUID | None:
        result = await session.execute(
            select(User.id).where(func.lower(User.email) == identifier.strip().lower())
        )
        return result.scalar_one_or_none()
