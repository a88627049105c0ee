"""
Read-only security dashboards over the audit store and the user table.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.audit.models import (
    ActionSummary,
    ActivityAction,
    ActivityFilterParams,
    ActivityOutcome,
    ActivityPage,
    ActivityRecordResponse,
)
from storefront.audit.service import AuditService
from storefront.db import utcnow
from storefront.exceptions import UserNotFoundError
from storefront.settings import Settings
from storefront.users.models import User

from .lockout import parse_user_id


class SecurityEvents(BaseModel):
    events: list[ActivityRecordResponse]
    total: int
    period: str


class UserActivitySummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: UUID = Field(alias="userId")
    activity: list[ActionSummary]
    period: str


class FailedLogins(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    failed_logins: list[ActivityRecordResponse] = Field(alias="failedLogins")
    total: int
    period: str


class UserStats(BaseModel):
    total: int
    active: int
    locked: int
    inactive: int


class SecurityCounters(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    failed_logins_24h: int = Field(alias="failedLogins24h")
    failed_logins_7d: int = Field(alias="failedLogins7d")
    security_events_24h: int = Field(alias="securityEvents24h")
    security_events_7d: int = Field(alias="securityEvents7d")


class SystemStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    users: UserStats
    security: SecurityCounters
    recent_activity: list[ActivityRecordResponse] = Field(alias="recentActivity")


class SecurityAggregator:
    """Derived views for the admin security dashboard. Never writes."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session = session
        self.config = settings.audit
        self.audit = AuditService(session)
        self._clock = clock

    async def security_events(self, days: int = 7, limit: int = 100) -> SecurityEvents:
        """Security-relevant records in the trailing window, newest first."""
        since = self._clock() - timedelta(days=days)
        actions = self.config.security_event_actions
        cap = min(limit, self.config.security_events_limit)
        records = []
        if cap > 0:
            records = await self.audit.list_activities(actions=actions, since=since, limit=cap)
        total = await self.audit.count(actions=actions, since=since)
        events = [ActivityRecordResponse.model_validate(r) for r in records]
        return SecurityEvents(events=events, total=total, period=f"{days} days")

    async def user_activity_summary(
        self, user_id: UUID | str, days: int = 30
    ) -> UserActivitySummary:
        """Per-action count and last occurrence for one user."""
        uid = parse_user_id(user_id)
        await self._require_user(uid, user_id)
        since = self._clock() - timedelta(days=days)
        activity = await self.audit.count_by_action(user_id=uid, since=since)
        return UserActivitySummary(user_id=uid, activity=activity, period=f"{days} days")

    async def failed_logins(self, hours: int = 24) -> FailedLogins:
        since = self._clock() - timedelta(hours=hours)
        records = await self.audit.list_activities(
            actions=[ActivityAction.LOGIN.value],
            status=ActivityOutcome.FAILURE,
            since=since,
            limit=self.config.failed_logins_limit,
        )
        items = [ActivityRecordResponse.model_validate(r) for r in records]
        return FailedLogins(failed_logins=items, total=len(items), period=f"{hours} hours")

    async def system_stats(self) -> SystemStats:
        """User counts, failure counters and the most recent activity."""
        now = self._clock()
        day_ago = now - timedelta(hours=24)
        week_ago = now - timedelta(days=7)

        total = await self._count_users()
        active = await self._count_users(or_(User.is_active.is_(True), User.locked_until <= now))
        locked = await self._count_users(User.locked_until > now)

        login = [ActivityAction.LOGIN.value]
        security_event = [ActivityAction.SECURITY_EVENT.value]
        failure = ActivityOutcome.FAILURE
        counters = SecurityCounters(
            failed_logins_24h=await self.audit.count(actions=login, status=failure, since=day_ago),
            failed_logins_7d=await self.audit.count(actions=login, status=failure, since=week_ago),
            security_events_24h=await self.audit.count(actions=security_event, since=day_ago),
            security_events_7d=await self.audit.count(actions=security_event, since=week_ago),
        )

        recent = await self.audit.recent(self.config.recent_activity_limit)
        return SystemStats(
            users=UserStats(total=total, active=active, locked=locked, inactive=total - active),
            security=counters,
            recent_activity=[ActivityRecordResponse.model_validate(r) for r in recent],
        )

    async def audit_trail(
        self, user_id: UUID | str, page: int = 1, limit: int = 50
    ) -> ActivityPage:
        """Paged audit trail for one existing user."""
        uid = parse_user_id(user_id)
        await self._require_user(uid, user_id)
        return await self.audit.get_activities(
            ActivityFilterParams(user_id=uid, page=page, limit=limit)
        )

    async def _require_user(self, uid: UUID, raw: UUID | str) -> None:
        if await self.session.get(User, uid) is None:
            raise UserNotFoundError(raw)

    async def _count_users(self, *conditions: Any) -> int:
        query = select(func.count()).select_from(User)
        if conditions:
            query = query.where(*conditions)
        result = await self.session.execute(query)
        return int(result.scalar() or 0)
