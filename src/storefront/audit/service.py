"""
Audit store: append-only persistence and queries over activity records.
"""

import math
from collections.abc import Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, delete, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.db import utcnow

from .models import (
    ActionSummary,
    ActivityAction,
    ActivityFilterParams,
    ActivityOutcome,
    ActivityPage,
    ActivityRecord,
    ActivityRecordCreate,
    ActivityRecordResponse,
    Pagination,
)

logger = structlog.get_logger(__name__)


def page_count(total: int, limit: int) -> int:
    """Number of pages needed for ``total`` rows at ``limit`` per page."""
    return math.ceil(total / limit) if limit > 0 else 0


class AuditService:
    """Service for activity record persistence and retrieval."""

    def __init__(self, session: AsyncSession):
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, data: ActivityRecordCreate, *, commit: bool = True) -> ActivityRecord:
        """Persist one record. The timestamp is assigned here, never by the caller."""
        record = ActivityRecord(
            **data.model_dump(mode="python"),
            timestamp=utcnow(),
        )
        record.action = data.action.value
        record.status = data.status.value
        self._session.add(record)
        if commit:
            await self._session.commit()
        else:
            await self._session.flush()

        logger.debug(
            "audit.record_written",
            action=record.action,
            status=record.status,
            user_id=str(record.user_id) if record.user_id else None,
            record_id=str(record.id),
        )
        return record

    async def log_activity(
        self,
        action: ActivityAction,
        *,
        status: ActivityOutcome = ActivityOutcome.SUCCESS,
        user_id: UUID | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        method: str | None = None,
        path: str | None = None,
        session_id: str | None = None,
        request_id: str | None = None,
        commit: bool = True,
    ) -> ActivityRecord:
        """Log an activity."""
        data = ActivityRecordCreate(
            action=action,
            status=status,
            user_id=user_id,
            details=details or {},
            ip_address=ip_address or "unknown",
            user_agent=user_agent,
            method=method,
            path=path,
            session_id=session_id,
            request_id=request_id,
        )
        return await self.add(data, commit=commit)

    async def purge(self, before: datetime | None = None) -> int:
        """Bulk administrative purge. Deletes everything older than ``before`` (or all)."""
        stmt = delete(ActivityRecord)
        if before is not None:
            stmt = stmt.where(ActivityRecord.timestamp < before)
        result = await self._session.execute(stmt)
        await self._session.commit()
        deleted = result.rowcount or 0

        logger.warning(
            "audit.purged",
            before=before.isoformat() if before else None,
            deleted_count=deleted,
        )
        return deleted

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _build_conditions(
        self,
        *,
        user_id: UUID | None = None,
        actions: Sequence[str] | None = None,
        status: ActivityOutcome | str | None = None,
        ip_address: str | None = None,
        path_contains: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[Any]:
        conditions: list[Any] = []
        if user_id is not None:
            conditions.append(ActivityRecord.user_id == user_id)
        if actions:
            conditions.append(ActivityRecord.action.in_([str(_value(a)) for a in actions]))
        if status is not None:
            conditions.append(ActivityRecord.status == _value(status))
        if ip_address:
            conditions.append(ActivityRecord.ip_address == ip_address)
        if path_contains:
            conditions.append(ActivityRecord.path.contains(path_contains))
        if since is not None:
            conditions.append(ActivityRecord.timestamp >= since)
        if until is not None:
            conditions.append(ActivityRecord.timestamp <= until)
        return conditions

    async def get_activities(self, filters: ActivityFilterParams) -> ActivityPage:
        """Filtered, paginated records, newest first."""
        conditions = self._build_conditions(
            user_id=filters.user_id,
            actions=filters.actions,
            status=filters.status,
            ip_address=filters.ip_address,
            path_contains=filters.path_contains,
            since=filters.start_date,
            until=filters.end_date,
        )

        total = await self._count_where(conditions)

        query = select(ActivityRecord)
        if conditions:
            query = query.where(and_(*conditions))
        query = (
            query.order_by(desc(ActivityRecord.timestamp), desc(ActivityRecord.id))
            .offset((filters.page - 1) * filters.limit)
            .limit(filters.limit)
        )
        result = await self._session.execute(query)
        records = result.scalars().all()

        return ActivityPage(
            activities=[ActivityRecordResponse.model_validate(r) for r in records],
            pagination=Pagination(
                page=filters.page,
                limit=filters.limit,
                total=total,
                pages=page_count(total, filters.limit),
            ),
        )

    async def list_activities(
        self,
        *,
        actions: Sequence[str] | None = None,
        status: ActivityOutcome | None = None,
        user_id: UUID | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[ActivityRecord]:
        """Records matching the filters, newest first, capped at ``limit``."""
        conditions = self._build_conditions(
            user_id=user_id, actions=actions, status=status, since=since
        )
        query = select(ActivityRecord)
        if conditions:
            query = query.where(and_(*conditions))
        query = query.order_by(desc(ActivityRecord.timestamp), desc(ActivityRecord.id)).limit(limit)
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def recent(self, limit: int = 10) -> list[ActivityRecord]:
        """Top-N newest records."""
        return await self.list_activities(limit=limit)

    async def count(
        self,
        *,
        user_id: UUID | None = None,
        actions: Sequence[str] | None = None,
        status: ActivityOutcome | None = None,
        since: datetime | None = None,
    ) -> int:
        """Count records matching the filters."""
        conditions = self._build_conditions(
            user_id=user_id, actions=actions, status=status, since=since
        )
        return await self._count_where(conditions)

    async def count_by_action(
        self, *, user_id: UUID | None = None, since: datetime | None = None
    ) -> list[ActionSummary]:
        """Group by action with count and last-seen, most recent first."""
        conditions = self._build_conditions(user_id=user_id, since=since)
        last_activity = func.max(ActivityRecord.timestamp).label("last_activity")
        query = select(
            ActivityRecord.action,
            func.count().label("count"),
            last_activity,
        )
        if conditions:
            query = query.where(and_(*conditions))
        query = query.group_by(ActivityRecord.action).order_by(desc(last_activity))

        result = await self._session.execute(query)
        return [
            ActionSummary(action=row.action, count=row.count, last_activity=row.last_activity)
            for row in result.all()
        ]

    async def _count_where(self, conditions: list[Any]) -> int:
        query = select(func.count()).select_from(ActivityRecord)
        if conditions:
            query = query.where(and_(*conditions))
        result = await self._session.execute(query)
        return int(result.scalar() or 0)


def _value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value
