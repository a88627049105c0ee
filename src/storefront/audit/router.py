"""
FastAPI router for the admin activity log screen.
"""

from datetime import datetime
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth.core import UserInfo, require_admin
from ..db import get_async_session
from .models import ActivityAction, ActivityFilterParams, ActivityOutcome, ActivityPage
from .recorder import audit_action
from .service import AuditService

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Audit"])


@router.get("", response_model=ActivityPage)
@audit_action(ActivityAction.LOG_VIEW)
async def list_activity_logs(
    action: list[str] | None = Query(None, description="Filter by action (repeatable)"),
    status: ActivityOutcome | None = Query(None, description="Filter by outcome"),
    user_id: UUID | None = Query(None, description="Filter by actor"),
    ip_address: str | None = Query(None, description="Filter by client address"),
    path: str | None = Query(None, description="Filter by path substring"),
    start: datetime | None = Query(None, description="Earliest timestamp (inclusive)"),
    end: datetime | None = Query(None, description="Latest timestamp (inclusive)"),
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(50, ge=1, le=1000, description="Items per page"),
    session: AsyncSession = Depends(get_async_session),
    current_user: UserInfo = Depends(require_admin),
) -> ActivityPage:
    """
    Get paginated activity records, newest first.
    """
    filters = ActivityFilterParams(
        user_id=user_id,
        actions=action,
        status=status,
        ip_address=ip_address,
        path_contains=path,
        start_date=start,
        end_date=end,
        page=page,
        limit=limit,
    )
    return await AuditService(session).get_activities(filters)


@router.delete("")
@audit_action(ActivityAction.ADMIN_ACTION)
async def purge_activity_logs(
    before: datetime = Query(..., description="Delete records older than this timestamp"),
    session: AsyncSession = Depends(get_async_session),
    current_user: UserInfo = Depends(require_admin),
) -> dict[str, int]:
    """Bulk administrative purge of old activity records."""
    deleted = await AuditService(session).purge(before)
    logger.warning(
        "audit.purge_requested",
        admin_id=str(current_user.user_id),
        before=before.isoformat(),
        deleted_count=deleted,
    )
    return {"deleted": deleted}
