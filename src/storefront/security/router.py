"""
Admin security endpoints and the public CSRF token endpoint.
"""

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..audit.models import ActivityAction, ActivityPage
from ..audit.recorder import audit_action
from ..auth.core import UserInfo, require_admin
from ..db import get_async_session, utcnow
from ..settings import Settings, get_settings
from ..users.models import AccountLockSnapshot
from .aggregator import (
    FailedLogins,
    SecurityAggregator,
    SecurityEvents,
    SystemStats,
    UserActivitySummary,
)
from .csrf import CSRFTokenService
from .lockout import AccountLockService, AdminContext
from .rate_limit import caller_address
from .sessions import SessionManager, ensure_session

router = APIRouter(tags=["Security"])
csrf_router = APIRouter(tags=["Security"])


class LockRequest(BaseModel):
    """Body of the lock endpoint."""

    action: Any = None


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def get_aggregator(
    request: Request, session: AsyncSession = Depends(get_async_session)
) -> SecurityAggregator:
    return SecurityAggregator(session, get_app_settings(request))


def get_lock_service(
    request: Request, session: AsyncSession = Depends(get_async_session)
) -> AccountLockService:
    return AccountLockService(session, get_app_settings(request).security.lockout)


def admin_context(request: Request, user: UserInfo) -> AdminContext:
    settings = get_app_settings(request)
    return AdminContext(
        admin_id=user.user_id,
        ip_address=caller_address(request, settings.audit.trust_forwarded_headers),
        user_agent=request.headers.get("User-Agent"),
    )


def _user_payload(snapshot: AccountLockSnapshot) -> dict[str, Any]:
    return {
        "id": str(snapshot.user_id),
        "email": snapshot.email,
        "isActive": snapshot.is_active,
        "accountLockedUntil": snapshot.locked_until,
        "passwordExpiresAt": snapshot.password_expires_at,
        "state": snapshot.state.value,
    }


# ========================================
# Dashboards
# ========================================


@router.get("/events", response_model=SecurityEvents)
@audit_action(ActivityAction.LOG_VIEW)
async def get_security_events(
    days: int = Query(7, ge=1, le=365, description="Number of days to look back"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of events"),
    aggregator: SecurityAggregator = Depends(get_aggregator),
    current_user: UserInfo = Depends(require_admin),
) -> SecurityEvents:
    """Security-relevant activity (logins, password changes, security events)."""
    return await aggregator.security_events(days=days, limit=limit)


@router.get("/stats", response_model=SystemStats)
@audit_action(ActivityAction.LOG_VIEW)
async def get_security_stats(
    aggregator: SecurityAggregator = Depends(get_aggregator),
    current_user: UserInfo = Depends(require_admin),
) -> SystemStats:
    return await aggregator.system_stats()


@router.get("/failed-logins", response_model=FailedLogins)
@audit_action(ActivityAction.LOG_VIEW)
async def get_failed_logins(
    hours: int = Query(24, ge=1, le=24 * 365, description="Number of hours to look back"),
    aggregator: SecurityAggregator = Depends(get_aggregator),
    current_user: UserInfo = Depends(require_admin),
) -> FailedLogins:
    return await aggregator.failed_logins(hours=hours)


@router.get("/users/{user_id}/activity", response_model=UserActivitySummary)
@audit_action(ActivityAction.USER_MANAGEMENT)
async def get_user_activity(
    user_id: str,
    days: int = Query(30, ge=1, le=365, description="Number of days to look back"),
    aggregator: SecurityAggregator = Depends(get_aggregator),
    current_user: UserInfo = Depends(require_admin),
) -> UserActivitySummary:
    """Per-action counts for one user."""
    return await aggregator.user_activity_summary(user_id, days=days)


@router.get("/users/{user_id}/audit-trail", response_model=ActivityPage)
@audit_action(ActivityAction.USER_MANAGEMENT)
async def get_user_audit_trail(
    user_id: str,
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(50, ge=1, le=1000, description="Items per page"),
    aggregator: SecurityAggregator = Depends(get_aggregator),
    current_user: UserInfo = Depends(require_admin),
) -> ActivityPage:
    return await aggregator.audit_trail(user_id, page=page, limit=limit)


# ========================================
# Account lock transitions
# ========================================


@router.get("/users/{user_id}/lock-state", response_model=AccountLockSnapshot)
@audit_action(ActivityAction.USER_MANAGEMENT)
async def get_lock_state(
    user_id: str,
    service: AccountLockService = Depends(get_lock_service),
    current_user: UserInfo = Depends(require_admin),
) -> AccountLockSnapshot:
    return await service.get_state(user_id)


@router.put("/users/{user_id}/lock")
@audit_action(ActivityAction.ADMIN_ACTION)
async def toggle_user_lock(
    user_id: str,
    body: LockRequest,
    request: Request,
    service: AccountLockService = Depends(get_lock_service),
    current_user: UserInfo = Depends(require_admin),
) -> dict[str, Any]:
    """Lock or unlock an account. Body: ``{"action": "lock" | "unlock"}``."""
    snapshot = await service.apply(
        user_id, body.action, context=admin_context(request, current_user)
    )
    return {
        "message": f"Account {body.action}ed successfully",
        "user": _user_payload(snapshot),
    }


@router.put("/users/{user_id}/force-reset")
@audit_action(ActivityAction.ADMIN_ACTION)
async def force_password_reset(
    user_id: str,
    request: Request,
    service: AccountLockService = Depends(get_lock_service),
    current_user: UserInfo = Depends(require_admin),
) -> dict[str, Any]:
    snapshot = await service.force_password_reset(
        user_id, context=admin_context(request, current_user)
    )
    return {
        "message": "Password reset required for user",
        "user": _user_payload(snapshot),
    }


@router.post("/invalidate-sessions")
@audit_action(ActivityAction.ADMIN_ACTION)
async def invalidate_all_sessions(
    request: Request,
    service: AccountLockService = Depends(get_lock_service),
    current_user: UserInfo = Depends(require_admin),
) -> dict[str, Any]:
    """Destroy every server-side session. All users must sign in again."""
    sessions: SessionManager = request.app.state.sessions
    count = await sessions.destroy_all()
    # The caller's own session is gone too; do not write it back.
    request.state.session = None
    await service.record_session_invalidation(
        context=admin_context(request, current_user), count=count
    )
    return {
        "message": "All user sessions have been invalidated",
        "sessionsDestroyed": count,
        "timestamp": utcnow(),
    }


# ========================================
# CSRF token
# ========================================


@csrf_router.get("/csrf-token")
async def get_csrf_token(request: Request) -> dict[str, str]:
    """Anti-forgery token for the caller's session, creating the session if needed."""
    csrf: CSRFTokenService = request.app.state.csrf
    session = ensure_session(request)
    return {"csrfToken": csrf.issue(session)}
