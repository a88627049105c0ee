"""
Account lock state machine.

States are never stored. They are derived from ``locked_until`` and
``password_expires_at`` at read time, so an expired lock reads as active
without any write:

    active --lock--> locked --unlock / time--> active
    active --force reset--> password-expired --password change--> active

Every admin transition writes an ``admin_action`` audit record in the same
transaction as the user update.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.audit.models import ActivityAction, ActivityOutcome
from storefront.audit.service import AuditService
from storefront.db import utcnow
from storefront.exceptions import InvalidLockActionError, UserNotFoundError
from storefront.settings import Settings
from storefront.users.models import AccountLockSnapshot, User

logger = structlog.get_logger(__name__)

LockoutSettings = Settings.SecuritySettings.LockoutSettings


class AdminOperation:
    """Sub-actions recorded in admin_action details."""

    ACCOUNT_LOCK = "account_lock"
    ACCOUNT_UNLOCK = "account_unlock"
    FORCE_PASSWORD_RESET = "force_password_reset"
    INVALIDATE_ALL_SESSIONS = "invalidate_all_sessions"


@dataclass(frozen=True, slots=True)
class AdminContext:
    """Who performed an admin operation, and from where."""

    admin_id: UUID | None = None
    ip_address: str | None = None
    user_agent: str | None = None


def parse_user_id(user_id: UUID | str) -> UUID:
    """Coerce a path parameter to a UUID. Malformed ids are unknown users."""
    if isinstance(user_id, UUID):
        return user_id
    try:
        return UUID(str(user_id))
    except ValueError as e:
        raise UserNotFoundError(user_id) from e


class AccountLockService:
    """Lock, unlock and password-expiry transitions for user accounts."""

    def __init__(
        self,
        session: AsyncSession,
        config: LockoutSettings,
        audit: AuditService | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session = session
        self.config = config
        self.audit = audit or AuditService(session)
        self._clock = clock

    async def get_user(self, user_id: UUID | str) -> User:
        user = await self.session.get(User, parse_user_id(user_id))
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def get_user_by_email(self, email: str) -> User:
        result = await self.session.execute(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise UserNotFoundError(email)
        return user

    # ------------------------------------------------------------------
    # Admin transitions
    # ------------------------------------------------------------------

    async def lock(self, user_id: UUID | str, *, context: AdminContext) -> AccountLockSnapshot:
        """active -> locked for the configured admin lock duration."""
        user = await self.get_user(user_id)
        now = self._clock()
        user.locked_until = now + timedelta(seconds=self.config.admin_lock_seconds)
        user.is_active = False
        return await self._commit_admin_transition(
            user, AdminOperation.ACCOUNT_LOCK, context, now
        )

    async def unlock(self, user_id: UUID | str, *, context: AdminContext) -> AccountLockSnapshot:
        """locked -> active, clearing failed attempts."""
        user = await self.get_user(user_id)
        now = self._clock()
        user.locked_until = None
        user.failed_login_attempts = 0
        user.is_active = True
        return await self._commit_admin_transition(
            user, AdminOperation.ACCOUNT_UNLOCK, context, now
        )

    async def apply(
        self, user_id: UUID | str, action: Any, *, context: AdminContext
    ) -> AccountLockSnapshot:
        """Dispatch ``"lock"`` or ``"unlock"``; anything else is rejected."""
        if action == "lock":
            return await self.lock(user_id, context=context)
        if action == "unlock":
            return await self.unlock(user_id, context=context)
        raise InvalidLockActionError(action)

    async def force_password_reset(
        self, user_id: UUID | str, *, context: AdminContext
    ) -> AccountLockSnapshot:
        """Expire the password now. The next login must go through a reset."""
        user = await self.get_user(user_id)
        now = self._clock()
        user.password_expires_at = now
        return await self._commit_admin_transition(
            user, AdminOperation.FORCE_PASSWORD_RESET, context, now
        )

    async def record_session_invalidation(self, *, context: AdminContext, count: int) -> None:
        """Audit an invalidate-all-sessions operation."""
        await self.audit.log_activity(
            ActivityAction.ADMIN_ACTION,
            user_id=context.admin_id,
            details={
                "action": AdminOperation.INVALIDATE_ALL_SESSIONS,
                "adminId": str(context.admin_id) if context.admin_id else None,
                "sessionsDestroyed": count,
            },
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )

    async def get_state(self, user_id: UUID | str) -> AccountLockSnapshot:
        """Current state. Never writes, even when a lock has lapsed."""
        user = await self.get_user(user_id)
        return user.lock_snapshot(self._clock())

    async def _commit_admin_transition(
        self, user: User, operation: str, context: AdminContext, now: datetime
    ) -> AccountLockSnapshot:
        try:
            await self.audit.log_activity(
                ActivityAction.ADMIN_ACTION,
                status=ActivityOutcome.SUCCESS,
                user_id=context.admin_id,
                details={
                    "targetUserId": str(user.id),
                    "action": operation,
                    "adminId": str(context.admin_id) if context.admin_id else None,
                },
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                commit=False,
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "account.admin_transition",
            operation=operation,
            target_user_id=str(user.id),
            admin_id=str(context.admin_id) if context.admin_id else None,
            locked_until=user.locked_until.isoformat() if user.locked_until else None,
        )
        return user.lock_snapshot(now)

    # ------------------------------------------------------------------
    # Login bookkeeping for the authentication handlers
    # ------------------------------------------------------------------

    async def register_failed_login(self, user: User) -> AccountLockSnapshot:
        """Count a failed login and auto-lock at the threshold."""
        now = self._clock()
        user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
        if user.failed_login_attempts >= self.config.auto_lock_threshold:
            user.locked_until = now + timedelta(seconds=self.config.auto_lock_seconds)
            logger.warning(
                "account.auto_locked",
                user_id=str(user.id),
                failed_login_attempts=user.failed_login_attempts,
            )
        await self.session.commit()
        return user.lock_snapshot(now)

    async def register_successful_login(
        self, user: User, ip_address: str | None = None
    ) -> AccountLockSnapshot:
        """Reset failure bookkeeping after a good login."""
        now = self._clock()
        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login_at = now
        user.last_login_ip = ip_address
        await self.session.commit()
        return user.lock_snapshot(now)

    async def rotate_password_expiry(self, user: User) -> AccountLockSnapshot:
        """password-expired -> active after a password change."""
        now = self._clock()
        user.password_changed_at = now
        user.password_expires_at = now + timedelta(days=self.config.password_max_age_days)
        await self.session.commit()
        return user.lock_snapshot(now)
