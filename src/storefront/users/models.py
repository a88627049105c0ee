"""
User entity as seen by the security pipeline.

Catalog, cart and profile data belong to the storefront's own handlers; only
the identity and account-lock fields are modelled here.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict
from sqlalchemy import Boolean, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from storefront.db import Base, TimestampMixin, UTCDateTime, utcnow


class UserRole(str, Enum):
    """Storefront roles."""

    USER = "user"
    ADMIN = "admin"


class AccountLockState(str, Enum):
    """Effective account state, always computed from the stored fields."""

    ACTIVE = "active"
    LOCKED = "locked"
    PASSWORD_EXPIRED = "password-expired"


class User(Base, TimestampMixin):
    """Storefront user account."""

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=UserRole.USER.value)

    # Account lock state
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    locked_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True, index=True)
    failed_login_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    password_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    password_changed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_login_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)

    def is_locked(self, now: datetime | None = None) -> bool:
        """Locked only while locked_until lies in the future."""
        if self.locked_until is None:
            return False
        return (now or utcnow()) < self.locked_until

    def is_effectively_active(self, now: datetime | None = None) -> bool:
        """A lock that has run out no longer deactivates the account."""
        if self.is_active:
            return True
        return self.locked_until is not None and not self.is_locked(now)

    def is_password_expired(self, now: datetime | None = None) -> bool:
        """Expired once password_expires_at has been reached."""
        if self.password_expires_at is None:
            return False
        return (now or utcnow()) >= self.password_expires_at

    def lock_state(self, now: datetime | None = None) -> AccountLockState:
        now = now or utcnow()
        if self.is_locked(now):
            return AccountLockState.LOCKED
        if self.is_password_expired(now):
            return AccountLockState.PASSWORD_EXPIRED
        return AccountLockState.ACTIVE

    def lock_snapshot(self, now: datetime | None = None) -> "AccountLockSnapshot":
        now = now or utcnow()
        return AccountLockSnapshot(
            user_id=self.id,
            email=self.email,
            state=self.lock_state(now),
            is_locked=self.is_locked(now),
            is_active=self.is_effectively_active(now),
            locked_until=self.locked_until,
            failed_login_attempts=self.failed_login_attempts,
            password_expires_at=self.password_expires_at,
            password_expired=self.is_password_expired(now),
        )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email!r}, role={self.role!r})>"


class AccountLockSnapshot(BaseModel):
    """Point-in-time view of a user's lock state."""

    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    email: str
    state: AccountLockState
    is_locked: bool
    is_active: bool
    locked_until: datetime | None
    failed_login_attempts: int
    password_expires_at: datetime | None
    password_expired: bool
