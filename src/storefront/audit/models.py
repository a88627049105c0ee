"""
Audit trail models for the storefront security pipeline.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from sqlalchemy import JSON, Index, String, Text, Uuid, event
from sqlalchemy.orm import Mapped, mapped_column

from storefront.db import Base, UTCDateTime, utcnow


class ActivityAction(str, Enum):
    """Closed set of audit actions."""

    LOGIN = "login"
    LOGOUT = "logout"
    REGISTER = "register"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET = "password_reset"
    PROFILE_UPDATE = "profile_update"

    ORDER_CREATE = "order_create"
    ORDER_VIEW = "order_view"
    CART_UPDATE = "cart_update"
    PAYMENT_ATTEMPT = "payment_attempt"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILURE = "payment_failure"
    PRODUCT_VIEW = "product_view"

    ADMIN_ACTION = "admin_action"
    SECURITY_EVENT = "security_event"
    USER_MANAGEMENT = "user_management"
    LOG_VIEW = "log_view"
    API_ACCESS = "api_access"

    MFA_ENABLED = "mfa_enabled"
    MFA_DISABLED = "mfa_disabled"
    MFA_VERIFICATION = "mfa_verification"
    MFA_SETUP = "mfa_setup"

    # Generic fallbacks
    REQUEST = "request"
    GET = "get"
    POST = "post"
    PUT = "put"
    PATCH = "patch"
    DELETE = "delete"


class ActivityOutcome(str, Enum):
    """Outcome of the audited activity."""

    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


class ImmutableRecordError(RuntimeError):
    """Raised when code tries to modify a persisted activity record."""


class ActivityRecord(Base):
    """Append-only audit entry.

    Rows are never updated. Removal happens only through the bulk purge in
    AuditService.
    """

    __tablename__ = "activity_logs"

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)

    # Who. Not a foreign key: records outlive the accounts they mention.
    user_id: Mapped[UUID | None] = mapped_column(Uuid(), nullable=True)

    # What
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ActivityOutcome.SUCCESS.value
    )

    # When
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    # Where
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False, default="unknown")
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    method: Mapped[str | None] = mapped_column(String(10), nullable=True)
    path: Mapped[str | None] = mapped_column(String(2048), nullable=True)

    # Correlation
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_activity_logs_user_timestamp", "user_id", "timestamp"),
        Index("ix_activity_logs_action_timestamp", "action", "timestamp"),
        Index("ix_activity_logs_ip_timestamp", "ip_address", "timestamp"),
        Index("ix_activity_logs_status_timestamp", "status", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<ActivityRecord(id={self.id}, action={self.action!r}, "
            f"status={self.status!r}, user_id={self.user_id})>"
        )


@event.listens_for(ActivityRecord, "before_update")
def _reject_activity_update(mapper: Any, connection: Any, target: ActivityRecord) -> None:
    raise ImmutableRecordError(f"Activity record {target.id} is immutable")


# Pydantic models for API


class ActivityRecordCreate(BaseModel):
    """Fields accepted when writing an activity record.

    The timestamp is not part of the input; the store assigns it.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    action: ActivityAction
    status: ActivityOutcome = ActivityOutcome.SUCCESS
    user_id: UUID | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    ip_address: str = "unknown"
    user_agent: str | None = None
    method: str | None = None
    path: str | None = None
    session_id: str | None = None
    request_id: str | None = None

    @field_validator("ip_address", "method", "path", "session_id", "request_id")
    @classmethod
    def clamp_to_column(cls, v: str | None, info: ValidationInfo) -> str | None:
        """Header and URL derived values are cut to the column width."""
        if v is None:
            return v
        limit = getattr(ActivityRecord.__table__.c[info.field_name].type, "length", None)
        return v[:limit] if limit else v


class ActivityRecordResponse(BaseModel):
    """Activity record as returned by the admin API."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID | None
    action: str
    details: dict[str, Any]
    status: str
    timestamp: datetime
    ip_address: str
    user_agent: str | None
    method: str | None
    path: str | None
    session_id: str | None
    request_id: str | None


class Pagination(BaseModel):
    """Page metadata."""

    page: int
    limit: int
    total: int
    pages: int


class ActivityPage(BaseModel):
    """One page of activity records."""

    activities: list[ActivityRecordResponse]
    pagination: Pagination


class ActivityFilterParams(BaseModel):
    """Filtering and paging parameters for activity queries."""

    model_config = ConfigDict(str_strip_whitespace=True, validate_assignment=True, extra="forbid")

    user_id: UUID | None = None
    actions: list[str] | None = None
    status: ActivityOutcome | None = None
    ip_address: str | None = None
    path_contains: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1, le=1000)


class ActionSummary(BaseModel):
    """Per-action count with the most recent occurrence."""

    action: str
    count: int
    last_activity: datetime
