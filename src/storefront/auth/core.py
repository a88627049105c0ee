"""
Authenticated principal as seen by the security pipeline.

Credential verification happens upstream. That layer stores a ``UserInfo``
on ``request.state.user``; everything here only reads it.
"""

from typing import Any
from uuid import UUID

from fastapi import Depends, Request
from pydantic import BaseModel, ConfigDict

from storefront.exceptions import AdminRequiredError, AuthenticationRequiredError
from storefront.users.models import UserRole


class UserInfo(BaseModel):
    """User information from auth."""

    model_config = ConfigDict(extra="forbid")

    user_id: UUID
    email: str | None = None
    role: UserRole = UserRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def request_user(request: Request) -> UserInfo | None:
    """Principal attached to the request, if any."""
    user: Any = getattr(request.state, "user", None)
    if user is None or isinstance(user, UserInfo):
        return user
    if isinstance(user, dict):
        return UserInfo.model_validate(user)
    return None


async def get_current_user(request: Request) -> UserInfo:
    """Get current authenticated user or raise 401."""
    user = request_user(request)
    if user is None:
        raise AuthenticationRequiredError()
    return user


async def get_current_user_optional(request: Request) -> UserInfo | None:
    """Get current user if authenticated, None otherwise."""
    return request_user(request)


def require_admin(user: UserInfo = Depends(get_current_user)) -> UserInfo:
    """Require admin role."""
    if not user.is_admin:
        raise AdminRequiredError()
    return user
