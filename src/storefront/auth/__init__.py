"""Authentication dependencies."""

from .core import (
    UserInfo,
    get_current_user,
    get_current_user_optional,
    request_user,
    require_admin,
)

__all__ = [
    "UserInfo",
    "get_current_user",
    "get_current_user_optional",
    "request_user",
    "require_admin",
]
