"""User entity and account lock fields."""

from .models import AccountLockSnapshot, AccountLockState, User, UserRole

__all__ = ["AccountLockSnapshot", "AccountLockState", "User", "UserRole"]
