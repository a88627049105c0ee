"""
SQLAlchemy 2.0 Database Configuration

Async engine, session factory and declarative base shared by the audit
store and the user table.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, text
from sqlalchemy.engine import Dialect
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from storefront.settings import settings

# ==========================================
# SQLAlchemy 2.0 Declarative Base
# ==========================================


class Base(DeclarativeBase):
    """Base class for all database models using SQLAlchemy 2.0 declarative mapping."""

    pass


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware UTC datetime on every backend.

    SQLite drops tzinfo on the way back; values are normalised to UTC on
    write and re-tagged as UTC on read.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class TimestampMixin:
    """Adds created_at and updated_at timestamps to models."""

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


# ==========================================
# Engine and Session Management
# ==========================================

_async_engine: AsyncEngine | None = None
_async_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_async_engine() -> AsyncEngine:
    """Get or create the asynchronous engine."""
    global _async_engine
    if _async_engine is None:
        url = settings.database.async_url
        options: dict[str, Any] = {"echo": settings.database.echo}
        if not url.startswith("sqlite"):
            options.update(
                pool_size=settings.database.pool_size,
                max_overflow=settings.database.max_overflow,
                pool_timeout=settings.database.pool_timeout,
                pool_recycle=settings.database.pool_recycle,
                pool_pre_ping=settings.database.pool_pre_ping,
            )
        _async_engine = create_async_engine(url, **options)
    return _async_engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory bound to the async engine."""
    global _async_session_maker
    if _async_session_maker is None:
        _async_session_maker = async_sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_async_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_maker


def set_session_maker(session_maker: async_sessionmaker[AsyncSession] | None) -> None:
    """Override the session factory (tests, alternate engines)."""
    global _async_session_maker
    _async_session_maker = session_maker


# ==========================================
# Session Context Managers
# ==========================================


@asynccontextmanager
async def get_async_db() -> AsyncIterator[AsyncSession]:
    """Get an asynchronous database session."""
    async with get_session_maker()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_async_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency for getting an async database session."""
    async with get_session_maker()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# ==========================================
# Database Initialization
# ==========================================


async def create_all_tables_async(engine: AsyncEngine | None = None) -> None:
    """Create all tables in the database asynchronously."""
    # Import models so they are registered on Base.metadata
    from storefront.audit import models as _audit_models  # noqa: F401
    from storefront.users import models as _user_models  # noqa: F401

    engine = engine or get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_all_tables_async(engine: AsyncEngine | None = None) -> None:
    """Drop all tables from the database asynchronously. Use with caution!"""
    engine = engine or get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def dispose_engine() -> None:
    """Dispose the engine and forget the cached session factory."""
    global _async_engine, _async_session_maker
    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    _async_session_maker = None


# ==========================================
# Health Check
# ==========================================


async def check_database_health() -> bool:
    """Check if the database is accessible."""
    try:
        async with get_async_db() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


__all__ = [
    "Base",
    "UTCDateTime",
    "TimestampMixin",
    "utcnow",
    "get_async_engine",
    "get_session_maker",
    "set_session_maker",
    "get_async_db",
    "get_async_session",
    "create_all_tables_async",
    "drop_all_tables_async",
    "dispose_engine",
    "check_database_health",
]
