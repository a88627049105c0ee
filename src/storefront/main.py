"""
Main FastAPI application entry point for the storefront security pipeline.
"""

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.audit.middleware import ActivityLogMiddleware
from storefront.audit.recorder import ActivityRecorder
from storefront.audit.router import router as audit_router
from storefront.db import (
    check_database_health,
    create_all_tables_async,
    dispose_engine,
    get_async_session,
    get_session_maker,
)
from storefront.exceptions import register_exception_handlers
from storefront.logging import setup_logging
from storefront.security.brute_force import BruteForceGuard, BruteForceMiddleware
from storefront.security.csrf import CSRFMiddleware, CSRFTokenService
from storefront.security.rate_limit import RateLimiter, RateLimitMiddleware
from storefront.security.router import csrf_router
from storefront.security.router import router as security_router
from storefront.security.sessions import SessionManager, SessionMiddleware
from storefront.security.store import KeyValueStore, build_store
from storefront.settings import Environment, Settings, get_settings


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifecycle events."""
    logger = structlog.get_logger(__name__)
    settings: Settings = app.state.settings

    logger.info(
        "service.startup.begin",
        service=settings.app_name,
        version=settings.app_version,
        environment=settings.environment.value,
    )

    if app.state.owns_database and settings.environment in (
        Environment.DEVELOPMENT,
        Environment.TEST,
    ):
        await create_all_tables_async()
        logger.info("database.tables_ensured")

    try:
        yield
    finally:
        recorder: ActivityRecorder = app.state.recorder
        if recorder.pending:
            logger.info("audit.draining", pending=recorder.pending)
        await recorder.drain()

        store: KeyValueStore = app.state.store
        await store.close()

        if app.state.owns_database:
            await dispose_engine()

        logger.info("service.shutdown.complete")


def create_application(
    settings: Settings | None = None,
    *,
    store: KeyValueStore | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    ``store`` and ``session_factory`` replace the configured backing store and
    database. Tests pass both.
    """
    settings = settings or get_settings()
    setup_logging(settings)
    logger = structlog.get_logger(__name__)

    app = FastAPI(
        title="Storefront Security",
        description="Request security gates, account protection and audit trail",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )

    owns_database = session_factory is None
    if session_factory is None:
        session_factory = get_session_maker()
    else:
        factory = session_factory

        async def _session_override() -> AsyncIterator[AsyncSession]:
            async with factory() as session:
                yield session

        app.dependency_overrides[get_async_session] = _session_override

    store = store or build_store(settings)
    security = settings.security

    recorder = ActivityRecorder(session_factory, settings)
    rate_limiter = RateLimiter(store, security.rate_limit)
    brute_force = BruteForceGuard(
        store,
        security.brute_force,
        trust_forwarded_headers=security.rate_limit.trust_forwarded_headers,
    )
    sessions = SessionManager(store, security.session)
    csrf = CSRFTokenService(sessions, security.csrf)

    app.state.settings = settings
    app.state.owns_database = owns_database
    app.state.store = store
    app.state.recorder = recorder
    app.state.rate_limiter = rate_limiter
    app.state.brute_force = brute_force
    app.state.sessions = sessions
    app.state.csrf = csrf

    register_exception_handlers(app)

    # Middleware added last runs first. Request order:
    # ActivityLog -> RateLimit -> BruteForce -> Session -> CSRF -> handler
    app.add_middleware(CSRFMiddleware, service=csrf)
    app.add_middleware(SessionMiddleware, manager=sessions)
    app.add_middleware(BruteForceMiddleware, guard=brute_force)
    app.add_middleware(RateLimitMiddleware, limiter=rate_limiter)
    app.add_middleware(
        ActivityLogMiddleware,
        recorder=recorder,
        trust_forwarded_headers=settings.audit.trust_forwarded_headers,
    )

    app.include_router(csrf_router, prefix="/api")
    app.include_router(security_router, prefix="/api/security")
    app.include_router(audit_router, prefix="/api/admin/logs")

    # Health check endpoint (public, skip-listed from the audit trail)
    @app.get("/api/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint for monitoring."""
        database_ok = await check_database_health() if owns_database else True
        store_ok = await app.state.store.health_check()
        return {
            "status": "healthy" if database_ok and store_ok else "degraded",
            "version": settings.app_version,
            "environment": settings.environment.value,
            "database": database_ok,
            "store": store_ok,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    logger.info(
        "application.created",
        rate_limit=security.rate_limit.enabled,
        brute_force=security.brute_force.enabled,
        csrf=security.csrf.enabled,
        audit=settings.audit.enabled,
        redis=settings.redis.enabled,
    )
    return app


def create_app() -> FastAPI:
    """Factory for ``uvicorn storefront.main:create_app --factory``."""
    return create_application()
