"""
Shared fixtures for the storefront security pipeline tests.

Each test gets its own SQLite file, an in-process key-value store driven by a
fake clock, and an application wired to both.
"""

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from fastapi import FastAPI, Request
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from storefront.auth.core import UserInfo, get_current_user
from storefront.db import create_all_tables_async
from storefront.main import create_application
from storefront.security.store import MemoryKeyValueStore
from storefront.settings import Settings
from storefront.users.models import User, UserRole


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the developer's environment and .env file."""
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        environment="test",
        testing=True,
        observability={"log_level": "WARNING", "log_format": "console"},
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryKeyValueStore:
    return MemoryKeyValueStore(clock=clock)


@pytest_asyncio.fixture
async def async_db_engine(tmp_path: Any) -> AsyncIterator[AsyncEngine]:
    """Async engine on a per-test SQLite file so concurrent sessions see one schema."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'storefront-test.db'}",
        connect_args={"check_same_thread": False},
    )
    await create_all_tables_async(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(async_db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=async_db_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def async_db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[User]]:
    """Factory persisting a user and returning it detached."""

    async def _make_user(email: str | None = None, **fields: Any) -> User:
        fields.setdefault("name", "Test User")
        fields.setdefault("role", UserRole.USER.value)
        user = User(email=email or f"user-{uuid4().hex[:8]}@example.com", **fields)
        async with session_factory() as session:
            session.add(user)
            await session.commit()
        return user

    return _make_user


@pytest_asyncio.fixture
async def admin_user(make_user: Callable[..., Awaitable[User]]) -> User:
    return await make_user("admin@example.com", role=UserRole.ADMIN.value, name="Admin")


@pytest.fixture
def app(
    test_settings: Settings,
    store: MemoryKeyValueStore,
    session_factory: async_sessionmaker[AsyncSession],
) -> FastAPI:
    return create_application(test_settings, store=store, session_factory=session_factory)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    """HTTP client over ASGI. Pending audit writes are drained on teardown."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    await app.state.recorder.drain()


def authenticate(app: FastAPI, principal: UserInfo) -> None:
    """Stand in for the upstream authentication layer."""

    async def _current_user(request: Request) -> UserInfo:
        request.state.user = principal
        return principal

    app.dependency_overrides[get_current_user] = _current_user


@pytest.fixture
def admin_principal(admin_user: User) -> UserInfo:
    return UserInfo(user_id=admin_user.id, email=admin_user.email, role=UserRole.ADMIN)


@pytest.fixture
def as_admin(app: FastAPI, admin_principal: UserInfo) -> UserInfo:
    authenticate(app, admin_principal)
    return admin_principal


async def fetch_csrf_token(client: AsyncClient) -> str:
    """Open a session and return its anti-forgery token."""
    response = await client.get("/api/csrf-token")
    assert response.status_code == 200
    return response.json()["csrfToken"]
