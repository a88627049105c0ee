"""
Tests for application assembly, health and error rendering.
"""

from uuid import uuid4

import pytest
from fastapi import FastAPI
from httpx import AsyncClient
from starlette.requests import Request

from storefront.audit.recorder import ActivityRecorder
from storefront.auth.core import UserInfo, request_user
from storefront.exceptions import (
    BruteForceBlockedError,
    CSRFValidationError,
    RateLimitExceededError,
    UserNotFoundError,
    error_response,
)
from storefront.security.brute_force import BruteForceGuard
from storefront.security.csrf import CSRFTokenService
from storefront.security.rate_limit import RateLimiter
from storefront.security.sessions import SessionManager
from storefront.users.models import UserRole


@pytest.mark.integration
async def test_health(client: AsyncClient, app: FastAPI):
    response = await client.get("/api/health")
    await app.state.recorder.drain()

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["database"] is True
    assert body["store"] is True
    assert body["environment"] == "test"


@pytest.mark.unit
def test_components_on_app_state(app: FastAPI, store):
    assert app.state.store is store
    assert isinstance(app.state.recorder, ActivityRecorder)
    assert isinstance(app.state.rate_limiter, RateLimiter)
    assert isinstance(app.state.brute_force, BruteForceGuard)
    assert isinstance(app.state.sessions, SessionManager)
    assert isinstance(app.state.csrf, CSRFTokenService)
    assert app.state.owns_database is False


@pytest.mark.unit
class TestErrorResponses:
    def test_rate_limit_sets_retry_after(self):
        response = error_response(RateLimitExceededError("Too many requests", retry_after=42))

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.body == b'{"message":"Too many requests","retryAfter":42}'

    @pytest.mark.parametrize(
        ("exc", "status_code"),
        [
            (BruteForceBlockedError("Too many attempts", address="10.0.0.1"), 429),
            (CSRFValidationError(reason="missing"), 403),
            (UserNotFoundError("nope"), 404),
        ],
    )
    def test_context_never_rendered(self, exc, status_code):
        response = error_response(exc)

        assert response.status_code == status_code
        assert "Retry-After" not in response.headers
        assert response.body == f'{{"message":"{exc.message}"}}'.encode()


@pytest.mark.unit
class TestRequestUser:
    def _request(self, user=None) -> Request:
        state = {} if user is None else {"user": user}
        return Request(
            {"type": "http", "method": "GET", "path": "/", "headers": [], "state": state}
        )

    def test_missing(self):
        assert request_user(self._request()) is None

    def test_user_info(self):
        principal = UserInfo(user_id=uuid4(), role=UserRole.ADMIN)
        assert request_user(self._request(principal)) is principal

    def test_dict_is_validated(self):
        user_id = uuid4()
        user = request_user(self._request({"user_id": str(user_id), "role": "admin"}))

        assert user is not None
        assert user.user_id == user_id
        assert user.is_admin

    def test_other_types_ignored(self):
        assert request_user(self._request("not-a-user")) is None
