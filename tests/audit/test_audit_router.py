"""
Integration tests for the admin activity log endpoints.
"""

from datetime import timedelta

import pytest
from httpx import AsyncClient

from storefront.audit.models import ActivityAction, ActivityOutcome, ActivityRecord
from storefront.audit.service import AuditService
from storefront.db import utcnow
from tests.conftest import fetch_csrf_token

pytestmark = pytest.mark.integration


@pytest.fixture
async def seeded(async_db_session, admin_user):
    audit = AuditService(async_db_session)
    await audit.log_activity(ActivityAction.LOGIN, user_id=admin_user.id, path="/api/auth/login")
    await audit.log_activity(
        ActivityAction.LOGIN, status=ActivityOutcome.FAILURE, path="/api/auth/login"
    )
    await audit.log_activity(ActivityAction.ORDER_CREATE, path="/api/orders")
    async_db_session.add(
        ActivityRecord(
            action="product_view",
            status="success",
            details={},
            ip_address="10.0.0.1",
            timestamp=utcnow() - timedelta(days=120),
        )
    )
    await async_db_session.commit()


@pytest.mark.usefixtures("as_admin", "seeded")
class TestActivityLogEndpoints:
    async def test_list_all(self, client: AsyncClient):
        response = await client.get("/api/admin/logs")

        assert response.status_code == 200
        body = response.json()
        assert body["pagination"] == {"page": 1, "limit": 50, "total": 4, "pages": 1}
        assert body["activities"][-1]["action"] == "product_view"

    async def test_filters(self, client: AsyncClient, admin_user):
        # Runs first: later requests are themselves recorded under the admin.
        mine = await client.get("/api/admin/logs", params={"user_id": str(admin_user.id)})
        by_action = await client.get("/api/admin/logs", params={"action": "login"})
        multi = await client.get(
            "/api/admin/logs", params=[("action", "login"), ("action", "order_create")]
        )
        failures = await client.get("/api/admin/logs", params={"status": "failure"})
        by_path = await client.get("/api/admin/logs", params={"path": "orders"})
        since = (utcnow() - timedelta(days=1)).isoformat()
        recent = await client.get(
            "/api/admin/logs",
            params=[("start", since), ("action", "login"), ("action", "product_view")],
        )

        assert by_action.json()["pagination"]["total"] == 2
        assert multi.json()["pagination"]["total"] == 3
        assert failures.json()["pagination"]["total"] == 1
        assert mine.json()["pagination"]["total"] == 1
        assert by_path.json()["pagination"]["total"] == 1
        assert recent.json()["pagination"]["total"] == 2

    async def test_pagination(self, client: AsyncClient):
        response = await client.get("/api/admin/logs", params={"page": 2, "limit": 3})

        assert response.json()["pagination"] == {"page": 2, "limit": 3, "total": 4, "pages": 2}
        assert len(response.json()["activities"]) == 1

    async def test_invalid_limit(self, client: AsyncClient):
        response = await client.get("/api/admin/logs", params={"limit": 5000})
        assert response.status_code == 422

    async def test_purge_old_records(self, client: AsyncClient, async_db_session):
        token = await fetch_csrf_token(client)
        cutoff = (utcnow() - timedelta(days=90)).isoformat()

        response = await client.delete(
            "/api/admin/logs", params={"before": cutoff}, headers={"X-CSRF-Token": token}
        )

        assert response.status_code == 200
        assert response.json() == {"deleted": 1}
        assert await AuditService(async_db_session).count(actions=["product_view"]) == 0

    async def test_purge_requires_cutoff(self, client: AsyncClient):
        token = await fetch_csrf_token(client)

        response = await client.delete("/api/admin/logs", headers={"X-CSRF-Token": token})

        assert response.status_code == 422


@pytest.mark.usefixtures("seeded")
async def test_requires_admin(client: AsyncClient):
    response = await client.get("/api/admin/logs")
    assert response.status_code == 401
