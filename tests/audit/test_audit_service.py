"""
Tests for the audit store.
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from pydantic import ValidationError

from storefront.audit.models import (
    ActivityAction,
    ActivityFilterParams,
    ActivityOutcome,
    ActivityRecord,
    ActivityRecordCreate,
    ImmutableRecordError,
)
from storefront.audit.service import AuditService, page_count
from storefront.db import utcnow

pytestmark = pytest.mark.unit


@pytest.fixture
def audit_service(async_db_session) -> AuditService:
    return AuditService(async_db_session)


class TestAuditService:
    """Test the audit service."""

    async def test_log_activity(self, audit_service: AuditService):
        """Test logging an activity."""
        user_id = uuid4()
        before = utcnow()

        record = await audit_service.log_activity(
            ActivityAction.LOGIN,
            status=ActivityOutcome.FAILURE,
            user_id=user_id,
            details={"url": "/api/auth/login"},
            ip_address="192.168.1.1",
            user_agent="Mozilla/5.0",
            method="POST",
            path="/api/auth/login",
            request_id="req-1",
        )

        assert record.id is not None
        assert record.action == "login"
        assert record.status == "failure"
        assert record.user_id == user_id
        assert record.details == {"url": "/api/auth/login"}
        assert record.ip_address == "192.168.1.1"
        assert record.timestamp >= before

    async def test_defaults(self, audit_service: AuditService):
        record = await audit_service.log_activity(ActivityAction.PRODUCT_VIEW)

        assert record.status == "success"
        assert record.ip_address == "unknown"
        assert record.user_id is None
        assert record.details == {}

    def test_create_rejects_caller_timestamp_and_unknown_actions(self):
        """The store assigns timestamps and the action set is closed."""
        with pytest.raises(ValidationError):
            ActivityRecordCreate(action="login", timestamp=utcnow())
        with pytest.raises(ValidationError):
            ActivityRecordCreate(action="teleport")

    async def test_records_are_immutable(self, audit_service: AuditService, async_db_session):
        record = await audit_service.log_activity(ActivityAction.LOGIN)

        record.status = "success-edited"
        with pytest.raises(ImmutableRecordError):
            await async_db_session.commit()

    async def test_get_activities_filters(self, audit_service: AuditService):
        user_id = uuid4()
        await audit_service.log_activity(
            ActivityAction.LOGIN, user_id=user_id, ip_address="1.1.1.1"
        )
        await audit_service.log_activity(
            ActivityAction.LOGIN, status=ActivityOutcome.FAILURE, ip_address="2.2.2.2"
        )
        await audit_service.log_activity(
            ActivityAction.ORDER_CREATE, user_id=user_id, path="/api/orders/checkout"
        )

        by_user = await audit_service.get_activities(ActivityFilterParams(user_id=user_id))
        by_action = await audit_service.get_activities(ActivityFilterParams(actions=["login"]))
        by_status = await audit_service.get_activities(
            ActivityFilterParams(status=ActivityOutcome.FAILURE)
        )
        by_ip = await audit_service.get_activities(ActivityFilterParams(ip_address="1.1.1.1"))
        by_path = await audit_service.get_activities(ActivityFilterParams(path_contains="checkout"))

        assert by_user.pagination.total == 2
        assert by_action.pagination.total == 2
        assert by_status.pagination.total == 1
        assert by_ip.activities[0].user_id == user_id
        assert by_path.activities[0].action == "order_create"

    async def test_date_range(self, audit_service: AuditService, async_db_session):
        now = utcnow()
        for days in (0, 3, 10):
            async_db_session.add(
                ActivityRecord(
                    action="login",
                    status="success",
                    details={},
                    ip_address="unknown",
                    timestamp=now - timedelta(days=days),
                )
            )
        await async_db_session.commit()

        page = await audit_service.get_activities(
            ActivityFilterParams(
                start_date=now - timedelta(days=5), end_date=now - timedelta(days=1)
            )
        )

        assert page.pagination.total == 1

    async def test_pagination_newest_first(self, audit_service: AuditService):
        for _ in range(5):
            await audit_service.log_activity(ActivityAction.PRODUCT_VIEW)

        first = await audit_service.get_activities(ActivityFilterParams(page=1, limit=2))
        last = await audit_service.get_activities(ActivityFilterParams(page=3, limit=2))
        beyond = await audit_service.get_activities(ActivityFilterParams(page=4, limit=2))

        assert first.pagination.model_dump() == {"page": 1, "limit": 2, "total": 5, "pages": 3}
        assert len(first.activities) == 2
        assert first.activities[0].timestamp >= first.activities[1].timestamp
        assert len(last.activities) == 1
        assert beyond.activities == []

    async def test_count_and_count_by_action(self, audit_service: AuditService):
        user_id = uuid4()
        await audit_service.log_activity(ActivityAction.LOGIN, user_id=user_id)
        await audit_service.log_activity(ActivityAction.LOGIN, user_id=user_id)
        await audit_service.log_activity(ActivityAction.LOGOUT, user_id=user_id)
        await audit_service.log_activity(ActivityAction.LOGIN)

        assert await audit_service.count() == 4
        assert await audit_service.count(user_id=user_id, actions=["login"]) == 2

        summary = await audit_service.count_by_action(user_id=user_id)
        assert {s.action: s.count for s in summary} == {"login": 2, "logout": 1}
        assert summary[0].action == "logout"

    async def test_purge(self, audit_service: AuditService, async_db_session):
        now = utcnow()
        async_db_session.add(
            ActivityRecord(
                action="login",
                status="success",
                details={},
                ip_address="unknown",
                timestamp=now - timedelta(days=100),
            )
        )
        await async_db_session.commit()
        await audit_service.log_activity(ActivityAction.LOGIN)

        deleted = await audit_service.purge(now - timedelta(days=90))

        assert deleted == 1
        assert await audit_service.count() == 1
        assert await audit_service.purge() == 1


def test_page_count():
    assert page_count(0, 50) == 0
    assert page_count(50, 50) == 1
    assert page_count(51, 50) == 2
