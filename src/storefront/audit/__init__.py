"""
Audit trail for the storefront security pipeline.

Every request that is not skip-listed produces exactly one immutable activity
record, written off the response path.

Usage Examples:

    # Declare the action of a route instead of relying on path heuristics
    from storefront.audit import ActivityAction, audit_action

    @router.post("/checkout")
    @audit_action(ActivityAction.ORDER_CREATE)
    async def checkout(...): ...

    # Query the store
    from storefront.audit import ActivityFilterParams, AuditService

    page = await AuditService(session).get_activities(
        ActivityFilterParams(actions=["login"], status="failure")
    )
"""

from .models import (
    ActionSummary,
    ActivityAction,
    ActivityFilterParams,
    ActivityOutcome,
    ActivityPage,
    ActivityRecord,
    ActivityRecordCreate,
    ActivityRecordResponse,
    ImmutableRecordError,
    Pagination,
)
from .recorder import ActivityRecorder, RequestContext, audit_action, declared_action_for
from .service import AuditService

__all__ = [
    # Models
    "ActionSummary",
    "ActivityAction",
    "ActivityFilterParams",
    "ActivityOutcome",
    "ActivityPage",
    "ActivityRecord",
    "ActivityRecordCreate",
    "ActivityRecordResponse",
    "ImmutableRecordError",
    "Pagination",
    # Service
    "AuditService",
    # Recorder
    "ActivityRecorder",
    "RequestContext",
    "audit_action",
    "declared_action_for",
]
