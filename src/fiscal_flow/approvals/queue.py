"""Durable, priority-ordered queue of human decisions."""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

import structlog

from fiscal_flow.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
)
from fiscal_flow.events import EventBus, EventType, approval_decided, simple_event
from fiscal_flow.models import (
    OPEN_WORKFLOW_STAGES,
    ApprovalItem,
    ApprovalOutcome,
    ApprovalStatus,
    WorkflowStage,
)
from fiscal_flow.store import RecordStore

logger = structlog.get_logger(__name__)

TABLE = "approval_queue"


class ApprovalQueue:
    """Enqueue, list and decide approval items.

    Deciding is a compare-and-set on ``status = pending``; the loser of two
    concurrent decisions gets a ConflictError and the first outcome stands.
    Approvals are announced on the event bus, where the approval worker
    picks them up and resumes the workflow.
    """

    def __init__(self, store: RecordStore, bus: EventBus | None = None):
        self._store = store
        self._bus = bus
        self._logger = logger.bind(component="approval_queue")

    def new_item(
        self,
        tenant_id: UUID,
        agent_id: str,
        action_type: str,
        priority: int,
        payload: dict[str, Any],
        requested_by: UUID | None = None,
        workflow_request_id: UUID | None = None,
    ) -> ApprovalItem:
        """Build a pending item with a pre-assigned id, without persisting it."""
        return ApprovalItem(
            id=uuid4(),
            tenant_id=tenant_id,
            agent_id=agent_id,
            action_type=action_type,
            priority=priority,
            payload=payload,
            requested_by=requested_by,
            workflow_request_id=workflow_request_id,
            status=ApprovalStatus.PENDING,
        )

    def announce(self, item: ApprovalItem) -> None:
        """Publish the approval.requested event for a persisted item."""
        self._logger.info(
            "approval_requested",
            approval_id=str(item.id),
            priority=item.priority,
            action_type=item.action_type,
        )
        if self._bus is not None:
            self._bus.publish(
                simple_event(
                    EventType.APPROVAL_REQUESTED,
                    item.tenant_id,
                    approval_id=str(item.id),
                    priority=item.priority,
                    action_type=item.action_type,
                )
            )

    async def enqueue(
        self,
        tenant_id: UUID,
        agent_id: str,
        action_type: str,
        priority: int,
        payload: dict[str, Any],
        requested_by: UUID | None = None,
        workflow_request_id: UUID | None = None,
    ) -> ApprovalItem:
        """Insert a pending item.

        Raises:
            ConflictError: The workflow request already has an open item.
        """
        if workflow_request_id is not None:
            open_items = await self._store.count(
                TABLE,
                {"workflow_request_id": workflow_request_id, "status": ApprovalStatus.PENDING.value},
            )
            if open_items:
                raise ConflictError("Workflow request already has a pending approval")

        item = self.new_item(
            tenant_id, agent_id, action_type, priority, payload, requested_by, workflow_request_id
        )
        row = await self._store.insert(TABLE, item.to_row())
        item = ApprovalItem.from_row(row)
        self.announce(item)
        return item

    async def get(self, approval_id: Any, tenant_id: UUID | None = None) -> ApprovalItem:
        row = await self._store.get(TABLE, approval_id)
        if row is None:
            raise NotFoundError(f"Approval item {approval_id} not found")
        item = ApprovalItem.from_row(row)
        if tenant_id is not None and item.tenant_id != tenant_id:
            raise AuthorizationError("Approval item belongs to another tenant")
        return item

    async def list_pending(self, tenant_id: UUID) -> list[ApprovalItem]:
        """Pending items, most urgent first, oldest first within a priority."""
        rows = await self._store.select(
            TABLE,
            {"tenant_id": tenant_id, "status": ApprovalStatus.PENDING.value},
            order_by=("priority", "created_at"),
        )
        return [ApprovalItem.from_row(r) for r in rows]

    async def list_history(self, tenant_id: UUID, limit: int = 50) -> list[ApprovalItem]:
        """Decided items, most recently reviewed first."""
        rows = await self._store.select(
            TABLE,
            {
                "tenant_id": tenant_id,
                "status": (ApprovalStatus.APPROVED.value, ApprovalStatus.REJECTED.value),
            },
            order_by=("-reviewed_at",),
            limit=limit,
        )
        return [ApprovalItem.from_row(r) for r in rows]

    async def decide(
        self,
        approval_id: Any,
        outcome: ApprovalOutcome | str,
        reviewer_id: UUID | None,
        notes: str | None = None,
        tenant_id: UUID | None = None,
    ) -> ApprovalItem:
        """Approve or reject a pending item, exactly once.

        Raises:
            ConflictError: The item was already decided.
        """
        try:
            outcome = ApprovalOutcome(outcome)
        except ValueError as e:
            raise ValidationError(f"Unknown outcome: {outcome}") from e

        item = await self.get(approval_id, tenant_id)
        new_status = (
            ApprovalStatus.APPROVED if outcome == ApprovalOutcome.APPROVE else ApprovalStatus.REJECTED
        )
        try:
            row = await self._store.update(
                TABLE,
                item.id,
                {
                    "status": new_status.value,
                    "reviewed_by": reviewer_id,
                    "reviewed_at": datetime.now(UTC),
                    "review_notes": notes,
                },
                expected={"status": ApprovalStatus.PENDING.value},
            )
        except PreconditionFailedError as e:
            self._logger.info("approval_already_decided", approval_id=str(item.id))
            raise ConflictError("Approval item was already decided") from e

        decided = ApprovalItem.from_row(row)
        self._logger.info(
            "approval_decided",
            approval_id=str(decided.id),
            outcome=outcome.value,
            reviewer_id=str(reviewer_id) if reviewer_id else None,
        )

        if outcome == ApprovalOutcome.REJECT and decided.workflow_request_id is not None:
            await self._fail_workflow(decided.workflow_request_id)

        if self._bus is not None:
            self._bus.publish(
                approval_decided(
                    decided.tenant_id,
                    decided.id,
                    outcome.value,
                    reviewer_id,
                    decided.transaction_id,
                )
            )
        return decided

    async def _fail_workflow(self, workflow_request_id: UUID) -> None:
        try:
            await self._store.update(
                "workflow_requests",
                workflow_request_id,
                {
                    "stage": WorkflowStage.FAILED.value,
                    "failure_reason": "rejected",
                    "updated_at": datetime.now(UTC),
                },
                expected={"stage": OPEN_WORKFLOW_STAGES},
            )
        except (PreconditionFailedError, NotFoundError) as e:
            # The decision stands; the request was already terminal or removed.
            self._logger.warning(
                "workflow_not_failed",
                workflow_request_id=str(workflow_request_id),
                error=str(e),
            )
