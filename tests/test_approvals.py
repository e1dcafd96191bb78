"""Tests for the approval queue."""

import asyncio
from uuid import uuid4

import pytest
from conftest import OTHER_TENANT_ID, REVIEWER_ID, TENANT_ID

from fiscal_flow.approvals import ApprovalQueue
from fiscal_flow.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from fiscal_flow.events import EventType
from fiscal_flow.models import ApprovalItem, ApprovalStatus


async def enqueue(queue: ApprovalQueue, priority: int = 5, **kwargs) -> ApprovalItem:
    return await queue.enqueue(
        tenant_id=TENANT_ID,
        agent_id="billing",
        action_type="issue_invoice",
        priority=priority,
        payload={"transactionId": str(uuid4())},
        **kwargs,
    )


class TestEnqueue:
    """Tests for adding items."""

    @pytest.mark.asyncio
    async def test_enqueue_publishes_request(self, store, bus):
        """Test enqueued items are pending and announced."""
        queue = ApprovalQueue(store, bus)

        item = await enqueue(queue)

        assert item.status == ApprovalStatus.PENDING
        assert item.created_at is not None
        (event,) = bus.get_events_by_type(EventType.APPROVAL_REQUESTED)
        assert event.data["approval_id"] == str(item.id)

    @pytest.mark.asyncio
    async def test_one_open_item_per_workflow(self, store):
        """Test a workflow request cannot hold two pending items."""
        queue = ApprovalQueue(store)
        workflow_request_id = uuid4()
        await enqueue(queue, workflow_request_id=workflow_request_id)

        with pytest.raises(ConflictError):
            await enqueue(queue, workflow_request_id=workflow_request_id)


class TestListing:
    """Tests for pending and history listings."""

    @pytest.mark.asyncio
    async def test_pending_ordered_by_priority_then_age(self, store):
        """Test the most urgent item comes first, oldest first within a priority."""
        queue = ApprovalQueue(store)
        first = await enqueue(queue, priority=5)
        urgent = await enqueue(queue, priority=2)
        second = await enqueue(queue, priority=5)

        pending = await queue.list_pending(TENANT_ID)

        assert [i.id for i in pending] == [urgent.id, first.id, second.id]

    @pytest.mark.asyncio
    async def test_pending_scoped_to_tenant(self, store):
        """Test other tenants' items are not listed."""
        queue = ApprovalQueue(store)
        await enqueue(queue)

        assert await queue.list_pending(OTHER_TENANT_ID) == []

    @pytest.mark.asyncio
    async def test_history_lists_decided_items(self, store):
        """Test decided items leave the pending list."""
        queue = ApprovalQueue(store)
        approved = await enqueue(queue)
        await enqueue(queue)
        await queue.decide(approved.id, "approve", REVIEWER_ID)

        history = await queue.list_history(TENANT_ID)

        assert [i.id for i in history] == [approved.id]
        assert len(await queue.list_pending(TENANT_ID)) == 1


class TestDecide:
    """Tests for approving and rejecting."""

    @pytest.mark.asyncio
    async def test_approve(self, store, bus):
        """Test approval records the reviewer and publishes the decision."""
        queue = ApprovalQueue(store, bus)
        item = await enqueue(queue)

        decided = await queue.decide(item.id, "approve", REVIEWER_ID, notes="ok")

        assert decided.status == ApprovalStatus.APPROVED
        assert decided.reviewed_by == REVIEWER_ID
        assert decided.reviewed_at is not None
        assert decided.review_notes == "ok"
        (event,) = bus.get_events_by_type(EventType.APPROVAL_DECIDED)
        assert event.approval_id == item.id
        assert event.outcome == "approve"
        assert event.transaction_id == item.transaction_id

    @pytest.mark.asyncio
    async def test_second_decision_conflicts(self, store):
        """Test the first decision stands."""
        queue = ApprovalQueue(store)
        item = await enqueue(queue)
        await queue.decide(item.id, "approve", REVIEWER_ID)

        with pytest.raises(ConflictError):
            await queue.decide(item.id, "reject", REVIEWER_ID)

        assert (await queue.get(item.id)).status == ApprovalStatus.APPROVED

    @pytest.mark.asyncio
    async def test_concurrent_decisions_single_winner(self, store, bus):
        """Test racing approve and reject produce exactly one decision."""
        queue = ApprovalQueue(store, bus)
        item = await enqueue(queue)

        results = await asyncio.gather(
            queue.decide(item.id, "approve", REVIEWER_ID),
            queue.decide(item.id, "reject", REVIEWER_ID),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, ApprovalItem)]
        losers = [r for r in results if isinstance(r, ConflictError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert len(bus.get_events_by_type(EventType.APPROVAL_DECIDED)) == 1
        assert (await queue.get(item.id)).status == winners[0].status

    @pytest.mark.asyncio
    async def test_reject_fails_workflow(self, store):
        """Test rejection moves the workflow request to failed."""
        queue = ApprovalQueue(store)
        workflow_request = await store.insert(
            "workflow_requests",
            {"tenant_id": TENANT_ID, "action": "billing", "stage": "pending_approval"},
        )
        item = await enqueue(queue, workflow_request_id=workflow_request["id"])

        await queue.decide(item.id, "reject", REVIEWER_ID)

        row = await store.get("workflow_requests", workflow_request["id"])
        assert row["stage"] == "failed"
        assert row["failure_reason"] == "rejected"

    @pytest.mark.asyncio
    async def test_unknown_outcome(self, store):
        """Test outcomes other than approve and reject are invalid."""
        queue = ApprovalQueue(store)
        item = await enqueue(queue)

        with pytest.raises(ValidationError):
            await queue.decide(item.id, "maybe", REVIEWER_ID)

    @pytest.mark.asyncio
    async def test_unknown_item(self, store):
        """Test deciding a missing item."""
        with pytest.raises(NotFoundError):
            await ApprovalQueue(store).decide(uuid4(), "approve", REVIEWER_ID)

    @pytest.mark.asyncio
    async def test_other_tenant(self, store):
        """Test reviewers cannot decide another tenant's items."""
        queue = ApprovalQueue(store)
        item = await enqueue(queue)

        with pytest.raises(AuthorizationError):
            await queue.decide(item.id, "approve", REVIEWER_ID, tenant_id=OTHER_TENANT_ID)
