"""Tests for the billing workflow."""

from decimal import Decimal
from unittest.mock import patch
from uuid import uuid4

import pytest
from conftest import CUSTOMER_ID, OTHER_TENANT_ID, TENANT_ID, USER_ID, transaction_row

from fiscal_flow.errors import ProviderError, StoreError
from fiscal_flow.workflow import CallerContext

CALLER = CallerContext(user_id=USER_ID)


def billing(action: str = "submit_for_approval", amount: str = "500", **extra) -> dict:
    return {
        "action": action,
        "customerId": str(CUSTOMER_ID),
        "serviceDescription": "Monthly advisory",
        "amount": amount,
        "dueDate": "2026-11-30",
        **extra,
    }


class TestTenantResolution:
    """Tests for resolving the caller's tenant."""

    @pytest.mark.asyncio
    async def test_tenant_from_profile(self, container):
        """Test the tenant comes from the caller's profile."""
        assert await container.workflow.resolve_tenant(CALLER) == TENANT_ID

    @pytest.mark.asyncio
    async def test_unknown_user_forbidden(self, container, store):
        """Test a user without a profile gets 403 and no log row."""
        status, body = await container.workflow.handle(
            {"action": "start"}, CallerContext(user_id=uuid4())
        )

        assert status == 403
        assert body == {"error": "No tenant associated with this user"}
        assert store.rows("execution_logs") == []


class TestStartAndPrepare:
    """Tests for the gather and preview stages."""

    @pytest.mark.asyncio
    async def test_start_lists_reference_data(self, container):
        """Test start returns customers and the questions to ask."""
        status, body = await container.workflow.handle({"action": "start"}, CALLER)

        assert status == 200
        assert body["step"] == "gather_info"
        assert body["customers"] == [
            {"id": str(CUSTOMER_ID), "name": "Acme Ltda", "email": "billing@acme.example"}
        ]
        assert [q["field"] for q in body["questions"]] == [
            "customerId",
            "serviceDescription",
            "amount",
            "dueDate",
        ]

    @pytest.mark.asyncio
    async def test_prepare_preview(self, container):
        """Test prepare computes taxes without writing records."""
        status, body = await container.workflow.handle(billing("prepare"), CALLER)

        assert status == 200
        assert body["step"] == "preview"
        assert body["canAutoApprove"] is True
        assert body["preview"]["customer"]["name"] == "Acme Ltda"
        assert body["preview"]["service"]["grossAmount"] == "500.00"
        assert body["preview"]["issuer"]["cnpj"] == "98765432000111"

    @pytest.mark.asyncio
    async def test_prepare_large_amount(self, container, store):
        """Test large amounts are flagged as needing approval."""
        status, body = await container.workflow.handle(billing("prepare", "1500"), CALLER)

        assert status == 200
        assert body["canAutoApprove"] is False
        assert store.rows("transactions") == []

    @pytest.mark.asyncio
    async def test_prepare_customer_of_other_tenant(self, container):
        """Test a customer outside the tenant is not found."""
        status, body = await container.workflow.handle(
            billing("prepare"), CallerContext(user_id=USER_ID, tenant_id=OTHER_TENANT_ID)
        )

        assert status == 404
        assert body == {"error": "Customer not found"}


class TestSubmit:
    """Tests for submit_for_approval."""

    @pytest.mark.asyncio
    async def test_below_threshold_executes_inline(self, container, store, providers):
        """Test small amounts complete without an approval item."""
        status, body = await container.workflow.handle(billing(amount="500"), CALLER)

        assert status == 200
        assert body["step"] == "completed"
        assert body["requiresApproval"] is False
        assert body["nfse"]["providerUsed"] == "primary"
        assert body["nfse"]["invoiceNumber"] == "PRIMARY-001"
        assert store.rows("approval_queue") == []
        assert len(providers[0].issued) == 1

        transaction = await store.get("transactions", body["transactionId"])
        assert transaction["invoice_number"] == "PRIMARY-001"
        assert transaction["net_amount"] == Decimal("460.00")

        (workflow_request,) = store.rows("workflow_requests")
        assert workflow_request["stage"] == "completed"
        assert str(workflow_request["id"]) == body["workflowRequestId"]

    @pytest.mark.asyncio
    async def test_exactly_one_log_row(self, container, store):
        """Test one execution log row per invocation."""
        await container.workflow.handle(billing(amount="500"), CALLER)

        (log,) = store.rows("execution_logs")
        assert log["status"] == "success"
        assert log["action_type"] == "submit_for_approval"
        assert log["agent_id"] == "billing"
        assert log["user_id"] == USER_ID

    @pytest.mark.asyncio
    async def test_at_threshold_queues_approval(self, container, store, providers):
        """Test amounts at or above the threshold wait for a reviewer."""
        status, body = await container.workflow.handle(billing(amount="5000"), CALLER)

        assert status == 200
        assert body["step"] == "pending_approval"
        assert body["requiresApproval"] is True
        assert providers[0].issued == []

        (item,) = store.rows("approval_queue")
        assert str(item["id"]) == body["approvalId"]
        assert item["status"] == "pending"
        assert item["priority"] == 5
        assert item["payload"]["transactionId"] == body["transactionId"]

        transaction = await store.get("transactions", body["transactionId"])
        assert transaction["invoice_status"] == "pending"
        assert transaction["invoice_number"] is None

        (log,) = store.rows("execution_logs")
        assert log["status"] == "pending_approval"
        assert str(log["approval_id"]) == body["approvalId"]

    @pytest.mark.asyncio
    async def test_urgent_priority(self, container, store):
        """Test amounts above the urgent limit jump the queue."""
        await container.workflow.handle(billing(amount="25000"), CALLER)

        (item,) = store.rows("approval_queue")
        assert item["priority"] == 2

    def test_priority_for(self, container):
        """Test the priority boundary is exclusive."""
        assert container.workflow.priority_for(Decimal("10000")) == 5
        assert container.workflow.priority_for(Decimal("10000.01")) == 2

    @pytest.mark.asyncio
    async def test_tenant_threshold_override(self, container, store):
        """Test an automation rule lowers the auto-approve threshold."""
        await store.insert(
            "automation_rules",
            {"tenant_id": TENANT_ID, "agent_id": "billing", "is_active": True, "auto_approve_below": 100},
        )

        status, body = await container.workflow.handle(billing(amount="500"), CALLER)

        assert status == 200
        assert body["step"] == "pending_approval"

    @pytest.mark.asyncio
    async def test_service_category_created_once(self, container, store):
        """Test the default category is created and then reused."""
        await container.workflow.handle(billing(amount="500"), CALLER)
        await container.workflow.handle(billing(amount="600"), CALLER)

        categories = store.rows("categories")
        assert [c["name"] for c in categories] == ["Services"]
        assert {t["category_id"] for t in store.rows("transactions")} == {categories[0]["id"]}

    @pytest.mark.asyncio
    async def test_notification_scheduled(self, container, store):
        """Test the customer gets an email notification."""
        status, body = await container.workflow.handle(billing(amount="500"), CALLER)

        (notification,) = store.rows("notifications")
        assert notification["recipient_email"] == "billing@acme.example"
        assert notification["status"] == "scheduled"
        assert "Email scheduled" in body["message"]

    @pytest.mark.asyncio
    async def test_invalid_request(self, container, store):
        """Test validation errors are logged as errors."""
        status, body = await container.workflow.handle(billing(amount="0"), CALLER)

        assert status == 400
        assert "greater than zero" in body["error"]
        (log,) = store.rows("execution_logs")
        assert log["status"] == "error"
        assert log["error_message"] == body["error"]

    @pytest.mark.asyncio
    async def test_issuance_failure_fails_workflow(self, container, store):
        """Test a gateway failure marks the workflow request failed."""
        with patch.object(
            container.gateway, "issue", side_effect=ProviderError("primary", "HTTP 500")
        ):
            status, body = await container.workflow.handle(billing(amount="500"), CALLER)

        assert status == 502
        assert body["error"] == "primary: HTTP 500"
        (workflow_request,) = store.rows("workflow_requests")
        assert workflow_request["stage"] == "failed"
        assert workflow_request["failure_reason"] == "primary: HTTP 500"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(self, container, store):
        """Test unexpected failures answer 500 without leaking details."""
        with patch.object(container.gateway, "issue", side_effect=RuntimeError("db exploded")):
            status, body = await container.workflow.handle(billing(amount="500"), CALLER)

        assert status == 500
        assert body == {"error": "Internal error"}
        (log,) = store.rows("execution_logs")
        assert log["error_message"] == "db exploded"


class TestExecuteApproved:
    """Tests for execute_approved."""

    @pytest.mark.asyncio
    async def test_pending_item_conflicts(self, container):
        """Test executing an undecided item is refused."""
        _, body = await container.workflow.handle(billing(amount="5000"), CALLER)

        status, result = await container.workflow.handle(
            {"action": "execute_approved", "approvalId": body["approvalId"]}, CALLER
        )

        assert status == 409
        assert "pending" in result["error"]

    @pytest.mark.asyncio
    async def test_approved_item_executes(self, container, store):
        """Test an approved item issues the document and completes the workflow."""
        _, body = await container.workflow.handle(billing(amount="5000"), CALLER)
        await container.queue.decide(body["approvalId"], "approve", USER_ID)

        status, result = await container.workflow.handle(
            {"action": "execute_approved", "approvalId": body["approvalId"]}, CALLER
        )

        assert status == 200
        assert result["step"] == "completed"
        assert result["transactionId"] == body["transactionId"]
        (workflow_request,) = store.rows("workflow_requests")
        assert workflow_request["stage"] == "completed"

    @pytest.mark.asyncio
    async def test_execute_by_transaction(self, container, store):
        """Test a bare transaction id can be executed."""
        row = await store.insert("transactions", transaction_row())

        status, result = await container.workflow.handle(
            {"action": "execute_approved", "transactionId": str(row["id"])}, CALLER
        )

        assert status == 200
        assert result["nfse"]["invoiceNumber"] == "PRIMARY-001"

    @pytest.mark.asyncio
    async def test_second_execution_conflicts(self, container, providers):
        """Test a completed workflow is not executed again."""
        _, body = await container.workflow.handle(billing(amount="5000"), CALLER)
        await container.queue.decide(body["approvalId"], "approve", USER_ID)
        payload = {"action": "execute_approved", "approvalId": body["approvalId"]}
        await container.workflow.handle(payload, CALLER)

        status, _ = await container.workflow.handle(payload, CALLER)

        assert status == 409
        assert len(providers[0].issued) == 1

    @pytest.mark.asyncio
    async def test_already_issued_transaction(self, container, store):
        """Test re-executing an issued transaction reports the existing document."""
        row = await store.insert(
            "transactions",
            transaction_row(invoice_number="NF-9", invoice_key="K-9", invoice_status="issued"),
        )

        status, result = await container.workflow.handle(
            {"action": "execute_approved", "transactionId": str(row["id"])}, CALLER
        )

        assert status == 409
        assert result["invoiceNumber"] == "NF-9"
        assert result["invoiceKey"] == "K-9"


class TestExecutionFailures:
    """Tests for failures after the workflow unit was committed."""

    @staticmethod
    def failing_insert(store, table_name: str):
        original_insert = store.insert

        async def insert(table, row):
            if table == table_name:
                raise StoreError("store unavailable")
            return await original_insert(table, row)

        return insert

    @pytest.mark.asyncio
    async def test_notification_failure_still_completes(self, container, store):
        """Test a failed notification does not stop the workflow."""
        with patch.object(
            store, "insert", side_effect=self.failing_insert(store, "notifications")
        ):
            status, body = await container.workflow.handle(billing(amount="500"), CALLER)

        assert status == 200
        assert body["step"] == "completed"
        assert "Email scheduled" not in body["message"]
        (workflow_request,) = store.rows("workflow_requests")
        assert workflow_request["stage"] == "completed"

    @pytest.mark.asyncio
    async def test_failure_after_issuance_fails_workflow(self, container, store, providers):
        """Test an error after the document was issued moves the request to failed."""
        _, body = await container.workflow.handle(billing(amount="5000"), CALLER)
        await container.queue.decide(body["approvalId"], "approve", USER_ID)
        payload = {"action": "execute_approved", "approvalId": body["approvalId"]}

        with patch.object(
            store, "insert", side_effect=self.failing_insert(store, "issuance_logs")
        ):
            status, result = await container.workflow.handle(payload, CALLER)

        assert status == 500
        assert result == {"error": "store unavailable"}
        (workflow_request,) = store.rows("workflow_requests")
        assert workflow_request["stage"] == "failed"
        assert workflow_request["failure_reason"] == "store unavailable"
        transaction = await store.get("transactions", body["transactionId"])
        assert transaction["invoice_number"] == "PRIMARY-001"

        status, result = await container.workflow.handle(payload, CALLER)

        assert status == 409
        assert len(providers[0].issued) == 1

    @pytest.mark.asyncio
    async def test_resume_after_issuance(self, container, store, providers):
        """Test a request stopped after issuance completes without issuing again."""
        _, body = await container.workflow.handle(billing(amount="5000"), CALLER)
        await container.queue.decide(body["approvalId"], "approve", USER_ID)
        (workflow_request,) = store.rows("workflow_requests")
        await store.update("workflow_requests", workflow_request["id"], {"stage": "executing"})
        await store.update(
            "transactions",
            body["transactionId"],
            {
                "invoice_number": "NF-77",
                "invoice_key": "K-77",
                "invoice_integration_id": "primary-77",
                "invoice_provider": "primary",
                "invoice_status": "processing",
            },
        )

        status, result = await container.workflow.handle(
            {"action": "execute_approved", "approvalId": body["approvalId"]}, CALLER
        )

        assert status == 200
        assert result["step"] == "completed"
        assert result["nfse"]["invoiceNumber"] == "NF-77"
        assert result["nfse"]["providerUsed"] == "primary"
        assert providers[0].issued == []
        (workflow_request,) = store.rows("workflow_requests")
        assert workflow_request["stage"] == "completed"
        assert len(store.rows("notifications")) == 1

    @pytest.mark.asyncio
    async def test_provider_body_not_returned(self, container):
        """Test raw provider responses stay out of the error body."""
        error = ProviderError(
            "primary", "HTTP 400", status_code=400, details={"error": "raw body", "token": "t-1"}
        )
        with patch.object(container.gateway, "issue", side_effect=error):
            status, body = await container.workflow.handle(billing(amount="500"), CALLER)

        assert status == 502
        assert body == {"error": "primary: HTTP 400"}
