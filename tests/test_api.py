"""Tests for the HTTP API."""

import asyncio
from unittest.mock import patch
from uuid import uuid4

import pytest
from conftest import CUSTOMER_ID, PARTNER_ID, REVIEWER_ID, USER_ID, transaction_row
from fastapi.testclient import TestClient

from fiscal_flow.api import create_app

USER = {"X-User-Id": str(USER_ID)}
REVIEWER = {"X-User-Id": str(REVIEWER_ID)}


def submit(client: TestClient, amount: str) -> dict:
    response = client.post(
        "/workflows/billing",
        headers=USER,
        json={
            "action": "submit_for_approval",
            "customerId": str(CUSTOMER_ID),
            "serviceDescription": "Bookkeeping",
            "amount": amount,
            "dueDate": "2026-11-30",
        },
    )
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def client(container) -> TestClient:
    return TestClient(create_app(container, run_worker=False))


class TestWorkflowRoutes:
    """Tests for the workflow endpoint."""

    def test_submit_inline(self, client):
        """Test a small amount completes in one call."""
        body = submit(client, "500")

        assert body["step"] == "completed"
        assert body["nfse"]["invoiceNumber"] == "PRIMARY-001"

    def test_unknown_action(self, client):
        """Test the error body of a rejected request."""
        response = client.post("/workflows/billing", headers=USER, json={"action": "launch"})

        assert response.status_code == 400
        assert response.json()["error"] == "Unknown action: launch"

    def test_missing_caller(self, client):
        """Test requests without a caller are forbidden."""
        response = client.post("/workflows/billing", json={"action": "start"})

        assert response.status_code == 403
        assert response.json() == {"error": "No tenant associated with this user"}

    def test_invalid_caller_header(self, client):
        """Test a malformed user id header."""
        response = client.post(
            "/workflows/billing", headers={"X-User-Id": "nope"}, json={"action": "start"}
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid X-User-Id header"}


class TestApprovalRoutes:
    """Tests for listing and deciding approvals."""

    def test_list_and_approve(self, client, container):
        """Test a queued item can be listed and approved once."""
        body = submit(client, "5000")

        listed = client.get("/approvals", headers=REVIEWER).json()
        assert [item["id"] for item in listed] == [body["approvalId"]]

        response = client.post(
            f"/approvals/{body['approvalId']}/decision",
            headers=REVIEWER,
            json={"outcome": "approve", "notes": "ok"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "approved"
        assert response.json()["reviewed_by"] == str(REVIEWER_ID)
        assert container.worker.pending == 1

        again = client.post(
            f"/approvals/{body['approvalId']}/decision",
            headers=REVIEWER,
            json={"outcome": "reject"},
        )
        assert again.status_code == 409
        assert again.json() == {"error": "Approval item was already decided"}

    def test_invalid_outcome(self, client):
        """Test body validation errors answer 400."""
        body = submit(client, "5000")

        response = client.post(
            f"/approvals/{body['approvalId']}/decision",
            headers=REVIEWER,
            json={"outcome": "maybe"},
        )

        assert response.status_code == 400
        assert "error" in response.json()

    def test_unknown_approval(self, client):
        """Test deciding a missing item."""
        response = client.post(
            f"/approvals/{uuid4()}/decision", headers=REVIEWER, json={"outcome": "approve"}
        )

        assert response.status_code == 404


class TestDocumentRoutes:
    """Tests for fiscal document endpoints."""

    def test_cancel(self, client, store, providers):
        """Test cancelling an issued document."""
        row = asyncio.run(
            store.insert(
                "transactions",
                transaction_row(
                    invoice_status="issued",
                    invoice_number="PRIMARY-001",
                    invoice_integration_id="primary-ref",
                    invoice_provider="primary",
                ),
            )
        )

        response = client.post(
            f"/transactions/{row['id']}/cancel",
            headers=USER,
            json={"reason": "Billed to the wrong customer"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert providers[0].cancelled == [("primary-ref", "Billed to the wrong customer")]

    def test_cancel_short_reason(self, client, store):
        """Test the reason length is enforced."""
        row = asyncio.run(store.insert("transactions", transaction_row(invoice_status="issued")))

        response = client.post(
            f"/transactions/{row['id']}/cancel", headers=USER, json={"reason": "wrong"}
        )

        assert response.status_code == 400

    def test_substitute_not_supported(self, client, store):
        """Test the refusal body carries the suggestion."""
        row = asyncio.run(
            store.insert(
                "transactions",
                transaction_row(
                    invoice_status="issued",
                    invoice_number="PRIMARY-001",
                    invoice_integration_id="primary-ref",
                    invoice_provider="primary",
                ),
            )
        )

        response = client.post(
            f"/transactions/{row['id']}/substitute",
            headers=USER,
            json={"reason": "Wrong service description", "amount": "750"},
        )

        assert response.status_code == 422
        assert response.json()["city_support"] is False

    def test_invoice_status(self, client):
        """Test reading the status of a freshly issued document."""
        body = submit(client, "500")

        response = client.get(f"/transactions/{body['transactionId']}/invoice-status", headers=USER)

        assert response.status_code == 200


class TestMonitorRoutes:
    """Tests for monitor and alert endpoints."""

    def test_monitor_run(self, client):
        """Test a pass with no partners."""
        response = client.post("/monitor/run")

        assert response.status_code == 200
        assert response.json() == {
            "partners_processed": 0,
            "clients_processed": 0,
            "clients_skipped": 0,
            "alerts_created": 0,
        }

    def test_alerts_list_and_resolve(self, client, store):
        """Test open alerts can be listed and resolved once."""
        alert = asyncio.run(
            store.insert(
                "alerts",
                {
                    "partner_id": PARTNER_ID,
                    "client_id": uuid4(),
                    "severity": "WARNING",
                    "message": "Acme: 25 uncategorized transactions",
                    "alert_type": "UNCATEGORIZED_COUNT",
                    "metadata": {},
                    "resolved": False,
                },
            )
        )

        listed = client.get(f"/partners/{PARTNER_ID}/alerts").json()
        assert [a["id"] for a in listed] == [str(alert["id"])]

        assert client.post(f"/alerts/{alert['id']}/resolve").status_code == 200
        assert client.post(f"/alerts/{alert['id']}/resolve").status_code == 409
        assert client.get(f"/partners/{PARTNER_ID}/alerts").json() == []

    def test_margin_analysis_unknown_client(self, client):
        """Test analysis for a client outside the partner."""
        response = client.post(
            f"/partners/{PARTNER_ID}/margin-analysis", params={"client_id": str(uuid4())}
        )

        assert response.status_code == 404
        assert response.json() == {"error": "Client not found"}

    def test_health(self, client):
        """Test the health endpoint."""
        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["worker_running"] is False
        assert body["scheduler"]["scheduled_jobs"] == ["proactive_monitor", "margin_analysis"]


class TestLifespan:
    """Tests for application startup."""

    def test_startup_configures_logging(self, container):
        """Test the application configures logging when it starts."""
        with patch("fiscal_flow.api.configure_logging") as configure:
            with TestClient(create_app(container, run_worker=False)) as client:
                assert client.get("/health").status_code == 200

        configure.assert_called_once_with()
