"""Tests for client vitals."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from fiscal_flow.monitor import compute_vitals, get_client_vitals, get_uncategorized_count
from fiscal_flow.store import InMemoryRecordStore

TODAY = date(2026, 10, 18)


def tx(kind: str, amount: str, due: date | None = None, paid: bool = False, **extra) -> dict:
    row = {"type": kind, "net_amount": Decimal(amount), "due_date": due, "status": "PENDING"}
    if paid:
        row["payment_date"] = due or TODAY
    row.update(extra)
    return row


class TestComputeVitals:
    """Tests for the vitals computation."""

    def test_mixed_ledger(self):
        """Test cash, overdue receivables, payables due and the projection."""
        vitals = compute_vitals(
            [
                tx("RECEIVABLE", "1000", date(2026, 10, 1), paid=True),
                tx("PAYABLE", "300", date(2026, 10, 5), status="PAID"),
                tx("RECEIVABLE", "200", date(2026, 9, 1)),
                tx("PAYABLE", "900", date(2026, 10, 22)),
                tx("RECEIVABLE", "500", date(2026, 11, 10)),
                tx("PAYABLE", "5000", date(2026, 12, 31)),
            ],
            TODAY,
        )

        assert vitals.cash_balance == Decimal("700")
        assert vitals.ar_overdue_30d == Decimal("200")
        assert vitals.ap_due_7d == Decimal("900")
        assert vitals.min_projected_balance == Decimal("-200")
        assert vitals.days_to_negative == 4
        assert vitals.cash_projection_status == "CRITICAL"

    def test_healthy(self):
        """Test a client that never goes negative."""
        vitals = compute_vitals([tx("RECEIVABLE", "1000", paid=True)], TODAY)

        assert vitals.days_to_negative is None
        assert vitals.min_projected_balance == Decimal("1000")
        assert vitals.cash_projection_status == "HEALTHY"

    def test_already_negative(self):
        """Test negative cash means zero days of runway."""
        vitals = compute_vitals([tx("PAYABLE", "100", paid=True)], TODAY)

        assert vitals.cash_balance == Decimal("-100")
        assert vitals.days_to_negative == 0
        assert vitals.cash_projection_status == "CRITICAL"

    def test_warning_runway(self):
        """Test a shortfall beyond a week is a warning."""
        vitals = compute_vitals(
            [tx("RECEIVABLE", "100", paid=True), tx("PAYABLE", "150", date(2026, 10, 28))],
            TODAY,
        )

        assert vitals.days_to_negative == 10
        assert vitals.cash_projection_status == "WARNING"

    def test_gross_amount_fallback(self):
        """Test rows without a net amount use the gross amount."""
        vitals = compute_vitals(
            [{"type": "RECEIVABLE", "gross_amount": "250.50", "payment_date": "2026-10-01"}],
            TODAY,
        )

        assert vitals.cash_balance == Decimal("250.50")

    def test_to_dict(self):
        """Test the vitals mapping keys."""
        result = compute_vitals([], TODAY).to_dict()

        assert set(result) == {
            "cash_balance",
            "ar_overdue_30d",
            "ap_due_7d",
            "min_projected_balance",
            "days_to_negative",
            "cash_projection_status",
        }


class TestStoreQueries:
    """Tests for the store-backed helpers."""

    @pytest.mark.asyncio
    async def test_client_as_customer_and_supplier(self):
        """Test both sides of the client's transactions are included."""
        client_id = uuid4()
        store = InMemoryRecordStore(
            {
                "transactions": [
                    tx("RECEIVABLE", "400", paid=True, customer_id=client_id),
                    tx("PAYABLE", "100", paid=True, supplier_id=client_id),
                    tx("RECEIVABLE", "999", paid=True, customer_id=uuid4()),
                ]
            }
        )

        vitals = await get_client_vitals(store, client_id, TODAY)

        assert vitals.cash_balance == Decimal("300")

    @pytest.mark.asyncio
    async def test_uncategorized_count(self):
        """Test missing categories and blank descriptions are counted."""
        client_id = uuid4()
        category_id = uuid4()
        store = InMemoryRecordStore(
            {
                "transactions": [
                    tx("RECEIVABLE", "1", customer_id=client_id, category_id=None, description="a"),
                    tx("RECEIVABLE", "1", customer_id=client_id, category_id=category_id, description="  "),
                    tx("RECEIVABLE", "1", customer_id=client_id, category_id=category_id, description="ok"),
                ]
            }
        )

        assert await get_uncategorized_count(store, client_id) == 2
