"""Per-client financial vitals and uncategorized transaction count."""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from fiscal_flow.models import PaymentStatus, TransactionType, as_date, as_decimal
from fiscal_flow.store import RecordStore, Row

PROJECTION_DAYS = 30
AP_WINDOW_DAYS = 7
AR_OVERDUE_DAYS = 30
CRITICAL_RUNWAY_DAYS = 7


@dataclass
class ClientVitals:
    cash_balance: Decimal
    ar_overdue_30d: Decimal
    ap_due_7d: Decimal
    min_projected_balance: Decimal
    days_to_negative: int | None
    cash_projection_status: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "cash_balance": self.cash_balance,
            "ar_overdue_30d": self.ar_overdue_30d,
            "ap_due_7d": self.ap_due_7d,
            "min_projected_balance": self.min_projected_balance,
            "days_to_negative": self.days_to_negative,
            "cash_projection_status": self.cash_projection_status,
        }


def _amount(row: Row) -> Decimal:
    value = row.get("net_amount")
    if value is None:
        value = row.get("gross_amount")
    return as_decimal(value) or Decimal("0")


def _is_paid(row: Row) -> bool:
    return bool(row.get("payment_date")) or row.get("status") == PaymentStatus.PAID.value


def compute_vitals(transactions: Iterable[Row], today: date) -> ClientVitals:
    """Compute cash position, receivable/payable pressure and a 30-day projection."""
    cash = Decimal("0")
    ar_overdue = Decimal("0")
    ap_due = Decimal("0")
    projections: dict[date, Decimal] = {}

    for row in transactions:
        amount = _amount(row)
        receivable = row.get("type") == TransactionType.RECEIVABLE.value
        signed = amount if receivable else -amount

        if _is_paid(row):
            cash += signed
            continue

        due = as_date(row.get("due_date"))
        if due is None:
            continue
        days = (due - today).days

        if receivable and days < -AR_OVERDUE_DAYS:
            ar_overdue += amount
        if not receivable and 0 <= days <= AP_WINDOW_DAYS:
            ap_due += amount
        if 0 <= days <= PROJECTION_DAYS:
            projections[due] = projections.get(due, Decimal("0")) + signed

    balance = cash
    min_balance = cash
    days_to_negative: int | None = 0 if cash < 0 else None
    for day in sorted(projections):
        balance += projections[day]
        min_balance = min(min_balance, balance)
        if days_to_negative is None and balance < 0:
            days_to_negative = (day - today).days

    if days_to_negative is None:
        status = "HEALTHY"
    elif days_to_negative <= CRITICAL_RUNWAY_DAYS:
        status = "CRITICAL"
    else:
        status = "WARNING"

    return ClientVitals(
        cash_balance=cash,
        ar_overdue_30d=ar_overdue,
        ap_due_7d=ap_due,
        min_projected_balance=min_balance,
        days_to_negative=days_to_negative,
        cash_projection_status=status,
    )


async def fetch_client_transactions(store: RecordStore, client_id: Any) -> list[Row]:
    """Transactions where the client is the customer or the supplier."""
    rows: dict[str, Row] = {}
    for column in ("customer_id", "supplier_id"):
        for row in await store.select("transactions", {column: client_id}):
            rows[str(row["id"])] = row
    return list(rows.values())


async def get_client_vitals(
    store: RecordStore, client_id: Any, today: date | None = None
) -> ClientVitals:
    transactions = await fetch_client_transactions(store, client_id)
    return compute_vitals(transactions, today or date.today())


async def get_uncategorized_count(store: RecordStore, client_id: Any) -> int:
    """Count transactions missing a category or a description."""
    transactions = await fetch_client_transactions(store, client_id)
    return sum(
        1
        for row in transactions
        if row.get("category_id") is None or not str(row.get("description") or "").strip()
    )
