"""Record types persisted in the record store.

Rows travel through the store as plain dicts. The dataclasses here give the
services typed access to them: ``from_row`` coerces the loosely-typed values
a remote store hands back (strings for UUIDs, decimals and timestamps) and
``to_row`` flattens enums back to their stored values.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, fields
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Self
from uuid import UUID


class WorkflowStage(str, Enum):
    """Stages of a workflow request."""

    GATHERING = "gathering"
    PREVIEW = "preview"
    PENDING_APPROVAL = "pending_approval"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStage.COMPLETED, WorkflowStage.FAILED)


OPEN_WORKFLOW_STAGES = tuple(s.value for s in WorkflowStage if not s.is_terminal)


class InvoiceStatus(str, Enum):
    """Fiscal sub-state of a transaction."""

    PENDING = "pending"
    PROCESSING = "processing"
    ISSUED = "issued"
    REPLACED = "replaced"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalOutcome(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class TransactionType(str, Enum):
    RECEIVABLE = "RECEIVABLE"
    PAYABLE = "PAYABLE"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class RuleType(str, Enum):
    """Rule types a partner can configure."""

    PROJECT_MARGIN_WARNING = "PROJECT_MARGIN_WARNING"
    PROJECT_MARGIN_CRITICAL = "PROJECT_MARGIN_CRITICAL"
    HOURS_OVERRUN_WARNING = "HOURS_OVERRUN_WARNING"
    HOURS_OVERRUN_CRITICAL = "HOURS_OVERRUN_CRITICAL"
    CASH_CRITICAL = "CASH_CRITICAL"
    AR_OVERDUE_WARNING = "AR_OVERDUE_WARNING"
    UNCATEGORIZED_COUNT = "UNCATEGORIZED_COUNT"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    PENDING_APPROVAL = "pending_approval"
    ERROR = "error"


# === Value coercion ===


def as_uuid(value: Any) -> UUID | None:
    """Coerce a stored identifier to a UUID."""
    if value is None or value == "":
        return None
    if isinstance(value, UUID):
        return value
    return UUID(str(value))


def as_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def as_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def as_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Record:
    """Base for typed views over store rows."""

    _converters: ClassVar[dict[str, Callable[[Any], Any]]] = {}

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Self:
        names = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in row.items():
            if key not in names:
                continue
            converter = cls._converters.get(key)
            values[key] = converter(value) if converter and value is not None else value
        return cls(**values)

    def to_row(self) -> dict[str, Any]:
        row: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            row[f.name] = value.value if isinstance(value, Enum) else value
        return row


# === Workflow & approvals ===


@dataclass
class WorkflowRequest(Record):
    """One in-flight instance of a named action."""

    tenant_id: UUID
    action: str
    stage: WorkflowStage = WorkflowStage.GATHERING
    transaction_id: UUID | None = None
    created_by: UUID | None = None
    failure_reason: str | None = None
    id: UUID | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    _converters: ClassVar[dict[str, Callable[[Any], Any]]] = {
        "id": as_uuid,
        "tenant_id": as_uuid,
        "transaction_id": as_uuid,
        "created_by": as_uuid,
        "stage": WorkflowStage,
        "created_at": as_datetime,
        "updated_at": as_datetime,
    }


@dataclass
class ApprovalItem(Record):
    """A queued human decision."""

    tenant_id: UUID
    agent_id: str
    action_type: str
    priority: int
    payload: dict[str, Any] = field(default_factory=dict)
    requested_by: UUID | None = None
    workflow_request_id: UUID | None = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    reviewed_by: UUID | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None
    id: UUID | None = None
    created_at: datetime | None = None

    _converters: ClassVar[dict[str, Callable[[Any], Any]]] = {
        "id": as_uuid,
        "tenant_id": as_uuid,
        "requested_by": as_uuid,
        "workflow_request_id": as_uuid,
        "reviewed_by": as_uuid,
        "status": ApprovalStatus,
        "priority": int,
        "reviewed_at": as_datetime,
        "created_at": as_datetime,
    }

    @property
    def transaction_id(self) -> UUID | None:
        return as_uuid(self.payload.get("transactionId"))


# === Financial records ===


@dataclass
class Transaction(Record):
    """A financial record and its fiscal sub-state."""

    tenant_id: UUID
    type: TransactionType
    gross_amount: Decimal
    net_amount: Decimal | None = None
    description: str = ""
    due_date: date | None = None
    payment_date: date | None = None
    status: PaymentStatus = PaymentStatus.PENDING
    customer_id: UUID | None = None
    supplier_id: UUID | None = None
    category_id: UUID | None = None
    tax_regime: str | None = None
    service_code: str | None = None
    invoice_status: InvoiceStatus | None = None
    invoice_number: str | None = None
    invoice_key: str | None = None
    invoice_integration_id: str | None = None
    invoice_provider: str | None = None
    invoice_cancel_reason: str | None = None
    invoice_cancelled_at: datetime | None = None
    replaced_by_transaction_id: UUID | None = None
    replaces_transaction_id: UUID | None = None
    id: UUID | None = None
    created_at: datetime | None = None

    _converters: ClassVar[dict[str, Callable[[Any], Any]]] = {
        "id": as_uuid,
        "tenant_id": as_uuid,
        "customer_id": as_uuid,
        "supplier_id": as_uuid,
        "category_id": as_uuid,
        "replaced_by_transaction_id": as_uuid,
        "replaces_transaction_id": as_uuid,
        "type": TransactionType,
        "status": PaymentStatus,
        "invoice_status": InvoiceStatus,
        "gross_amount": as_decimal,
        "net_amount": as_decimal,
        "due_date": as_date,
        "payment_date": as_date,
        "invoice_cancelled_at": as_datetime,
        "created_at": as_datetime,
    }

    @property
    def amount(self) -> Decimal:
        return self.net_amount if self.net_amount is not None else self.gross_amount


# === Monitoring ===


@dataclass
class AlertRule(Record):
    """Partner-owned threshold rule."""

    partner_id: UUID
    rule_type: RuleType
    threshold_value: Decimal
    alert_severity: Severity | None = None
    custom_message_template: str | None = None
    is_active: bool = True
    id: UUID | None = None
    created_at: datetime | None = None

    _converters: ClassVar[dict[str, Callable[[Any], Any]]] = {
        "id": as_uuid,
        "partner_id": as_uuid,
        "rule_type": RuleType,
        "alert_severity": Severity,
        "threshold_value": as_decimal,
        "created_at": as_datetime,
    }


@dataclass
class Alert(Record):
    """An emitted finding."""

    partner_id: UUID
    client_id: UUID
    severity: Severity
    message: str
    alert_type: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    resolved: bool = False
    resolved_at: datetime | None = None
    id: UUID | None = None
    created_at: datetime | None = None

    _converters: ClassVar[dict[str, Callable[[Any], Any]]] = {
        "id": as_uuid,
        "partner_id": as_uuid,
        "client_id": as_uuid,
        "severity": Severity,
        "resolved_at": as_datetime,
        "created_at": as_datetime,
    }


@dataclass
class RoiEvent(Record):
    """Usage-value tracking event used for ROI reporting."""

    partner_id: UUID
    client_id: UUID
    event_type: str
    minutes_saved: int
    metadata: dict[str, Any] = field(default_factory=dict)
    id: UUID | None = None
    created_at: datetime | None = None

    _converters: ClassVar[dict[str, Callable[[Any], Any]]] = {
        "id": as_uuid,
        "partner_id": as_uuid,
        "client_id": as_uuid,
        "created_at": as_datetime,
    }


@dataclass
class ExecutionLogEntry(Record):
    """Append-only record of one workflow invocation."""

    tenant_id: UUID
    agent_id: str
    action_type: str
    status: ExecutionStatus
    input_data: dict[str, Any] = field(default_factory=dict)
    output_data: dict[str, Any] | None = None
    error_message: str | None = None
    duration_ms: int = 0
    user_id: UUID | None = None
    approval_id: UUID | None = None
    id: UUID | None = None
    created_at: datetime | None = None

    _converters: ClassVar[dict[str, Callable[[Any], Any]]] = {
        "id": as_uuid,
        "tenant_id": as_uuid,
        "user_id": as_uuid,
        "approval_id": as_uuid,
        "status": ExecutionStatus,
        "created_at": as_datetime,
    }


def counterpart_name(row: dict[str, Any] | None) -> str:
    """Display name for a customer or supplier row."""
    if not row:
        return ""
    if row.get("company_name"):
        return str(row["company_name"])
    if row.get("name"):
        return str(row["name"])
    return f"{row.get('first_name') or ''} {row.get('last_name') or ''}".strip()
