"""Domain event definitions.

Events are published on the in-process bus whenever a workflow, approval,
issuance or monitor transition is persisted. The approval continuation is
driven by ``approval.decided`` events rather than a direct call.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class EventType(str, Enum):
    """Types of events published by the services."""

    # Workflow
    WORKFLOW_SUBMITTED = "workflow.submitted"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED = "workflow.failed"

    # Approvals
    APPROVAL_REQUESTED = "approval.requested"
    APPROVAL_DECIDED = "approval.decided"

    # Issuance
    INVOICE_ISSUED = "invoice.issued"
    INVOICE_SUBSTITUTED = "invoice.substituted"
    INVOICE_CANCELLED = "invoice.cancelled"

    # Monitoring
    ALERT_CREATED = "alert.created"
    MONITOR_COMPLETED = "monitor.completed"


@dataclass
class DomainEvent:
    """Base event structure for all domain events."""

    event_type: EventType
    tenant_id: UUID | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: UUID = field(default_factory=uuid4)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to a JSON-compatible dictionary."""
        return {
            "id": str(self.event_id),
            "type": self.event_type.value,
            "tenant_id": str(self.tenant_id) if self.tenant_id else None,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


@dataclass
class ApprovalDecidedEvent(DomainEvent):
    """An approval item left the pending state."""

    approval_id: UUID | None = None
    outcome: str = ""
    reviewer_id: UUID | None = None
    transaction_id: UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base["approval"] = {
            "id": str(self.approval_id) if self.approval_id else None,
            "outcome": self.outcome,
            "reviewer_id": str(self.reviewer_id) if self.reviewer_id else None,
            "transaction_id": str(self.transaction_id) if self.transaction_id else None,
        }
        return base


@dataclass
class InvoiceEvent(DomainEvent):
    """A fiscal document changed state."""

    transaction_id: UUID | None = None
    provider: str = ""
    invoice_number: str | None = None
    invoice_status: str = ""
    demo_mode: bool = False

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base["invoice"] = {
            "transaction_id": str(self.transaction_id) if self.transaction_id else None,
            "provider": self.provider,
            "number": self.invoice_number,
            "status": self.invoice_status,
            "demo_mode": self.demo_mode,
        }
        return base


# === Factory functions ===


def approval_decided(
    tenant_id: UUID,
    approval_id: UUID,
    outcome: str,
    reviewer_id: UUID | None,
    transaction_id: UUID | None,
) -> ApprovalDecidedEvent:
    return ApprovalDecidedEvent(
        event_type=EventType.APPROVAL_DECIDED,
        tenant_id=tenant_id,
        approval_id=approval_id,
        outcome=outcome,
        reviewer_id=reviewer_id,
        transaction_id=transaction_id,
    )


def invoice_event(
    event_type: EventType,
    tenant_id: UUID,
    transaction_id: UUID,
    provider: str,
    invoice_number: str | None,
    invoice_status: str,
    demo_mode: bool = False,
) -> InvoiceEvent:
    return InvoiceEvent(
        event_type=event_type,
        tenant_id=tenant_id,
        transaction_id=transaction_id,
        provider=provider,
        invoice_number=invoice_number,
        invoice_status=invoice_status,
        demo_mode=demo_mode,
    )


def simple_event(
    event_type: EventType, tenant_id: UUID | None = None, **data: Any
) -> DomainEvent:
    """Create an event whose payload is a flat dict."""
    return DomainEvent(event_type=event_type, tenant_id=tenant_id, data=data)
