"""Domain events and the in-process bus."""

from fiscal_flow.events.bus import EventBus, Subscription
from fiscal_flow.events.types import (
    ApprovalDecidedEvent,
    DomainEvent,
    EventType,
    InvoiceEvent,
    approval_decided,
    invoice_event,
    simple_event,
)

__all__ = [
    "ApprovalDecidedEvent",
    "DomainEvent",
    "EventBus",
    "EventType",
    "InvoiceEvent",
    "Subscription",
    "approval_decided",
    "invoice_event",
    "simple_event",
]
