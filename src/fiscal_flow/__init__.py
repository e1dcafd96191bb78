"""Fiscal Flow - billing workflow, approvals, fiscal issuance and proactive monitoring."""

__version__ = "0.1.0"

from fiscal_flow.approvals import ApprovalQueue
from fiscal_flow.approvals.worker import ApprovalWorker
from fiscal_flow.config import configure_logging, get_settings
from fiscal_flow.container import Container, build_container
from fiscal_flow.events import EventBus, EventType
from fiscal_flow.issuance import IssuanceGateway, IssuanceOutcome
from fiscal_flow.monitor import AlertService, MarginAnalyzer, ProactiveMonitor
from fiscal_flow.scheduler import MonitorScheduler, ScheduledJob
from fiscal_flow.store import InMemoryRecordStore, RecordStore, RestRecordStore
from fiscal_flow.workflow import BillingWorkflow, CallerContext

__all__ = [
    # Version
    "__version__",
    # Workflow & approvals
    "BillingWorkflow",
    "CallerContext",
    "ApprovalQueue",
    "ApprovalWorker",
    # Issuance
    "IssuanceGateway",
    "IssuanceOutcome",
    # Monitoring
    "ProactiveMonitor",
    "MarginAnalyzer",
    "AlertService",
    "MonitorScheduler",
    "ScheduledJob",
    # Infrastructure
    "RecordStore",
    "InMemoryRecordStore",
    "RestRecordStore",
    "EventBus",
    "EventType",
    "Container",
    "build_container",
    # Config
    "get_settings",
    "configure_logging",
]
