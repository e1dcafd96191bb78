"""Wiring of services around one record store and one event bus."""

from dataclasses import dataclass

import structlog

from fiscal_flow.approvals import ApprovalQueue
from fiscal_flow.approvals.worker import ApprovalWorker
from fiscal_flow.events import EventBus
from fiscal_flow.issuance import IssuanceGateway, PaymentSlipGenerator, default_slip_generator
from fiscal_flow.issuance.gateway import ProviderFactory
from fiscal_flow.monitor import AlertService, MarginAnalyzer, ProactiveMonitor
from fiscal_flow.scheduler import MonitorScheduler, build_scheduler
from fiscal_flow.store import RecordStore, create_store
from fiscal_flow.workflow import BillingWorkflow

logger = structlog.get_logger(__name__)


@dataclass
class Container:
    store: RecordStore
    bus: EventBus
    gateway: IssuanceGateway
    queue: ApprovalQueue
    workflow: BillingWorkflow
    worker: ApprovalWorker
    alerts: AlertService
    monitor: ProactiveMonitor
    analyzer: MarginAnalyzer
    scheduler: MonitorScheduler

    async def close(self) -> None:
        self.worker.stop()
        self.scheduler.stop()
        await self.store.close()
        logger.info("container_closed")


def build_container(
    store: RecordStore | None = None,
    bus: EventBus | None = None,
    provider_factory: ProviderFactory | None = None,
    slip_generator: PaymentSlipGenerator | None = None,
) -> Container:
    """Build every service, defaulting to the configured store and providers."""
    store = store or create_store()
    bus = bus or EventBus()
    gateway = IssuanceGateway(store, bus, provider_factory=provider_factory)
    queue = ApprovalQueue(store, bus)
    workflow = BillingWorkflow(
        store,
        gateway,
        queue,
        bus,
        slip_generator=slip_generator if slip_generator is not None else default_slip_generator(),
    )
    alerts = AlertService(store, bus)
    monitor = ProactiveMonitor(store, alerts, bus)
    analyzer = MarginAnalyzer(store, alerts)
    return Container(
        store=store,
        bus=bus,
        gateway=gateway,
        queue=queue,
        workflow=workflow,
        worker=ApprovalWorker(workflow, bus),
        alerts=alerts,
        monitor=monitor,
        analyzer=analyzer,
        scheduler=build_scheduler(store, monitor, analyzer),
    )
