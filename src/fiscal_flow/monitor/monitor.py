"""Proactive monitor, margin analyzer and alert service."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any
from uuid import UUID

import structlog

from fiscal_flow.config import get_settings
from fiscal_flow.errors import ConflictError, NotFoundError, PreconditionFailedError
from fiscal_flow.events import EventBus, EventType, simple_event
from fiscal_flow.models import Alert, RoiEvent, Severity, as_uuid, counterpart_name
from fiscal_flow.monitor.rules import (
    ACTIVE_PROJECT_STATUSES,
    Finding,
    RuleSet,
    compute_margin,
    evaluate_client_rules,
    evaluate_margin,
    load_ruleset,
)
from fiscal_flow.monitor.vitals import get_client_vitals, get_uncategorized_count
from fiscal_flow.store import RecordStore, Row

logger = structlog.get_logger(__name__)

ROI_MINUTES: dict[Severity, tuple[str, int]] = {
    Severity.CRITICAL: ("CRITICAL_ALERT_GENERATED", 45),
    Severity.WARNING: ("WARNING_ALERT_GENERATED", 20),
}


class AlertService:
    """Writes, lists and resolves alerts."""

    def __init__(
        self,
        store: RecordStore,
        bus: EventBus | None = None,
        suppress_duplicates: bool | None = None,
    ):
        self._store = store
        self._bus = bus
        if suppress_duplicates is None:
            suppress_duplicates = get_settings().monitor_suppress_duplicates
        self._suppress_duplicates = suppress_duplicates
        self._logger = logger.bind(component="alerts")

    async def push(self, partner_id: UUID, client_id: UUID, finding: Finding) -> Alert | None:
        """Write one alert.

        Returns:
            The stored alert, or None when an identical unresolved alert exists.
        """
        if self._suppress_duplicates:
            existing = await self._store.select(
                "alerts",
                {
                    "partner_id": partner_id,
                    "client_id": client_id,
                    "message": finding.message,
                    "resolved": False,
                },
                limit=1,
            )
            if existing:
                self._logger.debug(
                    "alert_suppressed",
                    partner_id=str(partner_id),
                    client_id=str(client_id),
                    alert_type=finding.alert_type,
                )
                return None

        alert = Alert(
            partner_id=partner_id,
            client_id=client_id,
            severity=finding.severity,
            message=finding.message,
            alert_type=finding.alert_type,
            metadata=finding.metadata,
        )
        row = await self._store.insert("alerts", alert.to_row())
        stored = Alert.from_row(row)
        self._logger.info(
            "alert_created",
            alert_id=str(stored.id),
            partner_id=str(partner_id),
            client_id=str(client_id),
            severity=stored.severity.value,
            alert_type=stored.alert_type,
        )
        if self._bus is not None:
            self._bus.publish(
                simple_event(
                    EventType.ALERT_CREATED,
                    alert_id=str(stored.id),
                    partner_id=str(partner_id),
                    client_id=str(client_id),
                    severity=stored.severity.value,
                    message=stored.message,
                )
            )
        return stored

    async def list_open(self, partner_id: Any) -> list[Alert]:
        rows = await self._store.select(
            "alerts",
            {"partner_id": partner_id, "resolved": False},
            order_by=("-created_at",),
        )
        return [Alert.from_row(r) for r in rows]

    async def resolve(self, alert_id: Any, partner_id: UUID | None = None) -> Alert:
        """Mark an alert resolved.

        Raises:
            NotFoundError: The alert does not exist for this partner.
            ConflictError: The alert was already resolved.
        """
        row = await self._store.get("alerts", alert_id)
        if row is None or (partner_id is not None and as_uuid(row["partner_id"]) != partner_id):
            raise NotFoundError("Alert not found")
        try:
            row = await self._store.update(
                "alerts",
                alert_id,
                {"resolved": True, "resolved_at": datetime.now(UTC)},
                expected={"resolved": False},
            )
        except PreconditionFailedError as e:
            raise ConflictError("Alert was already resolved") from e
        self._logger.info("alert_resolved", alert_id=str(alert_id))
        return Alert.from_row(row)


@dataclass
class MonitorSummary:
    partners_processed: int = 0
    clients_processed: int = 0
    clients_skipped: int = 0
    alerts_created: int = 0
    skipped_clients: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "partners_processed": self.partners_processed,
            "clients_processed": self.clients_processed,
            "clients_skipped": self.clients_skipped,
            "alerts_created": self.alerts_created,
        }


class ProactiveMonitor:
    """Batch pass over every active partner and each of their clients.

    Clients of one partner are evaluated concurrently, bounded by a
    semaphore. Reads for a client are bounded by a timeout; a client whose
    vitals cannot be read is logged and skipped. Each client's alerts are
    written by that client's task only.
    """

    def __init__(
        self,
        store: RecordStore,
        alerts: AlertService,
        bus: EventBus | None = None,
        client_timeout: float | None = None,
        max_concurrency: int | None = None,
        today: Callable[[], date] = date.today,
    ):
        settings = get_settings()
        self._store = store
        self._alerts = alerts
        self._bus = bus
        self._client_timeout = client_timeout or settings.monitor_client_timeout
        self._max_concurrency = max_concurrency or settings.monitor_max_concurrency
        self._today = today
        self._logger = logger.bind(component="monitor")

    async def run(self) -> MonitorSummary:
        """Evaluate all active partners."""
        summary = MonitorSummary()
        partners = await self._store.select("partners", {"active": True}, order_by=("created_at",))
        self._logger.info("monitor_started", partners=len(partners))

        for partner in partners:
            await self.run_partner(partner, summary)
            summary.partners_processed += 1

        self._logger.info("monitor_completed", **summary.to_dict())
        if self._bus is not None:
            self._bus.publish(simple_event(EventType.MONITOR_COMPLETED, **summary.to_dict()))
        return summary

    async def run_partner(self, partner: Row, summary: MonitorSummary | None = None) -> MonitorSummary:
        summary = summary or MonitorSummary()
        partner_id = as_uuid(partner["id"])
        ruleset = await load_ruleset(self._store, partner_id)
        clients = await self._store.select(
            "clients", {"partner_id": partner_id}, order_by=("created_at",)
        )
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def bounded(client: Row) -> int | None:
            async with semaphore:
                return await self.evaluate_client(partner_id, ruleset, client)

        results = await asyncio.gather(*(bounded(c) for c in clients))
        for client, created in zip(clients, results):
            if created is None:
                summary.clients_skipped += 1
                summary.skipped_clients.append(str(client["id"]))
            else:
                summary.clients_processed += 1
                summary.alerts_created += created
        return summary

    async def evaluate_client(self, partner_id: UUID, ruleset: RuleSet, client: Row) -> int | None:
        """Evaluate one client.

        Returns:
            Number of alerts written, or None if the client was skipped.
        """
        client_id = as_uuid(client["id"])
        log = self._logger.bind(partner_id=str(partner_id), client_id=str(client_id))

        async def fetch() -> tuple[Any, int]:
            vitals = await get_client_vitals(self._store, client_id, self._today())
            uncategorized = await get_uncategorized_count(self._store, client_id)
            return vitals, uncategorized

        try:
            vitals, uncategorized = await asyncio.wait_for(fetch(), self._client_timeout)
        except TimeoutError:
            log.warning("client_skipped", reason="timeout")
            return None
        except Exception as e:
            log.warning("client_skipped", reason=str(e) or repr(e))
            return None

        findings = evaluate_client_rules(counterpart_name(client), vitals, uncategorized, ruleset)
        created = 0
        for finding in findings:
            if await self._alerts.push(partner_id, client_id, finding) is not None:
                created += 1
        log.debug("client_evaluated", findings=len(findings), alerts_created=created)
        return created


class MarginAnalyzer:
    """Per-project margin analysis for one partner."""

    def __init__(self, store: RecordStore, alerts: AlertService):
        self._store = store
        self._alerts = alerts
        self._logger = logger.bind(component="margin_analyzer")

    async def _projects(self, partner_id: UUID, client_id: UUID | None) -> list[Row]:
        if client_id is not None:
            client = await self._store.get("clients", client_id)
            if client is None or as_uuid(client.get("partner_id")) != partner_id:
                raise NotFoundError("Client not found")
            client_ids: list[Any] = [client_id]
        else:
            clients = await self._store.select("clients", {"partner_id": partner_id})
            client_ids = [c["id"] for c in clients]
        if not client_ids:
            return []
        return await self._store.select(
            "projects",
            {"client_id": client_ids, "status": ACTIVE_PROJECT_STATUSES},
            order_by=("created_at",),
        )

    async def analyze(self, partner_id: Any, client_id: Any = None) -> dict[str, Any]:
        """Analyze active projects and write margin alerts.

        Returns:
            ``{projects_analyzed, alerts_created, details}``
        """
        partner_id = as_uuid(partner_id)
        client_id = as_uuid(client_id)
        ruleset = await load_ruleset(self._store, partner_id)
        projects = await self._projects(partner_id, client_id)

        analyzed = 0
        created = 0
        details: list[dict[str, Any]] = []
        for project in projects:
            margin = compute_margin(project)
            if margin is None:
                continue
            analyzed += 1
            finding = evaluate_margin(margin, ruleset)
            entry = margin.to_dict()
            entry["severity"] = finding.severity.value if finding else None
            details.append(entry)
            if finding is None or margin.client_id is None:
                continue

            alert = await self._alerts.push(partner_id, margin.client_id, finding)
            if alert is None:
                continue
            created += 1
            await self._record_roi(partner_id, margin.client_id, alert)

        self._logger.info(
            "margin_analysis_completed",
            partner_id=str(partner_id),
            projects_analyzed=analyzed,
            alerts_created=created,
        )
        return {"projects_analyzed": analyzed, "alerts_created": created, "details": details}

    async def _record_roi(self, partner_id: UUID, client_id: UUID, alert: Alert) -> None:
        roi = ROI_MINUTES.get(alert.severity)
        if roi is None:
            return
        event_type, minutes = roi
        event = RoiEvent(
            partner_id=partner_id,
            client_id=client_id,
            event_type=event_type,
            minutes_saved=minutes,
            metadata={"alert_id": str(alert.id), "alert_type": alert.alert_type},
        )
        await self._store.insert("roi_events", event.to_row())
