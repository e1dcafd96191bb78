"""Worker resuming approved workflows from approval.decided events.

Events are a latency shortcut. Approved items left behind by a restart are
found again in the store and executed by ``recover``.
"""

import asyncio
from typing import Any

import structlog

from fiscal_flow.config import get_settings
from fiscal_flow.events import (
    ApprovalDecidedEvent,
    DomainEvent,
    EventBus,
    EventType,
    approval_decided,
)
from fiscal_flow.models import ApprovalOutcome
from fiscal_flow.workflow.orchestrator import BillingWorkflow, CallerContext

logger = structlog.get_logger(__name__)


class ApprovalWorker:
    """Consumes approval decisions and drives execute_approved.

    The reviewer's decide call returns as soon as the decision is stored;
    issuance latency and retries live here. Errors the workflow reports
    as client errors (conflict, validation) are final. Server errors are
    retried with exponential backoff.
    """

    def __init__(
        self,
        workflow: BillingWorkflow,
        bus: EventBus,
        max_attempts: int | None = None,
        retry_backoff: float | None = None,
    ):
        settings = get_settings()
        self._workflow = workflow
        self._subscription = bus.subscribe([EventType.APPROVAL_DECIDED], name="approval_worker")
        self._max_attempts = max_attempts or settings.worker_max_attempts
        self._retry_backoff = (
            retry_backoff if retry_backoff is not None else settings.worker_retry_backoff
        )
        self._is_running = False
        self._processed = 0
        self._recovered = 0
        self._logger = logger.bind(component="approval_worker")

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def processed(self) -> int:
        """Number of events handled so far."""
        return self._processed

    @property
    def recovered(self) -> int:
        """Number of approvals executed from the store rather than from events."""
        return self._recovered

    @property
    def pending(self) -> int:
        return self._subscription.queue.qsize()

    async def handle(self, event: DomainEvent) -> dict[str, Any] | None:
        """Execute the workflow for an approval event.

        Returns:
            The final workflow response body, or None when nothing was executed.
        """
        if not isinstance(event, ApprovalDecidedEvent):
            return None
        if event.outcome != ApprovalOutcome.APPROVE.value:
            self._logger.info("approval_not_executed", approval_id=str(event.approval_id))
            return None

        payload = {"action": "execute_approved", "approvalId": str(event.approval_id)}
        context = CallerContext(user_id=event.reviewer_id, tenant_id=event.tenant_id)

        body: dict[str, Any] = {}
        for attempt in range(1, self._max_attempts + 1):
            status, body = await self._workflow.handle(payload, context)
            if status < 500:
                self._logger.info(
                    "approval_executed",
                    approval_id=str(event.approval_id),
                    status=status,
                    attempt=attempt,
                )
                return body

            self._logger.warning(
                "approval_execution_failed",
                approval_id=str(event.approval_id),
                attempt=attempt,
                error=body.get("error"),
            )
            if attempt < self._max_attempts:
                await asyncio.sleep(self._retry_backoff * (2 ** (attempt - 1)))

        self._logger.error("approval_execution_gave_up", approval_id=str(event.approval_id))
        return body

    async def _dispatch(self, event: DomainEvent) -> None:
        try:
            await self.handle(event)
        except Exception as e:
            self._logger.error("approval_worker_error", error=str(e) or repr(e))
        finally:
            self._processed += 1
            self._subscription.queue.task_done()

    async def process_next(self, timeout: float | None = None) -> bool:
        """Handle one queued event, waiting up to ``timeout`` seconds.

        Returns:
            True if an event was handled.
        """
        queue = self._subscription.queue
        try:
            if timeout is None:
                event = await queue.get()
            else:
                event = await asyncio.wait_for(queue.get(), timeout)
        except TimeoutError:
            return False

        await self._dispatch(event)
        return True

    async def recover(self) -> int:
        """Execute approvals whose decision event was never handled.

        The store is the source of truth: an approved item whose workflow
        request is still ``pending_approval`` has not been executed, whether
        or not this process ever saw its event.

        Returns:
            Number of approvals executed.
        """
        try:
            stalled = await self._workflow.stalled_approvals()
        except Exception as e:
            self._logger.error("approval_recovery_failed", error=str(e) or repr(e))
            return 0

        for item in stalled:
            self._logger.info("approval_recovered", approval_id=str(item.id))
            try:
                await self.handle(
                    approval_decided(
                        item.tenant_id,
                        item.id,
                        ApprovalOutcome.APPROVE.value,
                        item.reviewed_by,
                        item.transaction_id,
                    )
                )
            except Exception as e:
                self._logger.error(
                    "approval_worker_error", approval_id=str(item.id), error=str(e) or repr(e)
                )
            self._recovered += 1
        return len(stalled)

    async def drain(self) -> int:
        """Handle every event already queued, then recover missed approvals.

        Returns:
            Number of queued events handled.
        """
        handled = 0
        while True:
            try:
                event = self._subscription.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._dispatch(event)
            handled += 1
        await self.recover()
        return handled

    async def run(self, poll_interval: float = 1.0) -> None:
        """Process events until stop() is called, recovering missed approvals when idle."""
        self._is_running = True
        self._logger.info("approval_worker_started")
        await self.recover()
        while self._is_running:
            if not await self.process_next(timeout=poll_interval) and self._is_running:
                await self.recover()
        self._logger.info(
            "approval_worker_stopped", processed=self._processed, recovered=self._recovered
        )

    def stop(self) -> None:
        self._is_running = False
