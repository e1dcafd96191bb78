"""Billing workflow: gather, preview, submit (auto-execute or queue), execute.

A single entry point, ``handle``, accepts ``{action, ...fields}`` and returns
``(status_code, body)``. Every invocation that resolved a tenant writes
exactly one execution log row, whatever the outcome.
"""

import time
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

import structlog

from fiscal_flow.approvals.queue import TABLE as APPROVAL_TABLE
from fiscal_flow.approvals.queue import ApprovalQueue
from fiscal_flow.config import FlatSettings, get_settings
from fiscal_flow.errors import (
    AlreadyIssuedError,
    AuthorizationError,
    ConflictError,
    FiscalFlowError,
    NotFoundError,
    PreconditionFailedError,
)
from fiscal_flow.events import EventBus, EventType, simple_event
from fiscal_flow.issuance import IssuanceGateway, PaymentSlipGenerator
from fiscal_flow.models import (
    OPEN_WORKFLOW_STAGES,
    ApprovalItem,
    ApprovalStatus,
    ExecutionLogEntry,
    ExecutionStatus,
    InvoiceStatus,
    PaymentStatus,
    Transaction,
    TransactionType,
    WorkflowRequest,
    WorkflowStage,
    as_uuid,
    counterpart_name,
)
from fiscal_flow.store import Insert, RecordStore
from fiscal_flow.store.rest import to_json
from fiscal_flow.taxes import compute_tax_preview
from fiscal_flow.workflow.payloads import (
    ExecuteApprovedRequest,
    PrepareRequest,
    StartRequest,
    SubmitForApprovalRequest,
    WorkflowResponse,
    parse_request,
)

logger = structlog.get_logger(__name__)

AGENT_ID = "billing"
ACTION_TYPE = "issue_invoice"

QUESTIONS: list[dict[str, Any]] = [
    {"field": "customerId", "label": "Customer", "type": "select", "required": True},
    {"field": "serviceDescription", "label": "Service description", "type": "text", "required": True},
    {"field": "amount", "label": "Amount", "type": "currency", "required": True},
    {"field": "dueDate", "label": "Due date", "type": "date", "required": True},
]


@dataclass
class CallerContext:
    """Identity of the caller invoking the workflow."""

    user_id: UUID | None = None
    tenant_id: UUID | None = None


@dataclass
class WorkflowUnit:
    """Rows created together by submit_for_approval."""

    workflow_request: WorkflowRequest
    transaction: Transaction
    approval_id: UUID | None = None


class BillingWorkflow:
    """Drives a billing request through its stages."""

    def __init__(
        self,
        store: RecordStore,
        gateway: IssuanceGateway,
        queue: ApprovalQueue,
        bus: EventBus | None = None,
        slip_generator: PaymentSlipGenerator | None = None,
        settings: FlatSettings | None = None,
    ):
        self._store = store
        self._gateway = gateway
        self._queue = queue
        self._bus = bus
        self._slip_generator = slip_generator
        self._settings = settings or get_settings()
        self._handlers = {
            "start": self._start,
            "prepare": self._prepare,
            "submit_for_approval": self._submit_for_approval,
            "execute_approved": self._execute_approved,
        }
        self._logger = logger.bind(component="billing_workflow")

    # === Entry point ===

    async def handle(
        self, payload: dict[str, Any], context: CallerContext
    ) -> tuple[int, dict[str, Any]]:
        """Run one workflow stage and return ``(status_code, body)``."""
        started = time.perf_counter()
        action = str(payload.get("action")) if isinstance(payload, dict) else "unknown"
        tenant_id: UUID | None = None
        log_status = ExecutionStatus.ERROR
        approval_id: UUID | None = None
        error_message: str | None = None

        try:
            tenant_id = await self.resolve_tenant(context)
            request = parse_request(payload)
            handler = self._handlers[request.action]
            response, log_status, approval_id = await handler(request, tenant_id, context)
            status_code, body = 200, response.to_body()
        except FiscalFlowError as e:
            status_code, body = e.status_code, e.to_payload()
            error_message = e.message
            self._logger.warning(
                "workflow_action_rejected", action=action, status=status_code, error=e.message
            )
        except Exception as e:
            status_code, body = 500, {"error": "Internal error"}
            error_message = str(e) or repr(e)
            self._logger.exception("workflow_action_failed", action=action)

        if tenant_id is not None:
            await self._write_log(
                ExecutionLogEntry(
                    tenant_id=tenant_id,
                    user_id=context.user_id,
                    agent_id=AGENT_ID,
                    action_type=action,
                    status=log_status,
                    input_data=to_json(payload) if isinstance(payload, dict) else {},
                    output_data=body,
                    error_message=error_message,
                    duration_ms=int((time.perf_counter() - started) * 1000),
                    approval_id=approval_id,
                )
            )
        return status_code, body

    async def _write_log(self, entry: ExecutionLogEntry) -> None:
        try:
            await self._store.insert("execution_logs", entry.to_row())
        except Exception as e:
            self._logger.error(
                "execution_log_write_failed", action=entry.action_type, error=str(e) or repr(e)
            )

    async def resolve_tenant(self, context: CallerContext) -> UUID:
        """Tenant from the caller context, else from the caller's profile."""
        if context.tenant_id is not None:
            return context.tenant_id
        if context.user_id is not None:
            rows = await self._store.select("profiles", {"user_id": context.user_id}, limit=1)
            tenant_id = as_uuid(rows[0].get("tenant_id")) if rows else None
            if tenant_id is not None:
                return tenant_id
        raise AuthorizationError("No tenant associated with this user")

    # === Reference data ===

    async def _customer(self, tenant_id: UUID, customer_id: UUID) -> dict[str, Any]:
        row = await self._store.get("customers", customer_id)
        if row is None or as_uuid(row.get("tenant_id")) != tenant_id:
            raise NotFoundError("Customer not found")
        return row

    async def _fiscal_config(self, tenant_id: UUID) -> dict[str, Any]:
        rows = await self._store.select("fiscal_configs", {"tenant_id": tenant_id}, limit=1)
        return rows[0] if rows else {}

    async def _tax_regime(self, tenant_id: UUID) -> str:
        config = await self._fiscal_config(tenant_id)
        return str(config.get("tax_regime") or self._settings.default_tax_regime)

    async def auto_approve_threshold(self, tenant_id: UUID) -> Decimal:
        """Tenant override from automation rules, else the configured default."""
        rows = await self._store.select(
            "automation_rules",
            {"tenant_id": tenant_id, "agent_id": AGENT_ID, "is_active": True},
            limit=1,
        )
        if rows and rows[0].get("auto_approve_below") is not None:
            return Decimal(str(rows[0]["auto_approve_below"]))
        return self._settings.auto_approve_threshold

    def priority_for(self, amount: Decimal) -> int:
        if amount > self._settings.urgent_amount:
            return self._settings.urgent_priority
        return self._settings.default_priority

    async def get_or_create_category(self, tenant_id: UUID, name: str) -> UUID:
        for owner in (tenant_id, None):
            rows = await self._store.select("categories", {"tenant_id": owner, "name": name}, limit=1)
            if rows:
                return as_uuid(rows[0]["id"])  # type: ignore[return-value]
        created = await self._store.insert("categories", {"tenant_id": tenant_id, "name": name})
        self._logger.info("category_created", tenant_id=str(tenant_id), name=name)
        return as_uuid(created["id"])  # type: ignore[return-value]

    # === Stages ===

    async def _start(
        self, request: StartRequest, tenant_id: UUID, context: CallerContext
    ) -> tuple[WorkflowResponse, ExecutionStatus, UUID | None]:
        customers = await self._store.select(
            "customers", {"tenant_id": tenant_id}, order_by=("company_name",), limit=50
        )
        categories = await self._store.select(
            "categories", {"tenant_id": tenant_id}, order_by=("name",), limit=50
        )
        if len(categories) < 50:
            categories += await self._store.select(
                "categories", {"tenant_id": None}, order_by=("name",), limit=50 - len(categories)
            )
        recent = await self._store.select(
            "transactions",
            {"tenant_id": tenant_id, "type": TransactionType.RECEIVABLE.value},
            order_by=("-created_at",),
            limit=10,
        )

        response = WorkflowResponse(
            step="gather_info",
            message="Fill in the billing details to continue",
            customers=[
                {"id": c["id"], "name": counterpart_name(c), "email": c.get("email")}
                for c in customers
            ],
            categories=[{"id": c["id"], "name": c.get("name")} for c in categories],
            suggestions=[
                {
                    "id": t["id"],
                    "description": t.get("description"),
                    "amount": t.get("gross_amount"),
                    "customerId": t.get("customer_id"),
                    "dueDate": t.get("due_date"),
                }
                for t in recent
            ],
            questions=QUESTIONS,
        )
        return response, ExecutionStatus.SUCCESS, None

    async def _prepare(
        self, request: PrepareRequest, tenant_id: UUID, context: CallerContext
    ) -> tuple[WorkflowResponse, ExecutionStatus, UUID | None]:
        customer = await self._customer(tenant_id, request.customer_id)
        fiscal_config = await self._fiscal_config(tenant_id)
        regime = str(fiscal_config.get("tax_regime") or self._settings.default_tax_regime)
        taxes = compute_tax_preview(request.amount, regime)

        preview = {
            "customer": {
                "id": customer["id"],
                "name": counterpart_name(customer),
                "email": customer.get("email"),
                "document": customer.get("cnpj") or customer.get("cpf"),
            },
            "service": {"description": request.service_description, **taxes.to_dict()},
            "dueDate": request.due_date,
            "issuer": {
                "companyName": fiscal_config.get("company_name"),
                "cnpj": fiscal_config.get("cnpj"),
            },
        }
        response = WorkflowResponse(
            step="preview",
            message="Review the billing preview before submitting",
            preview=to_json(preview),
            can_auto_approve=request.amount < self._settings.preview_auto_approve_limit,
        )
        return response, ExecutionStatus.SUCCESS, None

    async def create_workflow_unit(
        self,
        tenant_id: UUID,
        request: SubmitForApprovalRequest,
        requested_by: UUID | None,
        requires_approval: bool,
    ) -> WorkflowUnit:
        """Persist the workflow request, its transaction and its approval item atomically."""
        regime = await self._tax_regime(tenant_id)
        category_id = await self.get_or_create_category(
            tenant_id, self._settings.default_service_category
        )
        taxes = compute_tax_preview(request.amount, regime)

        transaction = Transaction(
            id=uuid4(),
            tenant_id=tenant_id,
            type=TransactionType.RECEIVABLE,
            description=request.service_description,
            gross_amount=taxes.gross_amount,
            net_amount=taxes.net_amount,
            due_date=request.due_date,
            status=PaymentStatus.PENDING,
            customer_id=request.customer_id,
            category_id=category_id,
            tax_regime=regime,
            service_code=request.service_code,
            invoice_status=InvoiceStatus.PENDING,
        )
        workflow_request = WorkflowRequest(
            id=uuid4(),
            tenant_id=tenant_id,
            action="billing",
            stage=WorkflowStage.PENDING_APPROVAL if requires_approval else WorkflowStage.EXECUTING,
            transaction_id=transaction.id,
            created_by=requested_by,
        )
        operations: list[Any] = [
            Insert("workflow_requests", workflow_request.to_row()),
            Insert("transactions", transaction.to_row()),
        ]

        item = None
        if requires_approval:
            item = self._queue.new_item(
                tenant_id=tenant_id,
                agent_id=AGENT_ID,
                action_type=ACTION_TYPE,
                priority=self.priority_for(request.amount),
                payload=to_json(
                    {
                        "transactionId": transaction.id,
                        "workflowRequestId": workflow_request.id,
                        "customerId": request.customer_id,
                        "serviceDescription": request.service_description,
                        "amount": request.amount,
                        "dueDate": request.due_date,
                    }
                ),
                requested_by=requested_by,
                workflow_request_id=workflow_request.id,
            )
            operations.append(Insert(APPROVAL_TABLE, item.to_row()))

        await self._store.commit(operations)
        if item is not None:
            self._queue.announce(item)
        return WorkflowUnit(workflow_request, transaction, item.id if item else None)

    async def _submit_for_approval(
        self, request: SubmitForApprovalRequest, tenant_id: UUID, context: CallerContext
    ) -> tuple[WorkflowResponse, ExecutionStatus, UUID | None]:
        await self._customer(tenant_id, request.customer_id)
        threshold = await self.auto_approve_threshold(tenant_id)
        requires_approval = request.amount >= threshold

        unit = await self.create_workflow_unit(
            tenant_id, request, context.user_id, requires_approval
        )
        self._logger.info(
            "workflow_submitted",
            workflow_request_id=str(unit.workflow_request.id),
            transaction_id=str(unit.transaction.id),
            amount=str(request.amount),
            threshold=str(threshold),
            requires_approval=requires_approval,
        )
        if self._bus is not None:
            self._bus.publish(
                simple_event(
                    EventType.WORKFLOW_SUBMITTED,
                    tenant_id,
                    workflow_request_id=str(unit.workflow_request.id),
                    transaction_id=str(unit.transaction.id),
                    requires_approval=requires_approval,
                )
            )

        if requires_approval:
            response = WorkflowResponse(
                step="pending_approval",
                message=f"Amount at or above {threshold}: sent for approval",
                requires_approval=True,
                approval_id=unit.approval_id,
                transaction_id=unit.transaction.id,
                workflow_request_id=unit.workflow_request.id,
            )
            return response, ExecutionStatus.PENDING_APPROVAL, unit.approval_id

        response = await self._execute(
            tenant_id, unit.transaction.id, unit.workflow_request.id
        )
        response.workflow_request_id = unit.workflow_request.id
        return response, ExecutionStatus.SUCCESS, None

    async def _execute_approved(
        self, request: ExecuteApprovedRequest, tenant_id: UUID, context: CallerContext
    ) -> tuple[WorkflowResponse, ExecutionStatus, UUID | None]:
        workflow_request_id: UUID | None = None
        if request.approval_id is not None:
            item = await self._queue.get(request.approval_id, tenant_id)
            if item.status != ApprovalStatus.APPROVED:
                raise ConflictError(f"Approval item is {item.status.value}, not approved")
            transaction_id = item.transaction_id
            workflow_request_id = item.workflow_request_id
            if transaction_id is None:
                raise NotFoundError("Approval item does not reference a transaction")
        else:
            transaction_id = request.transaction_id
            rows = await self._store.select(
                "workflow_requests", {"transaction_id": transaction_id}, limit=1
            )
            if rows:
                workflow_request_id = as_uuid(rows[0]["id"])

        response = await self._execute(tenant_id, transaction_id, workflow_request_id)
        return response, ExecutionStatus.SUCCESS, request.approval_id

    async def stalled_approvals(self) -> list[ApprovalItem]:
        """Approved items whose workflow request never left ``pending_approval``.

        These are decisions whose continuation was lost, for example when the
        process stopped between the decision and its execution.
        """
        requests = await self._store.select(
            "workflow_requests",
            {"stage": WorkflowStage.PENDING_APPROVAL.value},
            order_by=("created_at",),
        )
        if not requests:
            return []
        rows = await self._store.select(
            APPROVAL_TABLE,
            {
                "workflow_request_id": [r["id"] for r in requests],
                "status": ApprovalStatus.APPROVED.value,
                "agent_id": AGENT_ID,
            },
            order_by=("reviewed_at",),
        )
        return [ApprovalItem.from_row(row) for row in rows]

    # === Execution ===

    async def _set_stage(
        self, workflow_request_id: UUID, stage: WorkflowStage, reason: str | None = None
    ) -> None:
        values: dict[str, Any] = {"stage": stage.value, "updated_at": datetime.now(UTC)}
        if reason:
            values["failure_reason"] = reason
        try:
            await self._store.update(
                "workflow_requests",
                workflow_request_id,
                values,
                expected={"stage": OPEN_WORKFLOW_STAGES},
            )
        except PreconditionFailedError as e:
            raise ConflictError("Workflow request is already completed or failed") from e

    async def _claim(self, workflow_request_id: UUID) -> WorkflowStage:
        """Move the request to ``executing`` and return the stage it had before."""
        row = await self._store.get("workflow_requests", workflow_request_id)
        if row is None:
            raise NotFoundError("Workflow request not found")
        previous = WorkflowStage(row["stage"])
        if previous.is_terminal:
            raise ConflictError("Workflow request is already completed or failed")
        try:
            await self._store.update(
                "workflow_requests",
                workflow_request_id,
                {"stage": WorkflowStage.EXECUTING.value, "updated_at": datetime.now(UTC)},
                expected={"stage": previous.value},
            )
        except PreconditionFailedError as e:
            raise ConflictError("Workflow request changed stage concurrently") from e
        return previous

    async def _fail(self, tenant_id: UUID, workflow_request_id: UUID, error: Exception) -> None:
        try:
            await self._set_stage(
                workflow_request_id, WorkflowStage.FAILED, reason=str(error) or repr(error)
            )
        except ConflictError:
            self._logger.warning(
                "workflow_already_terminal", workflow_request_id=str(workflow_request_id)
            )
            return
        except Exception as e:
            self._logger.error(
                "workflow_fail_write_failed",
                workflow_request_id=str(workflow_request_id),
                error=str(e) or repr(e),
            )
            return
        if self._bus is not None:
            self._bus.publish(
                simple_event(
                    EventType.WORKFLOW_FAILED,
                    tenant_id,
                    workflow_request_id=str(workflow_request_id),
                )
            )

    async def _execute(
        self,
        tenant_id: UUID,
        transaction_id: Any,
        workflow_request_id: UUID | None,
    ) -> WorkflowResponse:
        was_executing = False
        if workflow_request_id is not None:
            was_executing = await self._claim(workflow_request_id) == WorkflowStage.EXECUTING

        try:
            return await self._issue_and_complete(
                tenant_id, transaction_id, workflow_request_id, was_executing
            )
        except Exception as e:
            if workflow_request_id is not None:
                await self._fail(tenant_id, workflow_request_id, e)
            raise

    async def _issue_and_complete(
        self,
        tenant_id: UUID,
        transaction_id: Any,
        workflow_request_id: UUID | None,
        was_executing: bool,
    ) -> WorkflowResponse:
        try:
            issuance = await self._gateway.issue(transaction_id, tenant_id)
        except AlreadyIssuedError as e:
            # An earlier run of this request issued the document, then stopped.
            if workflow_request_id is None or not was_executing:
                raise
            self._logger.info(
                "workflow_resumed_after_issuance",
                workflow_request_id=str(workflow_request_id),
                invoice_number=e.invoice_number,
            )
            issuance = await self._gateway.existing_outcome(transaction_id, tenant_id)

        transaction = Transaction.from_row(
            await self._store.get("transactions", issuance.transaction_id) or {}
        )
        customer = None
        if transaction.customer_id:
            customer = await self._store.get("customers", transaction.customer_id)

        boleto = await self._generate_slip(transaction, customer)
        notified = await self._schedule_notification(transaction, customer)

        if workflow_request_id is not None:
            await self._set_stage(workflow_request_id, WorkflowStage.COMPLETED)
        if self._bus is not None:
            self._bus.publish(
                simple_event(
                    EventType.WORKFLOW_COMPLETED,
                    tenant_id,
                    transaction_id=str(transaction.id),
                    demo_mode=issuance.demo_mode,
                )
            )

        parts = [
            "Billing completed in demonstration mode: no fiscal document was issued."
            if issuance.demo_mode
            else f"Billing completed. Fiscal document submitted through {issuance.provider_used}."
        ]
        if boleto:
            parts.append("Payment slip generated.")
        if notified:
            parts.append("Email scheduled for the customer.")

        return WorkflowResponse(
            step="completed",
            message=" ".join(parts),
            requires_approval=False,
            transaction_id=transaction.id,
            nfse=issuance.to_dict(),
            boleto=boleto,
            demo_mode=issuance.demo_mode,
        )

    async def _generate_slip(
        self, transaction: Transaction, customer: dict[str, Any] | None
    ) -> dict[str, Any] | None:
        if self._slip_generator is None:
            return None
        accounts = await self._store.select(
            "bank_accounts", {"tenant_id": transaction.tenant_id}, limit=1
        )
        if not accounts:
            return None
        try:
            return await self._slip_generator.generate(transaction, customer, accounts[0])
        except Exception as e:
            self._logger.warning(
                "payment_slip_failed",
                transaction_id=str(transaction.id),
                error=str(e) or repr(e),
            )
            return None

    async def _schedule_notification(
        self, transaction: Transaction, customer: dict[str, Any] | None
    ) -> bool:
        if not customer or not customer.get("email"):
            return False
        try:
            if await self._store.count(
                "notifications", {"entity_type": "INVOICE", "entity_id": transaction.id}
            ):
                return True
            config = await self._fiscal_config(transaction.tenant_id)
            company = config.get("company_name") or ""
            await self._store.insert(
                "notifications",
                {
                    "tenant_id": transaction.tenant_id,
                    "entity_type": "INVOICE",
                    "entity_id": transaction.id,
                    "channel": "email",
                    "recipient_name": counterpart_name(customer),
                    "recipient_email": customer["email"],
                    "subject": f"Service invoice - {company}".rstrip(" -"),
                    "content": (
                        f"Service: {transaction.description}\n"
                        f"Amount: {transaction.gross_amount}\n"
                        f"Due date: {transaction.due_date}"
                    ),
                    "status": "scheduled",
                    "scheduled_at": datetime.now(UTC),
                },
            )
        except Exception as e:
            self._logger.warning(
                "notification_schedule_failed",
                transaction_id=str(transaction.id),
                error=str(e) or repr(e),
            )
            return False
        return True
