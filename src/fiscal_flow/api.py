"""HTTP surface over the workflow, approval, issuance and monitor services."""

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Body, Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fiscal_flow import __version__
from fiscal_flow.config import configure_logging
from fiscal_flow.container import Container, build_container
from fiscal_flow.errors import FiscalFlowError, ValidationError
from fiscal_flow.models import ApprovalOutcome, as_uuid
from fiscal_flow.workflow import CallerContext

logger = structlog.get_logger(__name__)


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DecisionBody(_Body):
    outcome: ApprovalOutcome
    notes: str | None = None


class CancelBody(_Body):
    reason: str


class SubstituteBody(_Body):
    reason: str
    service_description: str | None = None
    service_code: str | None = None
    gross_amount: Decimal | None = Field(default=None, alias="amount")


def _parse_id(value: str | None, header: str) -> UUID | None:
    try:
        return as_uuid(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {header} header") from e


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_caller(
    x_user_id: str | None = Header(default=None),
    x_tenant_id: str | None = Header(default=None),
) -> CallerContext:
    return CallerContext(
        user_id=_parse_id(x_user_id, "X-User-Id"),
        tenant_id=_parse_id(x_tenant_id, "X-Tenant-Id"),
    )


router = APIRouter()


# === Workflow & approvals ===


@router.post("/workflows/billing")
async def run_billing_workflow(
    payload: dict[str, Any] = Body(...),
    caller: CallerContext = Depends(get_caller),
    container: Container = Depends(get_container),
) -> JSONResponse:
    status_code, body = await container.workflow.handle(payload, caller)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


@router.get("/approvals")
async def list_approvals(
    caller: CallerContext = Depends(get_caller),
    container: Container = Depends(get_container),
) -> list[dict[str, Any]]:
    tenant_id = await container.workflow.resolve_tenant(caller)
    items = await container.queue.list_pending(tenant_id)
    return [item.to_row() for item in items]


@router.post("/approvals/{approval_id}/decision")
async def decide_approval(
    approval_id: UUID,
    decision: DecisionBody,
    caller: CallerContext = Depends(get_caller),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    tenant_id = await container.workflow.resolve_tenant(caller)
    item = await container.queue.decide(
        approval_id, decision.outcome, caller.user_id, decision.notes, tenant_id
    )
    return item.to_row()


# === Fiscal documents ===


@router.get("/transactions/{transaction_id}/invoice-status")
async def invoice_status(
    transaction_id: UUID,
    caller: CallerContext = Depends(get_caller),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    tenant_id = await container.workflow.resolve_tenant(caller)
    return await container.gateway.refresh_status(transaction_id, tenant_id)


@router.post("/transactions/{transaction_id}/cancel")
async def cancel_invoice(
    transaction_id: UUID,
    body: CancelBody,
    caller: CallerContext = Depends(get_caller),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    tenant_id = await container.workflow.resolve_tenant(caller)
    return await container.gateway.cancel(transaction_id, body.reason, tenant_id)


@router.post("/transactions/{transaction_id}/substitute")
async def substitute_invoice(
    transaction_id: UUID,
    body: SubstituteBody,
    caller: CallerContext = Depends(get_caller),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    tenant_id = await container.workflow.resolve_tenant(caller)
    return await container.gateway.substitute(
        transaction_id,
        body.reason,
        service_description=body.service_description,
        service_code=body.service_code,
        gross_amount=body.gross_amount,
        tenant_id=tenant_id,
    )


# === Monitoring ===


@router.post("/monitor/run")
async def run_monitor(container: Container = Depends(get_container)) -> dict[str, Any]:
    summary = await container.monitor.run()
    return summary.to_dict()


@router.post("/partners/{partner_id}/margin-analysis")
async def margin_analysis(
    partner_id: UUID,
    client_id: UUID | None = None,
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    return await container.analyzer.analyze(partner_id, client_id)


@router.get("/partners/{partner_id}/alerts")
async def open_alerts(
    partner_id: UUID, container: Container = Depends(get_container)
) -> list[dict[str, Any]]:
    alerts = await container.alerts.list_open(partner_id)
    return [alert.to_row() for alert in alerts]


@router.post("/alerts/{alert_id}/resolve")
async def resolve_alert(
    alert_id: UUID, container: Container = Depends(get_container)
) -> dict[str, Any]:
    alert = await container.alerts.resolve(alert_id)
    return alert.to_row()


@router.get("/health")
async def health(container: Container = Depends(get_container)) -> dict[str, Any]:
    return {
        "status": "ok",
        "version": __version__,
        "worker_running": container.worker.is_running,
        "scheduler": container.scheduler.get_status(),
    }


# === Application ===


async def _handle_domain_error(request: Request, exc: FiscalFlowError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_payload()))


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = str(errors[0].get("msg")) if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


def create_app(
    container: Container | None = None,
    run_worker: bool = True,
    run_scheduler: bool = False,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        container: Services to expose; built from settings when omitted.
        run_worker: Start the approval worker with the application.
        run_scheduler: Start the periodic monitor with the application.
    """
    container = container or build_container()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        tasks: list[asyncio.Task[None]] = []
        if run_worker:
            tasks.append(asyncio.create_task(container.worker.run()))
        if run_scheduler:
            tasks.append(asyncio.create_task(container.scheduler.run_continuous()))
        logger.info("api_started", worker=run_worker, scheduler=run_scheduler)

        yield

        await container.close()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("api_stopped")

    app = FastAPI(title="fiscal-flow", version=__version__, lifespan=lifespan)
    app.state.container = container
    app.add_exception_handler(FiscalFlowError, _handle_domain_error)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)
    app.include_router(router)
    return app
