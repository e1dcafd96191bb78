"""Billing workflow orchestration."""

from fiscal_flow.taxes import TaxPreview, compute_tax_preview
from fiscal_flow.workflow.orchestrator import BillingWorkflow, CallerContext, WorkflowUnit
from fiscal_flow.workflow.payloads import (
    ExecuteApprovedRequest,
    PrepareRequest,
    StartRequest,
    SubmitForApprovalRequest,
    WorkflowResponse,
    parse_request,
)

__all__ = [
    "BillingWorkflow",
    "CallerContext",
    "ExecuteApprovedRequest",
    "PrepareRequest",
    "StartRequest",
    "SubmitForApprovalRequest",
    "TaxPreview",
    "WorkflowResponse",
    "WorkflowUnit",
    "compute_tax_preview",
    "parse_request",
]
