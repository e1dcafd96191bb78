"""Request and response shapes for the billing workflow entry point.

Requests are a tagged union keyed by ``action``; an unknown action or a
missing field fails validation before the workflow touches the store.
Fields are accepted in camelCase or snake_case.
"""

from datetime import date
from decimal import Decimal
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from fiscal_flow.errors import ValidationError


class _Payload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        str_strip_whitespace=True,
    )


class StartRequest(_Payload):
    action: Literal["start"]


class _BillingFields(_Payload):
    customer_id: UUID
    service_description: str = Field(min_length=1)
    amount: Decimal
    due_date: date
    service_code: str | None = None

    @field_validator("amount")
    @classmethod
    def amount_positive(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("Amount must be greater than zero")
        return value


class PrepareRequest(_BillingFields):
    action: Literal["prepare"]


class SubmitForApprovalRequest(_BillingFields):
    action: Literal["submit_for_approval"]


class ExecuteApprovedRequest(_Payload):
    action: Literal["execute_approved"]
    approval_id: UUID | None = None
    transaction_id: UUID | None = None

    @model_validator(mode="after")
    def needs_reference(self) -> "ExecuteApprovedRequest":
        if self.approval_id is None and self.transaction_id is None:
            raise ValueError("approvalId or transactionId is required")
        return self


WorkflowPayload = Annotated[
    StartRequest | PrepareRequest | SubmitForApprovalRequest | ExecuteApprovedRequest,
    Field(discriminator="action"),
]

_payload_adapter: TypeAdapter[Any] = TypeAdapter(WorkflowPayload)

ACTIONS = ("start", "prepare", "submit_for_approval", "execute_approved")


def _describe(error: dict[str, Any]) -> str:
    if error["type"] in ("union_tag_invalid", "union_tag_not_found"):
        action = error.get("input", {}).get("action") if isinstance(error.get("input"), dict) else None
        if action is None:
            return "Missing action"
        return f"Unknown action: {action}"

    location = ".".join(str(part) for part in error["loc"][1:]) or "request"
    if error["type"] == "missing":
        return f"Missing required field: {location}"
    message = str(error["msg"]).removeprefix("Value error, ")
    return f"{location}: {message}" if location != "request" else message


def parse_request(data: Any) -> StartRequest | PrepareRequest | SubmitForApprovalRequest | ExecuteApprovedRequest:
    """Validate a raw request body into its action-specific payload.

    Raises:
        ValidationError: Unknown action, missing or invalid field.
    """
    if not isinstance(data, dict):
        raise ValidationError("Request body must be an object")
    try:
        return _payload_adapter.validate_python(data)
    except PydanticValidationError as e:
        errors = e.errors(include_url=False)
        raise ValidationError(_describe(errors[0]), details={"fields": [_describe(x) for x in errors]}) from e


class WorkflowResponse(BaseModel):
    """Body returned by every successful workflow stage."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    step: str
    message: str
    requires_approval: bool | None = None
    approval_id: UUID | None = None
    transaction_id: UUID | None = None
    workflow_request_id: UUID | None = None
    preview: dict[str, Any] | None = None
    can_auto_approve: bool | None = None
    customers: list[dict[str, Any]] | None = None
    categories: list[dict[str, Any]] | None = None
    suggestions: list[dict[str, Any]] | None = None
    questions: list[dict[str, Any]] | None = None
    nfse: dict[str, Any] | None = None
    boleto: dict[str, Any] | None = None
    demo_mode: bool | None = None

    def to_body(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
