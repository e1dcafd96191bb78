"""Exception hierarchy shared by the workflow, approval, issuance and monitor layers.

Every error carries the HTTP-style status code the entry points answer
with, so callers can turn any of them into an ``{"error": message}`` body
without a lookup table.
"""

from typing import Any


class FiscalFlowError(Exception):
    """Base exception for fiscal-flow errors."""

    status_code: int = 500
    # Detail keys safe to show callers; anything else stays server-side
    public_details: tuple[str, ...] = ()

    def __init__(self, message: str, status_code: int | None = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the error body returned to callers."""
        payload: dict[str, Any] = {"error": self.message}
        if isinstance(self.details, dict):
            payload.update(
                (key, self.details[key]) for key in self.public_details if key in self.details
            )
        return payload


class ValidationError(FiscalFlowError):
    """Missing or invalid input, or an operation not allowed in the current state."""

    status_code = 400
    public_details = ("fields",)


class AuthorizationError(FiscalFlowError):
    """The caller has no tenant, or the record belongs to another tenant."""

    status_code = 403


class NotFoundError(FiscalFlowError):
    """A referenced record does not exist."""

    status_code = 404


class ConflictError(FiscalFlowError):
    """A transition lost a race or was already applied."""

    status_code = 409


class AlreadyIssuedError(ConflictError):
    """Issuance requested for a transaction that already has an invoice number."""

    public_details = ("transactionId", "invoiceNumber", "invoiceKey")

    def __init__(self, transaction_id: Any, invoice_number: str, invoice_key: str | None):
        super().__init__(
            "Fiscal document already issued for this transaction",
            details={
                "transactionId": str(transaction_id),
                "invoiceNumber": invoice_number,
                "invoiceKey": invoice_key,
            },
        )
        self.transaction_id = transaction_id
        self.invoice_number = invoice_number
        self.invoice_key = invoice_key


class SubstitutionNotSupportedError(FiscalFlowError):
    """The provider or municipality does not accept document replacement."""

    status_code = 422
    public_details = ("city_support", "suggestion")
    suggestion = "Cancel the document and issue a new one"

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(
            message,
            details={"city_support": False, "suggestion": self.suggestion},
        )
        self.provider = provider
        self.city_support = False


class ProviderError(FiscalFlowError):
    """An issuance provider failed or answered with a non-success status."""

    status_code = 502

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        details: Any = None,
    ):
        super().__init__(f"{provider}: {message}", details=details)
        self.provider = provider
        self.provider_status = status_code


class StoreError(FiscalFlowError):
    """The record store failed or answered with an unexpected status."""


class RowNotFoundError(NotFoundError):
    """A conditional update targeted a row that does not exist."""

    def __init__(self, table: str, row_id: Any):
        super().__init__(f"{table} row {row_id} not found")
        self.table = table
        self.row_id = row_id


class PreconditionFailedError(ConflictError):
    """A conditional update found the row in a different state than expected."""

    def __init__(self, table: str, row_id: Any, expected: dict[str, Any]):
        super().__init__(f"{table} row {row_id} no longer matches {sorted(expected)}")
        self.table = table
        self.row_id = row_id
        self.expected = expected
