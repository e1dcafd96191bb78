"""Pytest configuration and fixtures."""

import os
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("WORKER_RETRY_BACKOFF", "0")
os.environ.setdefault("PROVIDER_RETRY_BACKOFF", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from fiscal_flow.container import Container, build_container  # noqa: E402
from fiscal_flow.events import EventBus  # noqa: E402
from fiscal_flow.issuance.providers import (  # noqa: E402
    IssuanceProvider,
    IssuanceRequest,
    IssuanceResult,
    StatusResult,
    SubstitutionRequest,
)
from fiscal_flow.models import InvoiceStatus  # noqa: E402
from fiscal_flow.store import InMemoryRecordStore  # noqa: E402

TENANT_ID = UUID("11111111-1111-1111-1111-111111111111")
OTHER_TENANT_ID = UUID("22222222-2222-2222-2222-222222222222")
USER_ID = UUID("33333333-3333-3333-3333-333333333333")
REVIEWER_ID = UUID("44444444-4444-4444-4444-444444444444")
CUSTOMER_ID = UUID("55555555-5555-5555-5555-555555555555")
PARTNER_ID = UUID("66666666-6666-6666-6666-666666666666")


class FakeProvider(IssuanceProvider):
    """Scripted issuance provider recording every call."""

    def __init__(
        self,
        name: str,
        configured: bool = True,
        fail: bool = False,
        supports_substitution: bool = False,
        status: InvoiceStatus = InvoiceStatus.PROCESSING,
        invoice_number: str | None = None,
    ):
        super().__init__({})
        self.name = name
        self.configured = configured
        self.fail = fail
        self.supports_substitution = supports_substitution
        self.result_status = status
        self.invoice_number = invoice_number or f"{name.upper()}-001"
        self.issued: list[IssuanceRequest] = []
        self.cancelled: list[tuple[str, str]] = []
        self.substituted: list[SubstitutionRequest] = []
        self.remote_status = StatusResult(status=InvoiceStatus.PROCESSING)
        self.closed = 0

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def issue(self, request: IssuanceRequest) -> IssuanceResult:
        self.issued.append(request)
        if self.fail:
            raise RuntimeError(f"{self.name} unavailable")
        return IssuanceResult(
            provider=self.name,
            integration_id=f"{self.name}-{request.reference}",
            status=self.result_status,
            invoice_number=self.invoice_number,
            invoice_key=f"{self.name}-key",
        )

    async def status(self, integration_id: str) -> StatusResult:
        return self.remote_status

    async def cancel(self, integration_id: str, reason: str) -> None:
        self.cancelled.append((integration_id, reason))

    async def substitute(self, request: SubstitutionRequest) -> IssuanceResult:
        if not self.supports_substitution:
            return await super().substitute(request)
        self.substituted.append(request)
        return IssuanceResult(
            provider=self.name,
            integration_id=f"{self.name}-replacement",
            status=InvoiceStatus.PROCESSING,
        )

    async def close(self) -> None:
        self.closed += 1


def tenant_rows() -> dict[str, list[dict[str, Any]]]:
    """Reference data for one tenant with one customer."""
    return {
        "profiles": [
            {"user_id": USER_ID, "tenant_id": TENANT_ID},
            {"user_id": REVIEWER_ID, "tenant_id": TENANT_ID},
        ],
        "customers": [
            {
                "id": CUSTOMER_ID,
                "tenant_id": TENANT_ID,
                "company_name": "Acme Ltda",
                "cnpj": "12345678000199",
                "email": "billing@acme.example",
            }
        ],
        "fiscal_configs": [
            {
                "tenant_id": TENANT_ID,
                "cnpj": "98765432000111",
                "company_name": "Advisory Co",
                "municipal_inscription": "12345",
                "tax_regime": "SIMPLES",
            }
        ],
    }


def transaction_row(**overrides: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        "tenant_id": TENANT_ID,
        "type": "RECEIVABLE",
        "description": "Consulting services",
        "gross_amount": Decimal("500.00"),
        "net_amount": Decimal("460.00"),
        "due_date": date(2026, 11, 1),
        "status": "PENDING",
        "customer_id": CUSTOMER_ID,
        "invoice_status": "pending",
    }
    row.update(overrides)
    return row


@pytest.fixture
def store() -> InMemoryRecordStore:
    """In-memory store seeded with one tenant."""
    return InMemoryRecordStore(tenant_rows())


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def providers() -> list[FakeProvider]:
    """Primary and secondary providers, both healthy."""
    return [FakeProvider("primary"), FakeProvider("secondary")]


@pytest.fixture
def container(store, bus, providers) -> Container:
    return build_container(store=store, bus=bus, provider_factory=lambda config: providers)
