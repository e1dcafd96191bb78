"""Best-effort payment slip (boleto) generation."""

from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

from fiscal_flow.config import get_settings
from fiscal_flow.errors import ProviderError
from fiscal_flow.models import Transaction
from fiscal_flow.store.rest import to_json

logger = structlog.get_logger(__name__)


class PaymentSlipGenerator(ABC):
    """Generates a payment instrument for a receivable."""

    @abstractmethod
    async def generate(
        self,
        transaction: Transaction,
        customer: dict[str, Any] | None,
        bank_account: dict[str, Any],
    ) -> dict[str, Any]:
        """Return the generated slip (barcode, line, URL...)."""


class HttpPaymentSlipGenerator(PaymentSlipGenerator):
    """Posts slip requests to a banking integration endpoint."""

    def __init__(self, url: str, timeout: float | None = None):
        self.url = url
        self._timeout = timeout or get_settings().provider_timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def generate(
        self,
        transaction: Transaction,
        customer: dict[str, Any] | None,
        bank_account: dict[str, Any],
    ) -> dict[str, Any]:
        client = await self._get_client()
        payload = {
            "transactionId": transaction.id,
            "amount": transaction.gross_amount,
            "dueDate": transaction.due_date,
            "bankAccountId": bank_account.get("id"),
            "payer": {
                "name": (customer or {}).get("company_name") or (customer or {}).get("name"),
                "document": (customer or {}).get("cnpj") or (customer or {}).get("cpf"),
            },
        }
        try:
            response = await client.post(self.url, json=to_json(payload))
        except httpx.RequestError as e:
            raise ProviderError("boleto", f"request failed: {e}") from e

        if response.status_code >= 400:
            raise ProviderError("boleto", f"HTTP {response.status_code}", status_code=response.status_code)

        data = response.json() if response.content else {}
        logger.info("payment_slip_generated", transaction_id=str(transaction.id))
        return data if isinstance(data, dict) else {"result": data}


def default_slip_generator() -> PaymentSlipGenerator | None:
    """Build the generator configured in settings, if any."""
    url = get_settings().boleto_api_url
    return HttpPaymentSlipGenerator(url) if url else None
