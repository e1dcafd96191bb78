"""Issuance provider contract and shared HTTP plumbing."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import httpx
import structlog

from fiscal_flow.config import get_settings
from fiscal_flow.errors import ProviderError, SubstitutionNotSupportedError
from fiscal_flow.models import InvoiceStatus

logger = structlog.get_logger(__name__)


@dataclass
class Issuer:
    """Identity of the company issuing the document."""

    cnpj: str
    municipal_inscription: str | None = None
    company_name: str = ""
    city_code: str | None = None


@dataclass
class Counterpart:
    """Identity of the service taker."""

    name: str
    cnpj: str | None = None
    cpf: str | None = None
    email: str | None = None
    address: dict[str, Any] | None = None

    @property
    def document(self) -> str | None:
        return self.cnpj or self.cpf


@dataclass
class IssuanceRequest:
    """Normalized request sent to any provider."""

    reference: str
    issuer: Issuer
    counterpart: Counterpart
    service_code: str
    description: str
    amount: Decimal
    iss_rate: Decimal
    nature: str = "1"


@dataclass
class SubstitutionRequest:
    integration_id: str
    reason: str
    description: str
    service_code: str | None
    amount: Decimal


@dataclass
class IssuanceResult:
    """Provider response mapped to the normalized shape."""

    provider: str
    integration_id: str
    status: InvoiceStatus
    invoice_number: str | None = None
    invoice_key: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class StatusResult:
    status: InvoiceStatus
    invoice_number: str | None = None
    invoice_key: str | None = None
    message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class IssuanceProvider(ABC):
    """A fiscal document provider configured for one tenant."""

    name: str = ""
    supports_substitution: bool = False

    def __init__(self, fiscal_config: dict[str, Any] | None = None):
        self.fiscal_config = fiscal_config or {}

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Whether the tenant's configuration allows using this provider."""

    @abstractmethod
    async def issue(self, request: IssuanceRequest) -> IssuanceResult:
        """Submit a document for issuance."""

    @abstractmethod
    async def status(self, integration_id: str) -> StatusResult:
        """Query the provider-side status of a document."""

    @abstractmethod
    async def cancel(self, integration_id: str, reason: str) -> None:
        """Ask the provider to cancel a document."""

    async def substitute(self, request: SubstitutionRequest) -> IssuanceResult:
        """Replace an issued document with a corrected one."""
        raise SubstitutionNotSupportedError(
            f"{self.name} does not support document substitution", provider=self.name
        )

    async def close(self) -> None:
        return None


class HttpIssuanceProvider(IssuanceProvider):
    """Provider talking JSON over httpx."""

    def __init__(self, fiscal_config: dict[str, Any] | None = None):
        super().__init__(fiscal_config)
        self._timeout = get_settings().provider_timeout
        self._client: httpx.AsyncClient | None = None
        self._logger = logger.bind(component="provider", provider=self.name)

    @property
    @abstractmethod
    def base_url(self) -> str:
        """Provider API root."""

    def _client_options(self) -> dict[str, Any]:
        return {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
                **self._client_options(),
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _send(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send a request, mapping transport failures to ProviderError."""
        client = await self._get_client()
        try:
            return await client.request(method=method, url=path, json=json, params=params)
        except httpx.RequestError as e:
            raise ProviderError(self.name, f"request failed: {e}") from e

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        """Decode a successful response or raise ProviderError."""
        body: Any
        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {"raw": response.text[:500]}

        if response.status_code >= 400:
            self._logger.warning(
                "provider_error_response",
                status=response.status_code,
                body=str(body)[:500],
            )
            raise ProviderError(
                self.name,
                f"HTTP {response.status_code}",
                status_code=response.status_code,
                details=body,
            )
        if isinstance(body, list):
            return body[0] if body and isinstance(body[0], dict) else {"items": body}
        return body
