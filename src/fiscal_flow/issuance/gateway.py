"""Issuance gateway: ordered provider fallback with idempotent write-back.

Providers are tried strictly in order, one at a time. Each attempt is
bounded by ``provider_timeout`` and retried ``provider_retries`` times with
exponential backoff before moving on. When no provider is configured, or
all of them fail, the transaction receives a placeholder number and the
result says so explicitly ("demonstration mode").

The transaction write-back is one conditional update guarded by
``invoice_number IS NULL``, so two concurrent issuances cannot both win.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

import structlog

from fiscal_flow.config import get_settings, rates_for_regime
from fiscal_flow.errors import (
    AlreadyIssuedError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PreconditionFailedError,
    SubstitutionNotSupportedError,
    ValidationError,
)
from fiscal_flow.events import EventBus, EventType, invoice_event
from fiscal_flow.issuance.providers import (
    Counterpart,
    IssuanceProvider,
    IssuanceRequest,
    IssuanceResult,
    Issuer,
    SubstitutionRequest,
    default_providers,
)
from fiscal_flow.models import InvoiceStatus, Transaction, counterpart_name
from fiscal_flow.store import Insert, RecordStore, Update
from fiscal_flow.taxes import compute_tax_preview

logger = structlog.get_logger(__name__)

DEMO_PROVIDER = "demo"
MIN_REASON_LENGTH = 15
DEFAULT_SERVICE_CODE = "01.07"

ProviderFactory = Callable[[dict[str, Any] | None], list[IssuanceProvider]]


@dataclass
class IssuanceOutcome:
    """Normalized result of an issuance attempt chain."""

    transaction_id: UUID
    invoice_number: str
    invoice_key: str | None
    provider_used: str
    integration_id: str | None
    status: InvoiceStatus
    demo_mode: bool = False
    message: str = ""
    attempts: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": not self.demo_mode,
            "transactionId": str(self.transaction_id),
            "invoiceNumber": self.invoice_number,
            "invoiceKey": self.invoice_key,
            "providerUsed": self.provider_used,
            "integrationId": self.integration_id,
            "status": self.status.value,
            "demoMode": self.demo_mode,
            "message": self.message,
        }


class IssuanceGateway:
    """Obtains fiscal document identifiers for transactions."""

    def __init__(
        self,
        store: RecordStore,
        bus: EventBus | None = None,
        provider_factory: ProviderFactory | None = None,
        timeout: float | None = None,
        retries: int | None = None,
        retry_backoff: float | None = None,
    ):
        settings = get_settings()
        self._store = store
        self._bus = bus
        self._provider_factory = provider_factory or default_providers
        self._timeout = timeout if timeout is not None else settings.provider_timeout
        self._retries = retries if retries is not None else settings.provider_retries
        self._retry_backoff = (
            retry_backoff if retry_backoff is not None else settings.provider_retry_backoff
        )
        self._logger = logger.bind(component="issuance_gateway")

    # === Lookups ===

    async def _load_transaction(self, transaction_id: Any, tenant_id: UUID | None) -> Transaction:
        row = await self._store.get("transactions", transaction_id)
        if row is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        transaction = Transaction.from_row(row)
        if tenant_id is not None and transaction.tenant_id != tenant_id:
            raise AuthorizationError("Transaction belongs to another tenant")
        return transaction

    async def _fiscal_config(self, tenant_id: UUID) -> dict[str, Any]:
        rows = await self._store.select("fiscal_configs", {"tenant_id": tenant_id}, limit=1)
        return rows[0] if rows else {}

    async def _providers(self, tenant_id: UUID) -> list[IssuanceProvider]:
        return self._provider_factory(await self._fiscal_config(tenant_id))

    async def _provider_named(self, tenant_id: UUID, name: str | None) -> IssuanceProvider:
        if not name or name == DEMO_PROVIDER:
            raise ValidationError("Document was not issued through a provider")
        for provider in await self._providers(tenant_id):
            if provider.name == name and provider.is_configured:
                return provider
        raise ValidationError(f"Provider {name} is not configured for this tenant")

    async def build_request(self, transaction: Transaction) -> IssuanceRequest:
        """Assemble the normalized provider request for a transaction."""
        fiscal_config = await self._fiscal_config(transaction.tenant_id)
        customer = None
        if transaction.customer_id:
            customer = await self._store.get("customers", transaction.customer_id)

        address = None
        if customer and customer.get("street"):
            address = {
                "logradouro": customer.get("street"),
                "numero": customer.get("address_number"),
                "bairro": customer.get("neighborhood"),
                "codigoCidade": customer.get("city_code"),
                "cep": customer.get("zip_code"),
                "estado": customer.get("state"),
            }

        regime = transaction.tax_regime or fiscal_config.get("tax_regime")
        iss_rate = rates_for_regime(regime).get("iss", Decimal("0.05")) * 100

        return IssuanceRequest(
            reference=str(transaction.id),
            issuer=Issuer(
                cnpj=str(fiscal_config.get("cnpj") or ""),
                municipal_inscription=fiscal_config.get("municipal_inscription"),
                company_name=str(fiscal_config.get("company_name") or ""),
                city_code=fiscal_config.get("city_code"),
            ),
            counterpart=Counterpart(
                name=counterpart_name(customer),
                cnpj=(customer or {}).get("cnpj"),
                cpf=(customer or {}).get("cpf"),
                email=(customer or {}).get("email"),
                address=address,
            ),
            service_code=str(
                transaction.service_code
                or fiscal_config.get("service_code")
                or DEFAULT_SERVICE_CODE
            ),
            description=transaction.description,
            amount=transaction.gross_amount,
            iss_rate=iss_rate.quantize(Decimal("0.01")),
        )

    # === Issue ===

    async def _attempt(
        self, provider: IssuanceProvider, request: IssuanceRequest
    ) -> IssuanceResult:
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(provider.issue(request), self._timeout)
            except Exception:
                if attempt >= self._retries:
                    raise
                delay = self._retry_backoff * (2**attempt)
                self._logger.info(
                    "provider_retry", provider=provider.name, attempt=attempt + 1, delay=delay
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def issue(self, transaction_id: Any, tenant_id: UUID | None = None) -> IssuanceOutcome:
        """Issue a fiscal document for a transaction.

        Raises:
            AlreadyIssuedError: The transaction already carries an invoice number.
            ConflictError: A concurrent issuance won the write-back.
        """
        transaction = await self._load_transaction(transaction_id, tenant_id)
        if transaction.invoice_number:
            raise AlreadyIssuedError(
                transaction.id, transaction.invoice_number, transaction.invoice_key
            )

        request = await self.build_request(transaction)
        providers = await self._providers(transaction.tenant_id)
        attempts: list[dict[str, Any]] = []
        result: IssuanceResult | None = None

        try:
            for provider in providers:
                if not provider.is_configured:
                    continue
                started = time.perf_counter()
                try:
                    result = await self._attempt(provider, request)
                except Exception as e:
                    attempts.append(
                        {"provider": provider.name, "success": False, "error": str(e) or repr(e)}
                    )
                    self._logger.warning(
                        "provider_failed",
                        provider=provider.name,
                        transaction_id=str(transaction.id),
                        error=str(e) or repr(e),
                        duration_ms=int((time.perf_counter() - started) * 1000),
                    )
                    continue
                attempts.append({"provider": provider.name, "success": True})
                break
        finally:
            for provider in providers:
                await provider.close()

        if result is not None:
            outcome = IssuanceOutcome(
                transaction_id=transaction.id,
                invoice_number=result.invoice_number or result.integration_id,
                invoice_key=result.invoice_key,
                provider_used=result.provider,
                integration_id=result.integration_id,
                status=result.status,
                message=f"Fiscal document submitted through {result.provider}",
                attempts=attempts,
            )
        else:
            stamp = int(time.time() * 1000)
            outcome = IssuanceOutcome(
                transaction_id=transaction.id,
                invoice_number=f"DEMO-{stamp}",
                invoice_key=f"DEMO-KEY-{stamp}",
                provider_used=DEMO_PROVIDER,
                integration_id=None,
                status=InvoiceStatus.PENDING,
                demo_mode=True,
                message="Demonstration mode: no fiscal document was issued",
                attempts=attempts,
            )

        try:
            await self._store.update(
                "transactions",
                transaction.id,
                {
                    "invoice_number": outcome.invoice_number,
                    "invoice_key": outcome.invoice_key,
                    "invoice_integration_id": outcome.integration_id,
                    "invoice_provider": outcome.provider_used,
                    "invoice_status": outcome.status.value,
                },
                expected={"invoice_number": None},
            )
        except PreconditionFailedError as e:
            raise ConflictError("Transaction was issued by a concurrent request") from e

        await self._store.insert(
            "issuance_logs",
            {
                "tenant_id": transaction.tenant_id,
                "transaction_id": transaction.id,
                "action": "issue",
                "provider": outcome.provider_used,
                "demo_mode": outcome.demo_mode,
                "attempts": attempts,
            },
        )

        self._logger.info(
            "invoice_issued",
            transaction_id=str(transaction.id),
            provider=outcome.provider_used,
            status=outcome.status.value,
            demo_mode=outcome.demo_mode,
        )
        self._publish(
            EventType.INVOICE_ISSUED,
            transaction,
            outcome.provider_used,
            outcome.invoice_number,
            outcome.status,
            outcome.demo_mode,
        )
        return outcome

    async def existing_outcome(
        self, transaction_id: Any, tenant_id: UUID | None = None
    ) -> IssuanceOutcome:
        """Outcome describing the document a transaction already carries."""
        transaction = await self._load_transaction(transaction_id, tenant_id)
        if not transaction.invoice_number:
            raise ValidationError("Transaction has no fiscal document")
        provider = transaction.invoice_provider or DEMO_PROVIDER
        demo_mode = provider == DEMO_PROVIDER
        return IssuanceOutcome(
            transaction_id=transaction.id,
            invoice_number=transaction.invoice_number,
            invoice_key=transaction.invoice_key,
            provider_used=provider,
            integration_id=transaction.invoice_integration_id,
            status=transaction.invoice_status or InvoiceStatus.PENDING,
            demo_mode=demo_mode,
            message=(
                "Demonstration mode: no fiscal document was issued"
                if demo_mode
                else f"Fiscal document submitted through {provider}"
            ),
        )

    # === Status, cancellation, substitution ===

    async def refresh_status(
        self, transaction_id: Any, tenant_id: UUID | None = None
    ) -> dict[str, Any]:
        """Query the provider for the current document status and persist changes."""
        transaction = await self._load_transaction(transaction_id, tenant_id)
        current = transaction.invoice_status
        body: dict[str, Any] = {
            "transactionId": str(transaction.id),
            "status": current.value if current else None,
            "invoiceNumber": transaction.invoice_number,
            "invoiceKey": transaction.invoice_key,
        }
        if not transaction.invoice_integration_id or transaction.invoice_provider in (
            None,
            DEMO_PROVIDER,
        ):
            body["message"] = "No provider document to query"
            return body
        if current in (InvoiceStatus.REPLACED, InvoiceStatus.CANCELLED):
            body["message"] = f"Fiscal document is {current.value}"
            if transaction.replaced_by_transaction_id:
                body["replacedByTransactionId"] = str(transaction.replaced_by_transaction_id)
            return body

        provider = await self._provider_named(transaction.tenant_id, transaction.invoice_provider)
        try:
            result = await asyncio.wait_for(
                provider.status(transaction.invoice_integration_id), self._timeout
            )
        finally:
            await provider.close()

        number = result.invoice_number or transaction.invoice_number
        key = result.invoice_key or transaction.invoice_key
        if result.status != current or number != transaction.invoice_number:
            try:
                await self._store.update(
                    "transactions",
                    transaction.id,
                    {
                        "invoice_status": result.status.value,
                        "invoice_number": number,
                        "invoice_key": key,
                    },
                    expected={"invoice_status": current.value if current else None},
                )
            except PreconditionFailedError as e:
                raise ConflictError("Transaction status changed concurrently") from e
            self._logger.info(
                "invoice_status_changed",
                transaction_id=str(transaction.id),
                old=current.value if current else None,
                new=result.status.value,
            )

        body.update(
            status=result.status.value,
            invoiceNumber=number,
            invoiceKey=key,
            message=result.message,
        )
        return body

    async def cancel(
        self, transaction_id: Any, reason: str, tenant_id: UUID | None = None
    ) -> dict[str, Any]:
        """Cancel an issued document, at the provider when possible."""
        if len((reason or "").strip()) < MIN_REASON_LENGTH:
            raise ValidationError(
                f"Cancellation reason must have at least {MIN_REASON_LENGTH} characters"
            )
        transaction = await self._load_transaction(transaction_id, tenant_id)
        if transaction.invoice_status == InvoiceStatus.CANCELLED:
            raise ConflictError("Fiscal document is already cancelled")
        if not transaction.invoice_number:
            raise ValidationError("Transaction has no fiscal document to cancel")

        cancelled_at_provider = False
        if transaction.invoice_integration_id and transaction.invoice_provider not in (
            None,
            DEMO_PROVIDER,
        ):
            try:
                provider = await self._provider_named(
                    transaction.tenant_id, transaction.invoice_provider
                )
            except ValidationError as e:
                self._logger.warning("cancel_provider_unavailable", error=str(e))
            else:
                try:
                    await asyncio.wait_for(
                        provider.cancel(transaction.invoice_integration_id, reason),
                        self._timeout,
                    )
                    cancelled_at_provider = True
                except Exception as e:
                    self._logger.warning(
                        "provider_cancel_failed",
                        provider=provider.name,
                        transaction_id=str(transaction.id),
                        error=str(e) or repr(e),
                    )
                finally:
                    await provider.close()

        current = transaction.invoice_status
        try:
            await self._store.update(
                "transactions",
                transaction.id,
                {
                    "invoice_status": InvoiceStatus.CANCELLED.value,
                    "invoice_cancel_reason": reason,
                    "invoice_cancelled_at": datetime.now(UTC),
                },
                expected={"invoice_status": current.value if current else None},
            )
        except PreconditionFailedError as e:
            raise ConflictError("Transaction status changed concurrently") from e

        self._publish(
            EventType.INVOICE_CANCELLED,
            transaction,
            transaction.invoice_provider or DEMO_PROVIDER,
            transaction.invoice_number,
            InvoiceStatus.CANCELLED,
        )
        return {
            "transactionId": str(transaction.id),
            "status": InvoiceStatus.CANCELLED.value,
            "cancelledAtProvider": cancelled_at_provider,
            "message": (
                "Fiscal document cancelled at the provider"
                if cancelled_at_provider
                else "Fiscal document cancelled locally only"
            ),
        }

    async def substitute(
        self,
        transaction_id: Any,
        reason: str,
        service_description: str | None = None,
        service_code: str | None = None,
        gross_amount: Decimal | None = None,
        tenant_id: UUID | None = None,
    ) -> dict[str, Any]:
        """Replace an issued document with a corrected successor.

        The original is marked ``replaced`` and linked forward to a new
        transaction carrying the provider's replacement identifier.

        Raises:
            SubstitutionNotSupportedError: The provider or municipality refuses replacement.
        """
        if len((reason or "").strip()) < MIN_REASON_LENGTH:
            raise ValidationError(
                f"Substitution reason must have at least {MIN_REASON_LENGTH} characters"
            )
        if gross_amount is not None and gross_amount <= 0:
            raise ValidationError("Amount must be greater than zero")

        original = await self._load_transaction(transaction_id, tenant_id)
        if original.invoice_status != InvoiceStatus.ISSUED:
            raise ValidationError("Only issued documents can be substituted")
        if not original.invoice_integration_id:
            raise ValidationError("Transaction has no provider integration id")

        provider = await self._provider_named(original.tenant_id, original.invoice_provider)
        try:
            if not provider.supports_substitution:
                raise SubstitutionNotSupportedError(
                    f"{provider.name} does not support document substitution",
                    provider=provider.name,
                )
            description = service_description or original.description
            amount = gross_amount if gross_amount is not None else original.gross_amount
            result = await asyncio.wait_for(
                provider.substitute(
                    SubstitutionRequest(
                        integration_id=original.invoice_integration_id,
                        reason=reason,
                        description=description,
                        service_code=service_code or original.service_code,
                        amount=amount,
                    )
                ),
                self._timeout,
            )
        except SubstitutionNotSupportedError:
            self._logger.info(
                "substitution_not_supported",
                provider=provider.name,
                transaction_id=str(original.id),
            )
            raise
        finally:
            await provider.close()

        net_amount = original.net_amount
        if gross_amount is not None:
            regime = original.tax_regime or (await self._fiscal_config(original.tenant_id)).get(
                "tax_regime"
            )
            net_amount = compute_tax_preview(amount, regime).net_amount

        successor_id = uuid4()
        successor = Transaction(
            id=successor_id,
            tenant_id=original.tenant_id,
            type=original.type,
            description=f"[SUBSTITUTION] {description}",
            gross_amount=amount,
            net_amount=net_amount,
            due_date=original.due_date,
            customer_id=original.customer_id,
            category_id=original.category_id,
            tax_regime=original.tax_regime,
            service_code=service_code or original.service_code,
            invoice_status=result.status,
            invoice_integration_id=result.integration_id,
            invoice_provider=provider.name,
            replaces_transaction_id=original.id,
        )
        try:
            await self._store.commit(
                [
                    Update(
                        "transactions",
                        original.id,
                        {
                            "invoice_status": InvoiceStatus.REPLACED.value,
                            "replaced_by_transaction_id": successor_id,
                        },
                        expected={
                            "invoice_status": InvoiceStatus.ISSUED.value,
                            "replaced_by_transaction_id": None,
                        },
                    ),
                    Insert("transactions", successor.to_row()),
                ]
            )
        except PreconditionFailedError as e:
            raise ConflictError("Transaction was substituted or changed concurrently") from e

        await self._store.insert(
            "issuance_logs",
            {
                "tenant_id": original.tenant_id,
                "transaction_id": original.id,
                "action": "substitute",
                "provider": provider.name,
                "reason": reason,
                "new_integration_id": result.integration_id,
                "new_transaction_id": successor_id,
            },
        )
        self._logger.info(
            "invoice_substituted",
            original_transaction_id=str(original.id),
            new_transaction_id=str(successor_id),
        )
        self._publish(
            EventType.INVOICE_SUBSTITUTED,
            original,
            provider.name,
            original.invoice_number,
            InvoiceStatus.REPLACED,
        )
        return {
            "success": True,
            "originalTransactionId": str(original.id),
            "newTransactionId": str(successor_id),
            "newIntegrationId": result.integration_id,
            "status": result.status.value,
            "message": "Substitution accepted; the new document is being processed",
        }

    def _publish(
        self,
        event_type: EventType,
        transaction: Transaction,
        provider: str,
        invoice_number: str | None,
        status: InvoiceStatus,
        demo_mode: bool = False,
    ) -> None:
        if self._bus is None:
            return
        self._bus.publish(
            invoice_event(
                event_type,
                transaction.tenant_id,
                transaction.id,
                provider,
                invoice_number,
                status.value,
                demo_mode,
            )
        )
