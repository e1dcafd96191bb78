"""Focus NFe provider (secondary)."""

from datetime import date
from typing import Any

import httpx

from fiscal_flow.config import get_settings
from fiscal_flow.issuance.providers.base import (
    HttpIssuanceProvider,
    IssuanceRequest,
    IssuanceResult,
    StatusResult,
)
from fiscal_flow.models import InvoiceStatus

STATUS_MAP: dict[str, InvoiceStatus] = {
    "autorizado": InvoiceStatus.ISSUED,
    "erro_autorizacao": InvoiceStatus.REJECTED,
    "cancelado": InvoiceStatus.CANCELLED,
    "processando_autorizacao": InvoiceStatus.PROCESSING,
}


class FocusNFeProvider(HttpIssuanceProvider):
    """Focus NFe API client using a tenant token or the global one."""

    name = "focusnfe"

    @property
    def token(self) -> str | None:
        tenant_token = self.fiscal_config.get("focusnfe_token")
        if tenant_token:
            return str(tenant_token)
        global_token = get_settings().focusnfe_token
        return global_token.get_secret_value() if global_token else None

    @property
    def is_configured(self) -> bool:
        return bool(self.token)

    @property
    def base_url(self) -> str:
        return get_settings().focusnfe_url

    def _client_options(self) -> dict[str, Any]:
        return {"auth": httpx.BasicAuth(self.token or "", "")}

    def build_payload(self, request: IssuanceRequest) -> dict[str, Any]:
        tomador: dict[str, Any] = {
            "razao_social": request.counterpart.name,
            "email": request.counterpart.email,
        }
        if request.counterpart.cnpj:
            tomador["cnpj"] = request.counterpart.cnpj
        elif request.counterpart.cpf:
            tomador["cpf"] = request.counterpart.cpf

        return {
            "data_emissao": date.today().isoformat(),
            "natureza_operacao": request.nature,
            "prestador": {
                "cnpj": request.issuer.cnpj,
                "inscricao_municipal": request.issuer.municipal_inscription,
                "codigo_municipio": request.issuer.city_code,
            },
            "tomador": tomador,
            "servico": {
                "aliquota": float(request.iss_rate),
                "discriminacao": request.description,
                "iss_retido": False,
                "item_lista_servico": request.service_code,
                "valor_servicos": float(request.amount),
            },
        }

    async def issue(self, request: IssuanceRequest) -> IssuanceResult:
        response = await self._send(
            "POST",
            "/v2/nfse",
            params={"ref": request.reference},
            json=self.build_payload(request),
        )
        data = self._json(response)
        reference = str(data.get("ref") or request.reference)
        status = str(data.get("status") or "")

        self._logger.info("nfse_submitted", ref=reference, provider_status=status)
        return IssuanceResult(
            provider=self.name,
            integration_id=reference,
            status=InvoiceStatus.ISSUED if status == "autorizado" else InvoiceStatus.PROCESSING,
            invoice_number=str(data.get("numero") or reference),
            invoice_key=str(data.get("codigo_verificacao") or reference),
            raw=data,
        )

    async def status(self, integration_id: str) -> StatusResult:
        response = await self._send("GET", f"/v2/nfse/{integration_id}")
        if response.status_code == 404:
            return StatusResult(status=InvoiceStatus.PROCESSING, message="Document not found yet")

        data = self._json(response)
        errors = data.get("erros") or []
        return StatusResult(
            status=STATUS_MAP.get(str(data.get("status") or ""), InvoiceStatus.PROCESSING),
            invoice_number=data.get("numero"),
            invoice_key=data.get("codigo_verificacao"),
            message=errors[0].get("mensagem") if errors else None,
            raw=data,
        )

    async def cancel(self, integration_id: str, reason: str) -> None:
        response = await self._send(
            "DELETE", f"/v2/nfse/{integration_id}", json={"justificativa": reason}
        )
        self._json(response)
