"""PlugNotas NFS-e provider (primary)."""

from typing import Any

from fiscal_flow.config import get_settings
from fiscal_flow.errors import ProviderError, SubstitutionNotSupportedError
from fiscal_flow.issuance.providers.base import (
    HttpIssuanceProvider,
    IssuanceRequest,
    IssuanceResult,
    StatusResult,
    SubstitutionRequest,
)
from fiscal_flow.models import InvoiceStatus

PRODUCTION_ENVIRONMENTS = {"PRODUCTION", "PRODUCAO"}

STATUS_MAP: dict[str, InvoiceStatus] = {
    "CONCLUIDO": InvoiceStatus.ISSUED,
    "REJEITADO": InvoiceStatus.REJECTED,
    "ERRO": InvoiceStatus.REJECTED,
    "CANCELADO": InvoiceStatus.CANCELLED,
    "PROCESSANDO": InvoiceStatus.PROCESSING,
}

# Fragments of provider messages meaning the municipality refuses replacement.
UNSUPPORTED_SUBSTITUTION_MARKERS = (
    "não suportada",
    "não permitida",
    "substituição não disponível",
    "cidade não suporta",
)


class PlugNotasProvider(HttpIssuanceProvider):
    """PlugNotas API client bound to one tenant's credentials."""

    name = "plugnotas"
    supports_substitution = True

    @property
    def is_configured(self) -> bool:
        return bool(self.fiscal_config.get("plugnotas_token")) and (
            self.fiscal_config.get("plugnotas_status") == "connected"
        )

    @property
    def base_url(self) -> str:
        settings = get_settings()
        environment = str(self.fiscal_config.get("plugnotas_environment") or "").upper()
        if environment in PRODUCTION_ENVIRONMENTS:
            return settings.plugnotas_production_url
        return settings.plugnotas_sandbox_url

    def _client_options(self) -> dict[str, Any]:
        return {
            "headers": {
                "Content-Type": "application/json",
                "x-api-key": str(self.fiscal_config.get("plugnotas_token") or ""),
            }
        }

    def build_payload(self, request: IssuanceRequest) -> dict[str, Any]:
        tomador: dict[str, Any] = {
            "cpfCnpj": request.counterpart.document,
            "razaoSocial": request.counterpart.name,
            "email": request.counterpart.email,
        }
        if request.counterpart.address:
            tomador["endereco"] = request.counterpart.address

        return {
            "idIntegracao": request.reference,
            "prestador": {
                "cpfCnpj": request.issuer.cnpj,
                "inscricaoMunicipal": request.issuer.municipal_inscription,
            },
            "tomador": tomador,
            "servico": [
                {
                    "codigo": request.service_code,
                    "discriminacao": request.description,
                    "valor": {"servico": float(request.amount)},
                    "iss": {"aliquota": float(request.iss_rate)},
                }
            ],
            "natureza": request.nature,
        }

    async def issue(self, request: IssuanceRequest) -> IssuanceResult:
        # The API takes a batch; we always send one document.
        response = await self._send("POST", "/nfse", json=[self.build_payload(request)])
        data = self._json(response)

        documents = data.get("documents") or []
        document = documents[0] if documents else {}
        invoice_number = document.get("id") or data.get("id")
        if not invoice_number:
            raise ProviderError(self.name, "response carried no document id", details=data)

        self._logger.info("nfse_submitted", document_id=invoice_number)
        return IssuanceResult(
            provider=self.name,
            integration_id=str(document.get("idIntegracao") or request.reference),
            status=InvoiceStatus.PROCESSING,
            invoice_number=str(invoice_number),
            invoice_key=data.get("protocol"),
            raw=data,
        )

    async def status(self, integration_id: str) -> StatusResult:
        response = await self._send("GET", f"/nfse/{integration_id}")
        if response.status_code == 404:
            # Not yet visible on the provider side.
            return StatusResult(status=InvoiceStatus.PROCESSING, message="Document not found yet")

        data = self._json(response)
        situation = str(data.get("situacao") or data.get("status") or "").upper()
        nfse = data.get("nfse") or {}
        return StatusResult(
            status=STATUS_MAP.get(situation, InvoiceStatus.PROCESSING),
            invoice_number=data.get("numero") or nfse.get("numero"),
            invoice_key=data.get("codigoVerificacao") or nfse.get("codigoVerificacao"),
            message=data.get("mensagem"),
            raw=data,
        )

    async def cancel(self, integration_id: str, reason: str) -> None:
        response = await self._send(
            "POST", f"/nfse/{integration_id}/cancelar", json={"motivo": reason}
        )
        self._json(response)

    async def substitute(self, request: SubstitutionRequest) -> IssuanceResult:
        response = await self._send(
            "POST",
            f"/nfse/{request.integration_id}/substituir",
            json={
                "motivo": request.reason,
                "servicoDescricao": request.description,
                "servicoCodigo": request.service_code,
                "servicoValorUnitario": float(request.amount),
            },
        )

        if response.status_code in (400, 422):
            try:
                body = response.json()
            except ValueError:
                body = {}
            message = str(body.get("message") or body.get("erro") or "") if isinstance(body, dict) else ""
            if any(marker in message.lower() for marker in UNSUPPORTED_SUBSTITUTION_MARKERS):
                raise SubstitutionNotSupportedError(
                    "Substitution is not supported by this municipality", provider=self.name
                )
            raise ProviderError(
                self.name,
                message or f"HTTP {response.status_code}",
                status_code=response.status_code,
                details=body,
            )

        data = self._json(response)
        new_id = data.get("id") or data.get("idIntegracao")
        if not new_id:
            raise ProviderError(self.name, "substitution response carried no id", details=data)

        return IssuanceResult(
            provider=self.name,
            integration_id=str(new_id),
            status=InvoiceStatus.PROCESSING,
            raw=data,
        )
