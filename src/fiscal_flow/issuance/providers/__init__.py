"""Issuance provider adapters."""

from typing import Any

from fiscal_flow.issuance.providers.base import (
    Counterpart,
    HttpIssuanceProvider,
    IssuanceProvider,
    IssuanceRequest,
    IssuanceResult,
    Issuer,
    StatusResult,
    SubstitutionRequest,
)
from fiscal_flow.issuance.providers.focusnfe import FocusNFeProvider
from fiscal_flow.issuance.providers.plugnotas import PlugNotasProvider


def default_providers(fiscal_config: dict[str, Any] | None) -> list[IssuanceProvider]:
    """Providers in fallback order: PlugNotas first, then Focus NFe."""
    return [PlugNotasProvider(fiscal_config), FocusNFeProvider(fiscal_config)]


__all__ = [
    "Counterpart",
    "FocusNFeProvider",
    "HttpIssuanceProvider",
    "IssuanceProvider",
    "IssuanceRequest",
    "IssuanceResult",
    "Issuer",
    "PlugNotasProvider",
    "StatusResult",
    "SubstitutionRequest",
    "default_providers",
]
