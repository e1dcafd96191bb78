"""Fiscal document issuance."""

from fiscal_flow.issuance.gateway import DEMO_PROVIDER, IssuanceGateway, IssuanceOutcome
from fiscal_flow.issuance.payments import (
    HttpPaymentSlipGenerator,
    PaymentSlipGenerator,
    default_slip_generator,
)
from fiscal_flow.issuance.providers import (
    FocusNFeProvider,
    IssuanceProvider,
    PlugNotasProvider,
    default_providers,
)

__all__ = [
    "DEMO_PROVIDER",
    "FocusNFeProvider",
    "HttpPaymentSlipGenerator",
    "IssuanceGateway",
    "IssuanceOutcome",
    "IssuanceProvider",
    "PaymentSlipGenerator",
    "PlugNotasProvider",
    "default_providers",
    "default_slip_generator",
]
