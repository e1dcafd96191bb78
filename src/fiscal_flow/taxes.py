"""Tax preview computed from the regime rate table."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from fiscal_flow.config import rates_for_regime

CENT = Decimal("0.01")


@dataclass
class TaxPreview:
    regime: str
    gross_amount: Decimal
    taxes: dict[str, Decimal]

    @property
    def total_taxes(self) -> Decimal:
        return sum(self.taxes.values(), Decimal("0"))

    @property
    def net_amount(self) -> Decimal:
        return self.gross_amount - self.total_taxes

    def to_dict(self) -> dict[str, Any]:
        return {
            "regime": self.regime,
            "grossAmount": self.gross_amount,
            "taxes": dict(self.taxes),
            "totalTaxes": self.total_taxes,
            "netAmount": self.net_amount,
        }


def compute_tax_preview(amount: Decimal, regime: str | None) -> TaxPreview:
    """Apply the regime's rates to a gross amount, rounding each tax to cents."""
    gross = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    taxes = {
        name: (gross * rate).quantize(CENT, rounding=ROUND_HALF_UP)
        for name, rate in rates_for_regime(regime).items()
    }
    return TaxPreview(regime=(regime or "").upper(), gross_amount=gross, taxes=taxes)
