"""Loader for the regime-keyed preview tax table."""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

TAX_TABLE_PATH = Path(__file__).resolve().parent / "tax_regimes.yaml"


def _to_rates(raw: dict[str, Any]) -> dict[str, Decimal]:
    return {str(name).lower(): Decimal(str(rate)) for name, rate in raw.items()}


@lru_cache
def load_tax_table() -> tuple[str, dict[str, dict[str, Decimal]]]:
    """Load the tax table shipped with the package.

    Returns:
        Tuple of (fallback regime name, mapping of regime to tax rates).
    """
    data = yaml.safe_load(TAX_TABLE_PATH.read_text(encoding="utf-8")) or {}
    regimes = {
        str(name).upper(): _to_rates(rates or {})
        for name, rates in (data.get("regimes") or {}).items()
    }
    fallback = str(data.get("default", "LUCRO_REAL")).upper()
    if fallback not in regimes:
        raise ValueError(f"Fallback regime {fallback} missing from tax table")
    return fallback, regimes


def rates_for_regime(regime: str | None) -> dict[str, Decimal]:
    """Return the tax rates for a regime, falling back to the default regime."""
    fallback, regimes = load_tax_table()
    key = (regime or "").strip().upper()
    return dict(regimes.get(key, regimes[fallback]))
