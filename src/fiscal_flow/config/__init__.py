"""Configuration module for fiscal-flow."""

from fiscal_flow.config.logging import configure_logging
from fiscal_flow.config.settings import FlatSettings, get_settings
from fiscal_flow.config.tax_regimes import load_tax_table, rates_for_regime

__all__ = [
    "FlatSettings",
    "get_settings",
    "configure_logging",
    "load_tax_table",
    "rates_for_regime",
]
