"""Centralized configuration for the credit schedule engine.

Numeric policy, currency minor units and defaults live here so that the
calculators, the command line and the web layer agree on them. The web layer
reads its runtime settings from the environment through ``Settings``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

# =============================================================================
# NUMERIC POLICY
# =============================================================================

# Significant digits used for all internal Decimal arithmetic
DECIMAL_PRECISION = 28

# Fractional digits kept on the average rate reported per schedule row
RATE_QUANTUM = Decimal("0.00000001")

# Months per year used to derive the monthly rate from an annual rate
MONTHS_PER_YEAR = 12

# Minor units (fractional digits) per ISO currency code
CURRENCY_MINOR_UNITS: Dict[str, int] = {
    "MDL": 2,
    "USD": 2,
    "EUR": 2,
    "RON": 2,
    "GBP": 2,
    "UAH": 2,
    "JPY": 0,
}

# Minor units assumed for currencies not listed above
DEFAULT_MINOR_UNITS = 2

# =============================================================================
# CREDIT DEFAULTS
# =============================================================================

DEFAULT_CURRENCY = "MDL"

DEFAULT_PAYMENT_DAY = 1

MIN_PAYMENT_DAY = 1

MAX_PAYMENT_DAY = 31

# Rates travel as fractions at the boundary; 1 means 100 %
MAX_RATE_FRACTION = Decimal("1")

# =============================================================================
# WEB LAYER
# =============================================================================

DEFAULT_DATABASE_URL = "sqlite:///credit_schedule.sqlite3"

DEFAULT_LOG_LEVEL = "INFO"


def minor_units_for(currency: Optional[str]) -> int:
    """Return the number of fractional digits used for ``currency``."""
    if not currency:
        return DEFAULT_MINOR_UNITS
    return CURRENCY_MINOR_UNITS.get(currency.upper(), DEFAULT_MINOR_UNITS)


@dataclass(frozen=True)
class Settings:
    """Runtime settings of the web application."""

    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ.get("CREDIT_SCHEDULE_DATABASE_URL", DEFAULT_DATABASE_URL),
            log_level=os.environ.get("CREDIT_SCHEDULE_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
        )
