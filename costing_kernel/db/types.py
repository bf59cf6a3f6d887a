"""
Module: costing_kernel.db.types
Responsibility: Annotated type aliases and the rounding helper for cost and
    quantity columns.  Centralizes precision and rounding so that every model,
    engine and service uses identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, engines,
    services/ and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats anywhere in costing.  All amounts and quantities are Decimal
      stored as Numeric(38, 9).
    - round_money() is the ONLY sanctioned rounding function for stored
      amounts; quantize_unit_cost() is its counterpart for per-unit costs.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated

from sqlalchemy import Numeric

# 38 digits total, 9 decimal places
Money = Annotated[Decimal, Numeric(38, 9)]

# Quantities share the money precision (pack and usage conversions)
Quantity = Annotated[Decimal, Numeric(38, 9)]

CURRENCY_DECIMAL_PLACES = 2
UNIT_COST_DECIMAL_PLACES = 6
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0")


def quantum(decimal_places: int) -> Decimal:
    """Return the Decimal exponent for ``decimal_places`` (2 -> Decimal('0.01'))."""
    return Decimal(1).scaleb(-decimal_places)


def round_money(
    value: Decimal,
    decimal_places: int = CURRENCY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the given number of decimal places.

    Preconditions: value is a Decimal.
    Postconditions: Returns value quantized using ``rounding``
        (ROUND_HALF_UP unless overridden).
    """
    return value.quantize(quantum(decimal_places), rounding=rounding)


def quantize_unit_cost(
    value: Decimal,
    decimal_places: int = UNIT_COST_DECIMAL_PLACES,
) -> Decimal:
    """Quantize a per-base-unit cost (default 6 places, ROUND_HALF_UP)."""
    return value.quantize(quantum(decimal_places), rounding=DEFAULT_ROUNDING)

