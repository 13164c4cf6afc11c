"""Numeric conversions between engine floats and stored fixed-point values."""

import math
from decimal import Decimal, ROUND_HALF_EVEN

# Fixed-point storage: 8 fractional digits for every price/quantity column
DECIMAL_PLACES = 8
MAX_DIGITS = 28
_QUANTUM = Decimal(1).scaleb(-DECIMAL_PLACES)


def to_decimal(value) -> Decimal | None:
    """Quantize a float/str/Decimal to 8 fractional digits. None stays None."""
    if value is None:
        return None
    if isinstance(value, float):
        if math.isinf(value) or math.isnan(value):
            raise ValueError(f"Cannot store non-finite value {value!r}")
        value = repr(value)
    return Decimal(value).quantize(_QUANTUM, rounding=ROUND_HALF_EVEN)


def to_float(value) -> float | None:
    if value is None:
        return None
    return float(value)
