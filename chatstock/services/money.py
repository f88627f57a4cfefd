from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

_CENT = Decimal("0.01")
_UNIT = Decimal("1")


def money(value: float | int | str | Decimal) -> float:
    return float(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def whole(value: float | int | str | Decimal) -> int:
    """Round to a whole currency unit, halves away from zero."""
    return int(Decimal(str(value)).quantize(_UNIT, rounding=ROUND_HALF_UP))
