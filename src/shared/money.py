"""Money helpers.

Amounts are stored as two-place decimals in major units. Gateways speak in
minor units (paise), so conversion happens at the adapter boundary.
"""

from decimal import ROUND_HALF_UP, Decimal

_CENT = Decimal("0.01")


def as_money(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal | int | float | str) -> int:
    return int((as_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return as_money(Decimal(amount) / 100)
