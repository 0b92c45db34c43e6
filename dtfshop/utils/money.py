# dtfshop/utils/money.py

from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR

Money = Decimal

CENT = Decimal("0.01")
ZERO = Decimal("0")


def D(x) -> Money:
    return x if isinstance(x, Decimal) else Decimal(str(x or "0"))


def round_money(x: Money) -> Money:
    return D(x).quantize(CENT, rounding=ROUND_HALF_UP)


def floor_int(x) -> int:
    return int(D(x).to_integral_value(rounding=ROUND_FLOOR))


def to_float(x) -> float | None:
    return None if x is None else float(D(x))


def round_quantity(x) -> Decimal:
    """Meters are stored and priced to the centimeter."""
    return D(x).quantize(CENT, rounding=ROUND_HALF_UP)
