"""Minor/major currency unit conversion, used only at provider boundaries."""
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def to_major(amount_cents: int) -> Decimal:
    return (Decimal(amount_cents) / 100).quantize(CENT)


def format_major(amount_cents: int) -> str:
    return f"{to_major(amount_cents):.2f}"


def to_minor(amount) -> int:
    # str() first so floats from JSON don't drag binary noise in.
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
