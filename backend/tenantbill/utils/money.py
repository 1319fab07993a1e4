from decimal import ROUND_HALF_UP, Decimal


def round_half_up(value: float | int | Decimal) -> int:
    """Round to the nearest integer currency unit, halves away from zero."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_tax(subtotal: int, rate: float) -> int:
    if rate <= 0:
        return 0
    return round_half_up(Decimal(subtotal) * Decimal(str(rate)))
