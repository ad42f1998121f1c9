from decimal import Decimal, ROUND_HALF_UP

_CENT = Decimal("0.01")


def round_money(value) -> float:
    """
    Round to paise with half-up semantics.
    Goes through str() so 2.675 rounds to 2.68 instead of 2.67.
    """
    if value is None:
        return 0.0
    return float(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def percent_of(amount, rate) -> float:
    return round_money(Decimal(str(amount)) * Decimal(str(rate)) / Decimal(100))
