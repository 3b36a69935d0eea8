from decimal import Decimal, ROUND_HALF_UP

TWO_PLACES = Decimal("0.01")


def round_money(amount) -> float:
    return float(Decimal(str(amount)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


def amount_to_minor_units(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def minor_units_to_amount(amount_minor) -> float:
    return round_money(Decimal(int(amount_minor)) / 100)


def percent_of(amount, rate) -> float:
    return round_money(Decimal(str(amount)) * Decimal(str(rate)) / 100)
