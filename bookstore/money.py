"""金額は Decimal で扱い、永続化時は整数の「セント」に変換する。"""

from decimal import Decimal, InvalidOperation

from .errors import InvalidInput

CENT = Decimal("0.01")


def parse_price(value) -> Decimal:
    """正の金額 (小数点以下 2 桁まで) を Decimal に変換する。"""
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidInput(f"Invalid price: {value!r}") from e
    if not price.is_finite() or price <= 0:
        raise InvalidInput(f"Price must be positive: {value!r}")
    if price != price.quantize(CENT):
        raise InvalidInput(f"Price has more than two decimal places: {value!r}")
    return price.quantize(CENT)


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(CENT)
