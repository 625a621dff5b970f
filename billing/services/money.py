from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from ..exceptions import CalculationInvariantError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize_cent(value: Decimal | str | int | None) -> Decimal:
    return Decimal(value or ZERO).quantize(CENT, rounding=ROUND_HALF_UP)


def to_amount(value: object, *, allow_negative: bool = False) -> Decimal:
    """Strict money parsing: NaN, infinity and garbage raise instead of becoming 0."""
    if value is None or value == "":
        raise CalculationInvariantError("Amount is missing.")
    if isinstance(value, float):
        value = repr(value)
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise CalculationInvariantError(f"Amount {value!r} is not a number.") from exc
    if not parsed.is_finite():
        raise CalculationInvariantError(f"Amount {value!r} is not a finite number.")
    if parsed < 0 and not allow_negative:
        raise CalculationInvariantError(f"Amount {value!r} must not be negative.")
    return parsed


def money_str(value: Decimal) -> str:
    return str(quantize_cent(value))
