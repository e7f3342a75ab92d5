"""Currency helpers.

Every amount in the ledger is a ``Decimal`` with two places, rounded
half-up. Rounding is applied after each addition or subtraction, not once
at the end, so long runs of small payments cannot drift.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _to_cents(d: Decimal) -> Decimal | None:
    """Round a parsed value, or None if it is not finite or has more
    digits than the decimal context can hold at two places."""
    if not d.is_finite():
        return None
    try:
        return round_money(d)
    except InvalidOperation:
        return None


def to_money(value: Any) -> Decimal:
    """Coerce None, int, float, str or Decimal to a 2dp Decimal.

    - Strips whitespace and thousands separators ("1,234.50").
    - Floats go through ``str()`` to avoid binary artifacts.
    - Returns ``Decimal("0.00")`` for anything unparseable instead of raising.
    """
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, int):
        d = Decimal(value)
    elif isinstance(value, float):
        d = Decimal(str(value))
    elif isinstance(value, str):
        s = value.strip().replace(",", "")
        if not s:
            return ZERO
        try:
            d = Decimal(s)
        except InvalidOperation:
            return ZERO
    else:
        return ZERO

    rounded = _to_cents(d)
    return ZERO if rounded is None else rounded


def parse_money(value: Any) -> Decimal | None:
    """Strict variant of :func:`to_money` for user input.

    Returns None when the value is not a finite number, so callers can
    reject it rather than silently treating it as zero.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        s = value.strip().replace(",", "")
        if not s:
            return None
        try:
            d = Decimal(s)
        except InvalidOperation:
            return None
    elif isinstance(value, (int, float, Decimal)):
        d = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    else:
        return None

    return _to_cents(d)


def add(a: Decimal, b: Decimal) -> Decimal:
    return round_money(a + b)


def sub(a: Decimal, b: Decimal) -> Decimal:
    return round_money(a - b)


def money_str(value: Decimal) -> str:
    """Storage form: plain string, always two places."""
    return str(round_money(value))
