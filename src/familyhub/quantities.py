"""Utilities for working with ingredient and pantry quantities."""

from __future__ import annotations

from decimal import Context, Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

HUNDREDTH = Decimal("0.01")
ZERO = Decimal("0")
MAX_EXPONENT = 1000


def to_quantity(value: Any, *, default: Decimal | int = 0) -> Decimal:
    """Convert ``value`` to a :class:`~decimal.Decimal`, falling back to ``default``.

    Booleans, ``None``, non-finite numbers and strings that do not parse all
    count as "missing" and yield ``default``, as do absurd magnitudes beyond
    ``1e1000``.
    """

    fallback = Decimal(default)
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            return fallback
    else:
        return fallback
    if not result.is_finite() or result.adjusted() > MAX_EXPONENT:
        return fallback
    return result


def _context_for(*amounts: Decimal) -> Context:
    top = max(amount.adjusted() for amount in amounts)
    bottom = min(amount.as_tuple().exponent for amount in amounts)
    return Context(prec=max(28, top - bottom + 2), rounding=ROUND_HALF_UP)


def add_quantities(left: Decimal, right: Decimal) -> Decimal:
    """Exact sum of two quantities, whatever their magnitude."""

    return _context_for(left, right).add(left, right)


def subtract_quantities(left: Decimal, right: Decimal) -> Decimal:
    return _context_for(left, right).subtract(left, right)


def round_quantity(amount: Decimal) -> Decimal:
    """Round ``amount`` half-up to two decimal places.

    The quantize runs in a context wide enough for every integer digit, so
    large quantities keep their magnitude instead of raising.
    """

    context = Context(prec=max(28, amount.adjusted() + 4), rounding=ROUND_HALF_UP)
    return amount.quantize(HUNDREDTH, context=context)


def as_number(amount: Decimal) -> float | int:
    """Return a JSON friendly number, dropping a redundant fractional part."""

    rounded = round_quantity(amount)
    if rounded == rounded.to_integral_value():
        return int(rounded)
    return float(rounded)
