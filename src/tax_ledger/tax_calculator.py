"""Pure arithmetic used by the position engine.

Nothing in this module rounds unless asked to: the engine keeps full
``Decimal`` precision so repeated queries and aggregations stay exact, and
presentation layers call :func:`round_to_minor_unit` when they want whole
pennies.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Tuple


MINOR_UNIT = Decimal("1")


def calculate_tax(cost: Decimal, tax_rate: Decimal) -> Decimal:
    """Return the tax due on a single line item (``cost * tax_rate``)."""

    return cost * tax_rate


def sum_tax(lines: Iterable[Tuple[Decimal, Decimal]]) -> Decimal:
    """Aggregate the tax due on ``(cost, tax_rate)`` pairs without rounding."""

    total = Decimal("0")
    for cost, tax_rate in lines:
        total += calculate_tax(cost, tax_rate)
    return total


def round_to_minor_unit(amount: Decimal) -> Decimal:
    """Round ``amount`` half-up to a whole minor currency unit.

    Args:
        amount (Decimal): Un-rounded monetary amount expressed in minor units.

    Returns:
        Decimal: ``amount`` quantized to an integral value. ``-0.5`` rounds to
            ``-1`` so that overpayments round symmetrically with liabilities.
    """

    return amount.quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


__all__ = ["MINOR_UNIT", "calculate_tax", "sum_tax", "round_to_minor_unit"]
