"""Tests for the tax arithmetic helpers."""

from __future__ import annotations

from decimal import Decimal

import pytest

from tax_ledger.tax_calculator import calculate_tax, round_to_minor_unit, sum_tax


@pytest.mark.parametrize(
    ("cost", "rate", "expected"),
    [
        ("1000", "0.2", "200"),
        ("333", "0.175", "58.275"),
        ("0", "0.2", "0"),
        ("1000", "0", "0"),
    ],
)
def test_calculate_tax(cost, rate, expected):
    """Tax is cost multiplied by rate, without rounding."""

    assert calculate_tax(Decimal(cost), Decimal(rate)) == Decimal(expected)


def test_sum_tax_aggregates_lines():
    """sum_tax adds up every line's tax."""

    lines = [(Decimal("1000"), Decimal("0.2")), (Decimal("500"), Decimal("0.05"))]

    assert sum_tax(lines) == Decimal("225")


def test_sum_tax_of_nothing_is_zero():
    """An empty iterable yields zero."""

    assert sum_tax([]) == Decimal("0")


@pytest.mark.parametrize(
    ("amount", "expected"),
    [
        ("58.275", "58"),
        ("58.5", "59"),
        ("-0.5", "-1"),
        ("-150.49", "-150"),
        ("200", "200"),
    ],
)
def test_round_to_minor_unit_rounds_half_up(amount, expected):
    """Half values round away from zero."""

    assert round_to_minor_unit(Decimal(amount)) == Decimal(expected)
