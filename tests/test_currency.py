"""
Test suite for currency module

Tests Money rounding, arithmetic and the raw Decimal helpers used by the
loan formulas.
"""

import pytest
from decimal import Decimal

from lending_core.currency import Money, Currency, round_money, to_decimal


class TestMoney:
    """Test Money class operations"""

    def test_money_rounds_to_currency_precision(self):
        """Money rounds half up on construction"""
        assert Money(Decimal('100.555'), Currency.BRL).amount == Decimal('100.56')
        assert Money(Decimal('100.554'), Currency.BRL).amount == Decimal('100.55')
        assert Money(Decimal('100.5'), Currency.JPY).amount == Decimal('101')

    def test_money_from_non_decimal(self):
        """Ints and strings are converted through str"""
        assert Money(10, Currency.BRL).amount == Decimal('10.00')
        assert Money('0.1', Currency.BRL).amount == Decimal('0.10')

    def test_arithmetic(self):
        """Addition, subtraction, multiplication and division"""
        a = Money(Decimal('100.00'), Currency.BRL)
        b = Money(Decimal('20.50'), Currency.BRL)
        assert a + b == Money(Decimal('120.50'), Currency.BRL)
        assert a - b == Money(Decimal('79.50'), Currency.BRL)
        assert a * Decimal('0.1') == Money(Decimal('10.00'), Currency.BRL)
        assert a / 3 == Money(Decimal('33.33'), Currency.BRL)
        assert -b == Money(Decimal('-20.50'), Currency.BRL)

    def test_currency_mismatch(self):
        """Mixing currencies is rejected"""
        with pytest.raises(ValueError, match="Cannot add"):
            Money(Decimal('1'), Currency.BRL) + Money(Decimal('1'), Currency.USD)
        with pytest.raises(ValueError, match="Cannot compare"):
            Money(Decimal('1'), Currency.BRL) < Money(Decimal('1'), Currency.USD)

    def test_sum_and_zero(self):
        """Money.sum starts from zero in the requested currency"""
        values = [Money(Decimal('1.10'), Currency.BRL), Money(Decimal('2.20'), Currency.BRL)]
        assert Money.sum(values) == Money(Decimal('3.30'), Currency.BRL)
        assert Money.sum([], Currency.USD) == Money.zero(Currency.USD)
        assert Money.zero().is_zero()

    def test_comparisons(self):
        """Ordering works within one currency"""
        small = Money(Decimal('1'), Currency.BRL)
        big = Money(Decimal('2'), Currency.BRL)
        assert small < big
        assert big >= small
        assert min(small, big) == small

    def test_to_string(self):
        """Display formatting"""
        assert Money(Decimal('1234.5'), Currency.BRL).to_string() == "BRL 1,234.50"
        assert Money(Decimal('1234'), Currency.JPY).to_string() == "JPY 1,234"


class TestDecimalHelpers:
    """Test raw Decimal helpers"""

    def test_round_money(self):
        assert round_money(Decimal('112.8254')) == Decimal('112.83')
        assert round_money(Decimal('0.005')) == Decimal('0.01')
        assert round_money(Decimal('2.5'), Currency.JPY) == Decimal('3')

    def test_to_decimal_avoids_float_artifacts(self):
        assert to_decimal(0.1) == Decimal('0.1')
        assert to_decimal(Decimal('5')) == Decimal('5')
