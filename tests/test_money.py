"""
Test suite for money module

Tests cent rounding, arithmetic and parsing. Every loan amount flows
through Money, so rounding must be exact.
"""

import pytest
from decimal import Decimal

from loan_ledger.errors import ValidationError
from loan_ledger.money import Money, round_to_cents, decimal_from_string


class TestMoney:
    """Test Money construction and arithmetic"""

    def test_quantizes_to_cents(self):
        """Amounts are rounded half-up to two places"""
        assert Money(Decimal('10.005')).amount == Decimal('10.01')
        assert Money(Decimal('10.004')).amount == Decimal('10.00')
        assert Money(Decimal('-2.675')).amount == Decimal('-2.68')

    def test_of_accepts_common_inputs(self):
        """Money.of takes Money, Decimal, int, str and float"""
        assert Money.of(100) == Money(Decimal('100.00'))
        assert Money.of("100.10") == Money(Decimal('100.10'))
        assert Money.of(0.1).amount == Decimal('0.10')
        existing = Money.of(5)
        assert Money.of(existing) is existing

    def test_rejects_bool_and_garbage(self):
        """Booleans and unparseable strings are not amounts"""
        with pytest.raises(ValidationError):
            Money.of(True)
        with pytest.raises(ValidationError):
            Money.of("abc")
        with pytest.raises(ValidationError):
            Money.of(None)

    @pytest.mark.parametrize("text", ["Rs. 10600", "Rs. 10,600", "10,600", "$5", "1e5x", ""])
    def test_strings_are_parsed_strictly(self, text):
        """Money never strips characters out of an amount string"""
        with pytest.raises(ValidationError):
            Money.of(text)

    def test_plain_numeric_strings(self):
        assert Money.of(" 10600.50 ").amount == Decimal("10600.50")
        assert Money.of("1e5").amount == Decimal("100000.00")
        assert Money.of("-0.005").amount == Decimal("-0.01")

    def test_rejects_non_finite(self):
        """NaN and infinity are refused"""
        with pytest.raises(ValidationError):
            Money(Decimal('NaN'))
        with pytest.raises(ValidationError):
            Money(Decimal('Infinity'))

    def test_addition_and_subtraction(self):
        """Arithmetic stays in cents"""
        a = Money.of("10600.00")
        b = Money.of("5000.00")
        assert a - b == Money.of("5600.00")
        assert a + b == Money.of("15600.00")
        assert -b == Money.of("-5000.00")

    def test_sum_starts_from_zero(self):
        """sum() works with both int and Money start values"""
        amounts = [Money.of(1), Money.of("2.50"), Money.of("0.25")]
        assert sum(amounts) == Money.of("3.75")
        assert sum(amounts, Money.zero()) == Money.of("3.75")

    def test_comparisons(self):
        assert Money.of(1) < Money.of(2)
        assert Money.of(2) >= Money.of(2)
        assert Money.of("2.00") == Money.of(2)

    @pytest.mark.parametrize("other", [1, Decimal("1"), "1", None])
    def test_ordering_against_non_money(self, other):
        """Ordering against other types raises TypeError"""
        with pytest.raises(TypeError):
            Money.of(1) < other
        with pytest.raises(TypeError):
            Money.of(1) >= other

    def test_clamp_to_zero(self):
        """Negative results clamp to zero"""
        assert Money.of(-5).clamp_to_zero() == Money.zero()
        assert Money.of(5).clamp_to_zero() == Money.of(5)

    def test_sign_predicates(self):
        assert Money.zero().is_zero()
        assert Money.of("0.01").is_positive()
        assert Money.of("-0.01").is_negative()

    def test_formatting(self):
        assert Money.of("127200").to_string() == "127,200.00"
        assert str(Money.of("5")) == "5.00"


class TestDecimalHelpers:
    """Test parsing helpers"""

    def test_round_to_cents(self):
        assert round_to_cents(Decimal('1.235')) == Decimal('1.24')

    def test_decimal_from_string_formats(self):
        """Thousands separators and currency symbols are stripped"""
        assert decimal_from_string("1,234.56") == Decimal('1234.56')
        assert decimal_from_string("$99.90") == Decimal('99.90')
        assert decimal_from_string("12,5") == Decimal('12.5')

    def test_decimal_from_string_invalid(self):
        with pytest.raises(ValidationError):
            decimal_from_string("")
        with pytest.raises(ValidationError):
            decimal_from_string("not a number")

    def test_decimal_from_string_currency_markers(self):
        assert decimal_from_string("Rs. 10600") == Decimal("10600")
        assert decimal_from_string("Rs. 10,600") == Decimal("10600")
        assert decimal_from_string("10600 INR") == Decimal("10600")

    @pytest.mark.parametrize("text", ["1e5", "10a600", "1.2.3", "Rs.. 5", "12 34"])
    def test_decimal_from_string_rejects_embedded_text(self, text):
        """Letters or gaps inside the number are never dropped"""
        with pytest.raises(ValidationError):
            decimal_from_string(text)
