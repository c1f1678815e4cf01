"""
Tests for money helpers

Rounding, cent splitting and parsing must be exact; no float ever reaches
a stored amount.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from lending_core.config import get_config
from lending_core.errors import ValidationError
from lending_core.money import (
    amount_epsilon, clamp_zero, decimal_from_string, from_cents, month_key, money_str, parse_date,
    round_money, split_cents, to_cents, to_decimal,
)
from lending_core.schedule import Installment


class TestConversion:
    """Test Decimal conversion and rounding"""

    def test_to_decimal(self):
        """Test converting values to Decimal"""
        assert to_decimal(None) == Decimal('0')
        assert to_decimal("") == Decimal('0')
        assert to_decimal(5) == Decimal('5')
        assert to_decimal("12.34") == Decimal('12.34')
        # Floats go through their shortest repr
        assert to_decimal(0.1) == Decimal('0.1')

    def test_to_decimal_rejects_garbage(self):
        """Test rejecting non-numeric values"""
        with pytest.raises(ValidationError) as exc_info:
            to_decimal("twelve")
        assert exc_info.value.code == "INVALID_AMOUNT"

        with pytest.raises(ValidationError):
            to_decimal(True)

    def test_round_half_up(self):
        """Test rounding half up to cents"""
        assert round_money(Decimal('1.005')) == Decimal('1.01')
        assert round_money("2.675") == Decimal('2.68')
        assert round_money(Decimal('-1.005')) == Decimal('-1.01')
        assert money_str(Decimal('7')) == "7.00"

    def test_cents(self):
        """Test converting to and from cents"""
        assert to_cents("10.255") == 1026
        assert from_cents(1026) == Decimal('10.26')

    def test_clamp_zero(self):
        """Test clamping negatives to zero"""
        assert clamp_zero(Decimal('-0.004')) == Decimal('0')
        assert clamp_zero(Decimal('3.333')) == Decimal('3.33')


class TestSplitCents:
    """Test cent-exact splitting"""

    def test_remainder_goes_to_last_piece(self):
        """Test the last piece absorbs the remainder"""
        assert split_cents(Decimal('100'), 3) == [Decimal('33.33'), Decimal('33.33'), Decimal('33.34')]

    def test_pieces_sum_to_total(self):
        """Test pieces add up to the total"""
        pieces = split_cents(Decimal('1000.01'), 7)
        assert sum(pieces) == Decimal('1000.01')
        assert len(pieces) == 7

    def test_invalid_parts(self):
        """Test rejecting a non-positive part count"""
        with pytest.raises(ValidationError):
            split_cents(Decimal('10'), 0)


class TestParsing:
    """Test user-typed numbers and dates"""

    def test_local_number_format(self):
        """Test parsing the local number format"""
        assert decimal_from_string("1.234,56") == Decimal('1234.56')
        assert decimal_from_string("12,5") == Decimal('12.5')
        assert decimal_from_string("$ 300000") == Decimal('300000')

    def test_invalid_number(self):
        """Test rejecting unparseable numbers"""
        with pytest.raises(ValidationError):
            decimal_from_string("abc")
        with pytest.raises(ValidationError):
            decimal_from_string("")

    def test_parse_date(self):
        """Test parsing dates and timestamps"""
        assert parse_date("2024-03-05") == date(2024, 3, 5)
        assert parse_date("2024-03-05T10:30:00+00:00") == date(2024, 3, 5)
        assert parse_date(datetime(2024, 3, 5, 23, 0, tzinfo=timezone.utc)) == date(2024, 3, 5)
        assert parse_date(date(2024, 3, 5)) == date(2024, 3, 5)

        with pytest.raises(ValidationError):
            parse_date("05/03/2024")

    def test_month_key(self):
        """Test the YYYY-MM month key"""
        assert month_key(date(2024, 3, 5)) == "2024-03"

    def test_to_decimal_accepts_local_format(self):
        """Test strings typed with thousands dots and a decimal comma"""
        assert to_decimal("1.234,56") == Decimal('1234.56')
        assert round_money("300.000,00") == Decimal('300000.00')
        assert to_decimal("-170000.00") == Decimal('-170000.00')

        with pytest.raises(ValidationError) as exc_info:
            to_decimal("abc")
        assert exc_info.value.code == "INVALID_AMOUNT"


class TestAmountEpsilon:
    """Test the rounding tolerance read from configuration"""

    def setup_method(self):
        self.installment = Installment(1, date(2024, 2, 10), Decimal('100.00'), Decimal('99.99'))

    def test_default_tolerance(self):
        """Test the default tolerance of one cent"""
        assert amount_epsilon() == Decimal('0.01')
        assert self.installment.is_paid

    def test_tolerance_from_config(self, monkeypatch):
        """Test tightening the tolerance through the config"""
        monkeypatch.setattr(get_config(), "amount_epsilon", "0")

        assert amount_epsilon() == Decimal('0')
        assert not self.installment.is_paid
