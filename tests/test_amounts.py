"""
Tests for rupee amount handling
"""

import pytest
from decimal import Decimal

from loan_desk.amounts import decimal_from_string, format_inr, to_amount, to_rate


class TestToAmount:
    """Normalizing monetary input"""

    @pytest.mark.parametrize("value,expected", [
        (1000, Decimal("1000.00")),
        (0.1, Decimal("0.10")),
        ("1,250.505", Decimal("1250.51")),
        ("₹40,000", Decimal("40000.00")),
        (Decimal("3401.454"), Decimal("3401.45")),
    ])
    def test_normalization(self, value, expected):
        assert to_amount(value) == expected

    def test_float_goes_through_string(self):
        assert to_amount(0.1 + 0.2) == Decimal("0.30")

    def test_boolean_rejected(self):
        with pytest.raises(ValueError):
            to_amount(True)

    def test_not_a_number(self):
        with pytest.raises(ValueError):
            decimal_from_string("abc")
        with pytest.raises(ValueError):
            to_amount(Decimal("NaN"))

    @pytest.mark.parametrize("value", ["12abc", "1e3", "1,2x", "₹", "--5", "Infinity"])
    def test_stray_characters_rejected(self, value):
        with pytest.raises(ValueError):
            decimal_from_string(value)

    @pytest.mark.parametrize("value,expected", [
        ("₹ 1,000.50", Decimal("1000.50")),
        (" -250 ", Decimal("-250")),
        ("+.5", Decimal(".5")),
    ])
    def test_formatting_characters_stripped(self, value, expected):
        assert decimal_from_string(value) == expected

    def test_rate_keeps_precision(self):
        assert to_rate("0.0375") == Decimal("0.0375")
        assert to_rate(0.05) == Decimal("0.05")


class TestFormatInr:
    """Display formatting"""

    def test_whole_rupees(self):
        assert format_inr(Decimal("40000.00")) == "₹40,000"

    def test_paise_kept(self):
        assert format_inr(Decimal("3401.45")) == "₹3,401.45"
