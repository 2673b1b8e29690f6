"""
Tests for monetary helpers and the error taxonomy
"""

import pytest
from decimal import Decimal

from loan_ledger.api import status_for
from loan_ledger.errors import (
    AllocationFailed, AlreadySettled, ConcurrencyConflict, InvalidAmount,
    InvalidTransition, LedgerError, LoanCancelled, NotFound, OverPayment,
    PermissionDenied, StorageUnavailable,
)
from loan_ledger.money import ZERO, to_amount, to_rate


class TestToAmount:
    """Parsing and quantizing amounts"""

    @pytest.mark.parametrize("value,expected", [
        ("100", Decimal("100.00")),
        ("0.005", Decimal("0.01")),
        ("2.345", Decimal("2.35")),
        ("-2.345", Decimal("-2.35")),
        (" 12.5 ", Decimal("12.50")),
        (7, Decimal("7.00")),
        (0.1, Decimal("0.10")),
        (Decimal("3.14159"), Decimal("3.14")),
    ])
    def test_quantizes_half_up(self, value, expected):
        """Test quantizes half up"""
        assert to_amount(value) == expected

    def test_keeps_two_places(self):
        """Test keeps two places"""
        assert str(to_amount("5")) == "5.00"
        assert ZERO == Decimal("0")

    @pytest.mark.parametrize("value", ["abc", "", "NaN", "Infinity", True, None])
    def test_rejects_non_numbers(self, value):
        """Test rejects non numbers"""
        with pytest.raises(InvalidAmount):
            to_amount(value)

    @pytest.mark.parametrize("value", ["1e30", Decimal("1e27"), "-99999999999999999999999999999"])
    def test_rejects_out_of_range(self, value):
        """Test amounts too large to hold at two places are invalid"""
        with pytest.raises(InvalidAmount) as error:
            to_amount(value)
        assert error.value.code == "invalid_amount"

    def test_rate_is_not_quantized(self):
        """Test rate is not quantized"""
        assert to_rate("1.125") == Decimal("1.125")
        with pytest.raises(InvalidAmount):
            to_rate("lots")


class TestErrors:
    """Error codes and serialization"""

    def test_overpayment_is_invalid_amount(self):
        """Test overpayment is invalid amount"""
        error = OverPayment(Decimal("1500.00"), Decimal("1000.00"))

        assert isinstance(error, InvalidAmount)
        assert error.code == "over_payment"
        assert "1000.00" in error.message

    def test_to_dict_stringifies_decimals(self):
        """Test to dict stringifies decimals"""
        error = OverPayment(Decimal("60.00"), Decimal("40.00"))

        assert error.to_dict() == {
            "error": "over_payment",
            "message": "Payment amount 60.00 exceeds outstanding balance of 40.00",
            "details": {"amount": "60.00", "balance": "40.00"}
        }

    def test_not_found_details(self):
        """Test not found details"""
        error = NotFound("Loan", "L-202410-0009")

        assert error.message == "Loan L-202410-0009 not found"
        assert error.details == {"entity": "Loan", "identifier": "L-202410-0009"}

    def test_permission_denied_message(self):
        """Test permission denied message"""
        error = PermissionDenied("U-GUEST", "cancel loans")
        assert error.message == "Actor U-GUEST is not allowed to cancel loans"

    @pytest.mark.parametrize("error,status", [
        (InvalidAmount("bad"), 422),
        (OverPayment(Decimal("2"), Decimal("1")), 422),
        (NotFound("Loan", "x"), 404),
        (AlreadySettled("done"), 409),
        (LoanCancelled("gone"), 409),
        (InvalidTransition("no"), 409),
        (ConcurrencyConflict("busy"), 409),
        (PermissionDenied(None, "view loans"), 403),
        (AllocationFailed("counter"), 503),
        (StorageUnavailable("down"), 503),
        (LedgerError("generic"), 400),
    ])
    def test_http_status(self, error, status):
        """Test the HTTP status for each error type"""
        assert status_for(error) == status
