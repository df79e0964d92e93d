"""
Tests for typed trading errors.
"""

import pytest
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

from papertrade.core.errors import (
    ERROR_PROFILES,
    DuplicateOrderError,
    ErrorCategory,
    ErrorCode,
    ErrorSeverity,
    InsufficientFundsError,
    TradingError,
)


class TestErrorSpecs:
    """Tests for the static code table."""

    def test_every_code_has_a_profile(self):
        """Test no code is missing a status/category."""
        assert set(ERROR_PROFILES) == set(ErrorCode)

    def test_guard_failures_are_client_errors(self):
        """Test pre-trade rejections map to 4xx."""
        for code in (
            ErrorCode.INSUFFICIENT_FUNDS,
            ErrorCode.STALE_PRICE,
            ErrorCode.MARKET_CLOSED,
            ErrorCode.EXPIRY_POSITION_BLOCKED,
        ):
            assert ERROR_PROFILES[code].status_code == 400
            assert ERROR_PROFILES[code].category == ErrorCategory.RISK

    def test_invariant_violation_is_critical(self):
        """Test position invariant failures page someone."""
        profile = ERROR_PROFILES[ErrorCode.POSITION_INVARIANT_VIOLATION]
        assert profile.status_code == 500
        assert profile.severity == ErrorSeverity.CRITICAL


class TestTradingError:
    """Tests for TradingError."""

    def test_carries_code_and_status(self):
        """Test attributes come from the code table."""
        error = TradingError(ErrorCode.INSTRUMENT_NOT_ALLOWED, "not allowed", {"token": "X"})

        assert error.code == ErrorCode.INSTRUMENT_NOT_ALLOWED
        assert error.status_code == 403
        assert error.is_client_error
        assert str(error) == "not allowed"

    def test_to_dict(self):
        """Test serialized shape."""
        payload = TradingError(ErrorCode.MARKET_PRICE_UNAVAILABLE, "no price").to_dict()

        assert payload["code"] == "MARKET_PRICE_UNAVAILABLE"
        assert payload["status_code"] == 503
        assert payload["category"] == "market_data"
        assert payload["details"] == {}
        assert "timestamp" in payload

    def test_infrastructure_error_is_not_client_error(self):
        """Test 5xx errors report as server side."""
        assert not TradingError(ErrorCode.ORDER_PLACEMENT_FAILED, "boom").is_client_error


class TestSubclasses:
    """Tests for specialised errors."""

    def test_insufficient_funds_message(self):
        """Test the message carries both amounts."""
        error = InsufficientFundsError(Decimal("100"), Decimal("250.5"))

        assert error.code == ErrorCode.INSUFFICIENT_FUNDS
        assert "INR 100.00" in error.message
        assert "INR 250.50" in error.message
        assert error.details == {"available": "100", "required": "250.5"}

    def test_duplicate_with_original(self):
        """Test the original order id is exposed."""
        original = SimpleNamespace(id=uuid4())
        error = DuplicateOrderError("dup", original=original)

        assert error.code == ErrorCode.DUPLICATE_ORDER
        assert error.status_code == 409
        assert error.original is original
        assert error.details["original_order_id"] == str(original.id)

    def test_duplicate_without_original(self):
        """Test rapid duplicates carry no original."""
        error = DuplicateOrderError("dup")
        assert error.original is None
        assert error.details == {}

    def test_subclasses_are_trading_errors(self):
        """Test callers can catch the base class."""
        with pytest.raises(TradingError):
            raise InsufficientFundsError(Decimal("0"), Decimal("1"))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
