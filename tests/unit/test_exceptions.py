"""
Unit tests for custom exceptions.
"""

import pytest

from dj_settlement.exceptions import (
    AlreadyCollected,
    AmountInvalid,
    GatewayDeclined,
    ImmutableRecord,
    InsufficientBalance,
    InvalidStatusTransition,
    MandateInactive,
    MandateLimitExceeded,
    MandatePaused,
    NotFound,
    PercentageInvalid,
    SettlementException,
    TransactionAborted,
    ValidationError,
)

ALL_EXCEPTIONS = [
    ValidationError,
    AmountInvalid,
    PercentageInvalid,
    InsufficientBalance,
    NotFound,
    AlreadyCollected,
    MandateInactive,
    MandatePaused,
    MandateLimitExceeded,
    GatewayDeclined,
    TransactionAborted,
    InvalidStatusTransition,
    ImmutableRecord,
]


class TestExceptionHierarchy:
    """Tests for exception inheritance."""

    @pytest.mark.parametrize("exc_class", ALL_EXCEPTIONS)
    def test_settlement_exception_is_base(self, exc_class):
        assert issubclass(exc_class, SettlementException)

    def test_validation_family(self):
        """Amount and percentage errors are validation errors."""
        assert issubclass(AmountInvalid, ValidationError)
        assert issubclass(PercentageInvalid, ValidationError)

    def test_catchable_as_base(self):
        with pytest.raises(SettlementException):
            raise InsufficientBalance("Balance: 50, Required: 100")


class TestExceptionCodes:
    """Tests for the stable error codes reported in results."""

    def test_codes_are_unique(self):
        codes = [exc.code for exc in ALL_EXCEPTIONS]
        assert len(codes) == len(set(codes))

    def test_known_codes(self):
        assert InsufficientBalance.code == "insufficient_balance"
        assert MandatePaused.code == "mandate_paused"
        assert MandateLimitExceeded.code == "mandate_limit_exceeded"

    def test_message_preserved(self):
        exc = InsufficientBalance("Current: 50, Required: 100")
        assert "Required" in str(exc)
