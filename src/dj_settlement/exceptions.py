"""
Exceptions raised by dj_settlement.

Every class carries a stable ``code`` so services can report expected failures as
structured results instead of raising across their boundary.
"""


class SettlementException(Exception):
    """Base class for all settlement errors."""

    code = "settlement_error"


class ValidationError(SettlementException):
    code = "validation_error"


class AmountInvalid(ValidationError):
    code = "amount_invalid"


class PercentageInvalid(ValidationError):
    code = "percentage_invalid"


class InsufficientBalance(SettlementException):
    code = "insufficient_balance"


class NotFound(SettlementException):
    code = "not_found"


class AlreadyCollected(SettlementException):
    """Raised (or reported) when a fee has already been collected. Not a failure."""

    code = "already_collected"


class MandateInactive(SettlementException):
    code = "mandate_inactive"


class MandatePaused(SettlementException):
    code = "mandate_paused"


class MandateLimitExceeded(SettlementException):
    code = "mandate_limit_exceeded"


class GatewayDeclined(SettlementException):
    code = "gateway_declined"


class TransactionAborted(SettlementException):
    """A leg of an atomic posting failed; nothing was persisted."""

    code = "transaction_aborted"


class InvalidStatusTransition(SettlementException):
    code = "invalid_status_transition"


class ImmutableRecord(SettlementException):
    code = "immutable_record"
