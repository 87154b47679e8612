from .commission import CommissionBreakdown, CommissionPolicy, CommissionService
from .ledger import (
    FeeDeduction,
    LedgerPage,
    LedgerService,
    PaymentResult,
    Posting,
    TransferResult,
)
from .mandate import MandateChargeResult, MandateService
from .win_fee import (
    BidWinResult,
    CollectionResult,
    FeeConfig,
    FeeStats,
    RetryReport,
    TripStartResult,
    WinFeeService,
)

__all__ = [
    "BidWinResult",
    "CollectionResult",
    "CommissionBreakdown",
    "CommissionPolicy",
    "CommissionService",
    "FeeConfig",
    "FeeDeduction",
    "FeeStats",
    "LedgerPage",
    "LedgerService",
    "MandateChargeResult",
    "MandateService",
    "PaymentResult",
    "Posting",
    "RetryReport",
    "TransferResult",
    "TripStartResult",
    "WinFeeService",
]
