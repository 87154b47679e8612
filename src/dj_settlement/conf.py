"""
Configuration settings for dj_settlement.

Settings can be overridden in your Django settings.py using the DJ_SETTLEMENT dictionary.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from django.conf import settings as django_settings
from django.core.exceptions import ImproperlyConfigured


@dataclass
class SettlementSettings:
    """Settings container for dj_settlement configuration."""

    # Number of decimal places for ledger amounts (paise for INR)
    MATH_SCALE: int = 2

    DEFAULT_CURRENCY: str = "INR"

    # Fallback fee policy when no FeeConfiguration row matches
    DEFAULT_FEE_PERCENTAGE: Decimal = Decimal("5.00")
    DEFAULT_MINIMUM_FEE: Decimal = Decimal("100.00")

    # HQ / Regional / Unit percentages when no CommissionConfiguration row matches
    DEFAULT_COMMISSION_SPLIT: tuple = (Decimal("40"), Decimal("30"), Decimal("30"))

    # Collected fees cancelled within this window are refunded automatically
    REFUND_WINDOW_MINUTES: int = 60

    # Consecutive gateway failures before a mandate is paused
    MANDATE_FAILURE_THRESHOLD: int = 3

    # Retry schedule for failed fee collections
    RETRY_BASE_MINUTES: int = 5
    MAX_FEE_RETRIES: int = 3

    # Payment gateway, selected once per service instance
    GATEWAY_CLASS: str = "dj_settlement.gateways.SimulatedGateway"
    GATEWAY_BASE_URL: str = ""
    GATEWAY_API_KEY: str = ""
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    SIMULATED_GATEWAY_FAILURE_RATE: float = 0.0

    # Hooks into the booking domain
    SHIPMENT_RESOLVER: str = ""
    FRANCHISE_RESOLVER: str = "dj_settlement.resolvers.default_franchise_resolver"
    HQ_FRANCHISE_ID: str = "FRANCHISE-HQ"
    REGIONAL_FRANCHISE_PREFIX: str = "FRANCHISE-R-"
    UNIT_FRANCHISE_PREFIX: str = "FRANCHISE-U-"

    # Swappable service classes - use dotted path strings
    LEDGER_SERVICE_CLASS: str = "dj_settlement.services.ledger.LedgerService"
    MANDATE_SERVICE_CLASS: str = "dj_settlement.services.mandate.MandateService"
    COMMISSION_SERVICE_CLASS: str = "dj_settlement.services.commission.CommissionService"
    WIN_FEE_SERVICE_CLASS: str = "dj_settlement.services.win_fee.WinFeeService"

    def __init__(self):
        """Initialize settings from Django settings if available."""
        user_settings = getattr(django_settings, "DJ_SETTLEMENT", {})

        for key in self.__class__.__dataclass_fields__:
            if key in user_settings:
                setattr(self, key, user_settings[key])
            else:
                setattr(self, key, getattr(self.__class__, key))

        self._coerce_decimals()
        self._validate_settings()

    def _coerce_decimals(self):
        self.DEFAULT_FEE_PERCENTAGE = Decimal(str(self.DEFAULT_FEE_PERCENTAGE))
        self.DEFAULT_MINIMUM_FEE = Decimal(str(self.DEFAULT_MINIMUM_FEE))
        self.DEFAULT_COMMISSION_SPLIT = tuple(
            Decimal(str(part)) for part in self.DEFAULT_COMMISSION_SPLIT
        )

    def _validate_settings(self):
        """
        Validate user-provided settings and raise ImproperlyConfigured for invalid values.
        """
        if not isinstance(self.MATH_SCALE, int) or not 0 <= self.MATH_SCALE <= 8:
            raise ImproperlyConfigured(
                "DJ_SETTLEMENT['MATH_SCALE'] must be an integer between 0 and 8. "
                f"Got: {self.MATH_SCALE}"
            )

        if not isinstance(self.DEFAULT_CURRENCY, str) or not self.DEFAULT_CURRENCY:
            raise ImproperlyConfigured(
                "DJ_SETTLEMENT['DEFAULT_CURRENCY'] must be a non-empty string. "
                f"Got: {self.DEFAULT_CURRENCY}"
            )

        if not Decimal("0") <= self.DEFAULT_FEE_PERCENTAGE <= Decimal("100"):
            raise ImproperlyConfigured(
                "DJ_SETTLEMENT['DEFAULT_FEE_PERCENTAGE'] must be between 0 and 100. "
                f"Got: {self.DEFAULT_FEE_PERCENTAGE}"
            )

        if len(self.DEFAULT_COMMISSION_SPLIT) != 3 or sum(
            self.DEFAULT_COMMISSION_SPLIT
        ) != Decimal("100"):
            raise ImproperlyConfigured(
                "DJ_SETTLEMENT['DEFAULT_COMMISSION_SPLIT'] must be three percentages "
                f"summing to 100. Got: {self.DEFAULT_COMMISSION_SPLIT}"
            )

        positive_ints = [
            "REFUND_WINDOW_MINUTES",
            "MANDATE_FAILURE_THRESHOLD",
            "RETRY_BASE_MINUTES",
            "MAX_FEE_RETRIES",
        ]
        for name in positive_ints:
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise ImproperlyConfigured(
                    f"DJ_SETTLEMENT['{name}'] must be a positive integer. Got: {value}"
                )

        if float(self.GATEWAY_TIMEOUT_SECONDS) <= 0:
            raise ImproperlyConfigured(
                "DJ_SETTLEMENT['GATEWAY_TIMEOUT_SECONDS'] must be positive. "
                f"Got: {self.GATEWAY_TIMEOUT_SECONDS}"
            )

        if not 0 <= float(self.SIMULATED_GATEWAY_FAILURE_RATE) <= 1:
            raise ImproperlyConfigured(
                "DJ_SETTLEMENT['SIMULATED_GATEWAY_FAILURE_RATE'] must be between 0 and 1. "
                f"Got: {self.SIMULATED_GATEWAY_FAILURE_RATE}"
            )

        dotted_paths = [
            "GATEWAY_CLASS",
            "FRANCHISE_RESOLVER",
            "LEDGER_SERVICE_CLASS",
            "MANDATE_SERVICE_CLASS",
            "COMMISSION_SERVICE_CLASS",
            "WIN_FEE_SERVICE_CLASS",
        ]
        if self.SHIPMENT_RESOLVER:
            dotted_paths.append("SHIPMENT_RESOLVER")

        for name in dotted_paths:
            value = getattr(self, name)
            if not isinstance(value, str) or "." not in value:
                raise ImproperlyConfigured(
                    f"DJ_SETTLEMENT['{name}'] must be a valid dotted path string. "
                    f"Got: {value}"
                )

    def __getattr__(self, name: str) -> Any:
        """Fallback for attribute access."""
        raise AttributeError(f"'{type(self).__name__}' has no setting '{name}'")


# Singleton instance for import convenience
settlement_settings = SettlementSettings()
