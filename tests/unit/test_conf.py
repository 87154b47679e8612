"""
Unit tests for settings loading and validation.
"""

from decimal import Decimal

import pytest
from django.core.exceptions import ImproperlyConfigured
from django.test import override_settings

from dj_settlement.conf import SettlementSettings


class TestDefaults:
    """Tests for values read from the test settings."""

    def test_overrides_applied(self):
        conf = SettlementSettings()
        assert conf.HQ_FRANCHISE_ID == "FR-HQ"
        assert conf.SHIPMENT_RESOLVER == "tests.test_app.resolvers.resolve_shipment"

    def test_defaults_kept(self):
        conf = SettlementSettings()
        assert conf.REFUND_WINDOW_MINUTES == 60
        assert conf.MANDATE_FAILURE_THRESHOLD == 3
        assert conf.DEFAULT_COMMISSION_SPLIT == (Decimal("40"), Decimal("30"), Decimal("30"))

    @override_settings(DJ_SETTLEMENT={"DEFAULT_FEE_PERCENTAGE": 2.5})
    def test_decimals_coerced(self):
        conf = SettlementSettings()
        assert conf.DEFAULT_FEE_PERCENTAGE == Decimal("2.5")

    def test_unknown_setting(self):
        with pytest.raises(AttributeError):
            SettlementSettings().NOT_A_SETTING


class TestValidation:
    """Bad configuration fails loudly."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"MATH_SCALE": -1},
            {"DEFAULT_CURRENCY": ""},
            {"DEFAULT_FEE_PERCENTAGE": 120},
            {"DEFAULT_COMMISSION_SPLIT": (50, 30, 30)},
            {"REFUND_WINDOW_MINUTES": 0},
            {"MANDATE_FAILURE_THRESHOLD": "3"},
            {"GATEWAY_TIMEOUT_SECONDS": 0},
            {"SIMULATED_GATEWAY_FAILURE_RATE": 2},
            {"GATEWAY_CLASS": "NoDots"},
            {"SHIPMENT_RESOLVER": "nodots"},
        ],
    )
    def test_invalid_values(self, overrides):
        with override_settings(DJ_SETTLEMENT=overrides):
            with pytest.raises(ImproperlyConfigured):
                SettlementSettings()
