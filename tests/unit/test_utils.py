"""
Unit tests for utility helpers.
"""

import json
import logging
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal

import pytest

from dj_settlement.exceptions import AmountInvalid, PercentageInvalid
from dj_settlement.gateways import SimulatedGateway
from dj_settlement.resolvers import FranchiseHierarchy, default_franchise_resolver
from dj_settlement.services import LedgerService, MandateService
from dj_settlement.utils import (
    audit,
    get_franchise_resolver,
    get_gateway,
    get_ledger_service,
    get_mandate_service,
    get_shipment_resolver,
    new_reference,
    quantize,
    verify_amount,
    verify_percentage,
)


class TestVerifyAmount:
    """Tests for amount validation."""

    def test_accepts_strings_and_ints(self):
        assert verify_amount("10.50") == Decimal("10.50")
        assert verify_amount(3) == Decimal("3")

    def test_float_has_no_artefacts(self):
        assert verify_amount(0.1) == Decimal("0.1")

    @pytest.mark.parametrize("value", [0, "-1", "x", "Infinity", "0.001", None])
    def test_rejects(self, value):
        with pytest.raises(AmountInvalid):
            verify_amount(value)


class TestVerifyPercentage:
    """Tests for percentage validation."""

    @pytest.mark.parametrize("value", ["0", 5, "100"])
    def test_accepts_bounds(self, value):
        assert verify_percentage(value) == Decimal(str(value))

    @pytest.mark.parametrize("value", ["-0.01", "100.01", "pct"])
    def test_rejects(self, value):
        with pytest.raises(PercentageInvalid):
            verify_percentage(value)


class TestQuantize:
    def test_half_up(self):
        assert quantize(Decimal("0.005")) == Decimal("0.01")
        assert quantize(Decimal("2.344")) == Decimal("2.34")


class TestReferences:
    def test_prefix_and_uniqueness(self):
        refs = {new_reference("FEE") for _ in range(100)}
        assert len(refs) == 100
        assert all(ref.startswith("FEE-") for ref in refs)


class TestLookups:
    """Tests for dotted-path lookups."""

    def test_service_classes(self):
        assert get_ledger_service() is LedgerService
        assert get_mandate_service() is MandateService

    def test_gateway_instance(self):
        assert isinstance(get_gateway(), SimulatedGateway)

    def test_resolvers(self):
        from tests.test_app.resolvers import resolve_shipment

        assert get_shipment_resolver() is resolve_shipment
        assert get_franchise_resolver() is default_franchise_resolver

    def test_default_franchise_resolver(self):
        assert default_franchise_resolver("D1", "R1") == FranchiseHierarchy(
            "FR-HQ", "FR-R-R1", "FR-U-D1"
        )
        assert default_franchise_resolver() == FranchiseHierarchy(
            "FR-HQ", "FR-R-DEFAULT", "FR-U-DEFAULT"
        )


class TestAudit:
    """Tests for the structured audit line."""

    def test_payload(self, caplog):
        with caplog.at_level(logging.INFO, logger="dj_settlement.audit"):
            audit(
                "ledger.entry_posted",
                amount=Decimal("12.50"),
                posted=datetime(2026, 1, 2, tzinfo=dt_timezone.utc),
                operator_id="OP-1",
            )

        payload = json.loads(caplog.records[-1].getMessage())
        assert payload["event"] == "ledger.entry_posted"
        assert payload["actor"] == "system"
        assert payload["amount"] == "12.50"
        assert payload["posted"] == "2026-01-02T00:00:00+00:00"
        assert payload["operator_id"] == "OP-1"
        assert "at" in payload
