"""
Integration tests for the end-to-end settlement flows.
"""

from decimal import Decimal

import pytest

from dj_settlement.exceptions import InsufficientBalance
from dj_settlement.models import CommissionSplit, LedgerEntry, WinFeeCharge
from dj_settlement.services import LedgerService


@pytest.mark.django_db()
@pytest.mark.integration()
class TestLedgerScenario:
    """Credit then debit on a fresh operator."""

    def test_credit_then_debit(self, operator):
        LedgerService.post_entry(operator, "CREDIT", Decimal("1000"), "Top up")
        LedgerService.post_entry(operator, "DEBIT", Decimal("50"), "Platform fee")

        assert LedgerService.get_balance(operator) == Decimal("950.00")
        history = LedgerService.list_entries(operator)
        assert [e.balance_after for e in reversed(history.entries)] == [
            Decimal("1000.00"),
            Decimal("950.00"),
        ]
        assert LedgerService.verify_entries(operator)


@pytest.mark.django_db()
@pytest.mark.integration()
class TestWinFeeScenario:
    """Bid win records the fee; trip start collects it and splits the commission."""

    def test_bid_win_to_commission(self, win_fee_service, shipment_factory, active_mandate_factory):
        shipment = shipment_factory(
            bid_amount=Decimal("60000.00"), district_id="D7", region_id="R2"
        )
        active_mandate_factory(shipment.operator_id)

        bid = win_fee_service.on_bid_win(
            shipment.operator_id,
            shipment.booking_id,
            shipment.bid_id,
            shipment.bid_amount,
            shipment.district_id,
            shipment.region_id,
        )

        charge = WinFeeCharge.objects.get(charge_id=bid.charge_id)
        assert charge.payment_status == WinFeeCharge.STATUS_PENDING
        assert charge.fee_amount == Decimal("3000.00")
        assert not LedgerEntry.objects.for_operator(shipment.operator_id).exists()

        result = win_fee_service.on_trip_start(shipment.shipment_id)

        assert result.fee_collected is True
        assert result.payment_method == WinFeeCharge.METHOD_UPI_AUTOPAY
        charge.refresh_from_db()
        assert charge.payment_status == WinFeeCharge.STATUS_SUCCESS
        assert charge.shipment_id == shipment.shipment_id
        assert charge.charged_at is not None

        split = CommissionSplit.objects.get(charge=charge)
        assert split.total == Decimal("3000.00")
        assert split.hq_franchise_id == "FR-HQ"
        assert split.regional_franchise_id == "FR-R-R2"
        assert split.unit_franchise_id == "FR-U-D7"

    def test_wallet_collection_records_commission(self, win_fee_service, won_shipment, funded_operator):
        operator_id = funded_operator(Decimal("5000.00"))
        shipment = won_shipment(operator_id=operator_id)

        result = win_fee_service.on_trip_start(shipment.shipment_id)

        assert result.fee_collected is True
        assert result.payment_method == WinFeeCharge.METHOD_WALLET
        assert LedgerService.get_balance(operator_id) == Decimal("2000.00")
        assert CommissionSplit.objects.filter(charge__booking_id=shipment.booking_id).exists()

    def test_failed_collection_records_no_commission(self, win_fee_service, won_shipment):
        shipment = won_shipment()

        result = win_fee_service.on_trip_start(shipment.shipment_id)

        assert result.fee_collected is False
        assert not CommissionSplit.objects.exists()

    def test_commission_failure_keeps_charge(
        self, win_fee_service, won_shipment, funded_operator
    ):
        """A broken franchise lookup is logged; the collected fee stands."""

        def broken_resolver(district_id, region_id):
            raise RuntimeError("franchise directory offline")

        win_fee_service.franchise_resolver = broken_resolver
        shipment = won_shipment(operator_id=funded_operator(Decimal("5000.00")))

        result = win_fee_service.on_trip_start(shipment.shipment_id)

        assert result.fee_collected is True
        charge = WinFeeCharge.objects.get(booking_id=shipment.booking_id)
        assert charge.payment_status == WinFeeCharge.STATUS_SUCCESS
        assert not CommissionSplit.objects.exists()


@pytest.mark.django_db()
@pytest.mark.integration()
class TestTransferScenario:
    """A transfer the source cannot cover changes nothing."""

    def test_transfer_without_funds(self, funded_operator):
        a = funded_operator(Decimal("300.00"))
        b = funded_operator(Decimal("10.00"))

        with pytest.raises(InsufficientBalance):
            LedgerService.transfer(a, b, Decimal("500.00"), "Settlement")

        assert LedgerService.get_balance(a) == Decimal("300.00")
        assert LedgerService.get_balance(b) == Decimal("10.00")
        assert LedgerEntry.objects.filter(operator_id__in=[a, b]).count() == 2

    def test_transfer_moves_money(self, funded_operator):
        a = funded_operator(Decimal("300.00"))
        b = funded_operator(Decimal("10.00"))

        result = LedgerService.transfer(a, b, Decimal("120.00"), "Load share", "booking", "BKG-5")

        assert result.debit.balance_after == Decimal("180.00")
        assert result.credit.balance_after == Decimal("130.00")
        assert result.debit.description == f"Transfer to {b}: Load share"
        assert result.credit.description == f"Transfer from {a}: Load share"
        assert result.credit.reference_id == "BKG-5"
