"""
Pytest configuration and fixtures for dj_settlement tests.
"""

import os
import sys
import uuid
from decimal import Decimal

import django
import pytest

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))


def pytest_configure():
    """Configure Django settings before running tests."""
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "tests.settings")
    django.setup()


# ============================================================================
# Gateway Fixtures
# ============================================================================


@pytest.fixture()
def gateway():
    """
    Gateway whose outcomes are scripted by the test.
    Charges succeed unless failures have been queued with ``fail_next``.
    """
    from dj_settlement.gateways import GatewayResponse, PaymentGateway

    class ScriptedGateway(PaymentGateway):
        name = "scripted"

        def __init__(self):
            self.charges = []
            self.registrations = []
            self._outcomes = []
            self.register_succeeds = True

        def fail_next(self, times=1, message="Customer bank declined"):
            self._outcomes.extend([message] * times)

        def raise_next(self, exc):
            self._outcomes.append(exc)

        def register_mandate(self, mandate_id, upi_id, max_amount, start_date=None, end_date=None):
            self.registrations.append(mandate_id)
            if not self.register_succeeds:
                return GatewayResponse(False, message="Mandate rejected by bank")
            return GatewayResponse(True, message="Mandate registered", reference=f"REF-{mandate_id}")

        def charge(self, mandate_id, upi_id, amount, description, reference_id):
            self.charges.append((mandate_id, amount, reference_id))
            outcome = self._outcomes.pop(0) if self._outcomes else None
            if isinstance(outcome, Exception):
                raise outcome
            if outcome is not None:
                return GatewayResponse(False, message=outcome)
            n = len(self.charges)
            return GatewayResponse(
                True,
                message="Charge successful",
                transaction_id=f"TXN-{n}",
                gateway_transaction_id=f"GW-TXN-{n}",
            )

    return ScriptedGateway()


# ============================================================================
# Operator / Ledger Fixtures
# ============================================================================


@pytest.fixture()
def operator_factory(db):
    """Factory for unique operator ids."""

    def create_operator(prefix="OP"):
        return f"{prefix}-{uuid.uuid4().hex[:8].upper()}"

    return create_operator


@pytest.fixture()
def operator(operator_factory):
    """A single operator with an empty ledger."""
    return operator_factory()


@pytest.fixture()
def funded_operator(operator_factory):
    """Factory for operators whose ledger opens with a CREDIT."""
    from dj_settlement.services import LedgerService

    def create_funded_operator(amount=Decimal("1000.00")):
        operator_id = operator_factory()
        LedgerService.post_entry(operator_id, "CREDIT", amount, "Opening balance", "top_up")
        return operator_id

    return create_funded_operator


# ============================================================================
# Mandate Fixtures
# ============================================================================


@pytest.fixture()
def mandate_service(gateway):
    from dj_settlement.services import MandateService

    return MandateService(gateway=gateway)


@pytest.fixture()
def active_mandate_factory(mandate_service):
    """Factory for approved (ACTIVE) mandates."""

    def create_mandate(operator_id, max_amount=Decimal("5000.00"), upi_id="fleet@okbank"):
        mandate = mandate_service.create_mandate(operator_id, upi_id, max_amount)
        return mandate_service.approve_mandate(mandate.mandate_id)

    return create_mandate


# ============================================================================
# Win Fee Fixtures
# ============================================================================


@pytest.fixture()
def win_fee_service(gateway, mandate_service):
    from dj_settlement.services import WinFeeService

    return WinFeeService(gateway=gateway, mandate_service=mandate_service)


@pytest.fixture()
def shipment_factory(operator_factory):
    """Factory for booking-domain shipments visible to the shipment resolver."""
    from tests.test_app.models import Shipment

    def create_shipment(operator_id=None, bid_amount=Decimal("60000.00"), **kwargs):
        if operator_id is None:
            operator_id = operator_factory()
        suffix = uuid.uuid4().hex[:8].upper()
        kwargs.setdefault("shipment_id", f"SHP-{suffix}")
        kwargs.setdefault("booking_id", f"BKG-{suffix}")
        kwargs.setdefault("bid_id", f"BID-{suffix}")
        return Shipment.objects.create(operator_id=operator_id, bid_amount=bid_amount, **kwargs)

    return create_shipment


@pytest.fixture()
def won_shipment(shipment_factory, win_fee_service):
    """Factory for a shipment whose winning bid already has a PENDING charge."""

    def create_won_shipment(**kwargs):
        shipment = shipment_factory(**kwargs)
        win_fee_service.on_bid_win(
            shipment.operator_id,
            shipment.booking_id,
            shipment.bid_id,
            shipment.bid_amount,
            shipment.district_id,
            shipment.region_id,
        )
        return shipment

    return create_won_shipment


# ============================================================================
# Signal Testing Fixtures
# ============================================================================


@pytest.fixture()
def signal_receiver():
    """Helper fixture for testing signals."""

    class SignalReceiver:
        def __init__(self):
            self.calls = []
            self.last_sender = None
            self.last_kwargs = None

        def __call__(self, sender, **kwargs):
            self.calls.append((sender, kwargs))
            self.last_sender = sender
            self.last_kwargs = kwargs

        @property
        def call_count(self):
            return len(self.calls)

        @property
        def was_called(self):
            return len(self.calls) > 0

        def reset(self):
            self.calls = []
            self.last_sender = None
            self.last_kwargs = None

    return SignalReceiver()
