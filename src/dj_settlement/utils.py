import json
import logging
import uuid
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from django.utils import timezone
from django.utils.module_loading import import_string

from .conf import settlement_settings
from .exceptions import AmountInvalid, PercentageInvalid

audit_logger = logging.getLogger("dj_settlement.audit")


def get_ledger_service():
    """
    Returns the configured LedgerService class.
    Override via settings: DJ_SETTLEMENT['LEDGER_SERVICE_CLASS']
    Example:
        LedgerService = get_ledger_service()
        LedgerService.post_entry("OP-1", "CREDIT", amount, "Top up")
    """
    return import_string(settlement_settings.LEDGER_SERVICE_CLASS)


def get_mandate_service():
    """
    Returns the configured MandateService class.
    Override via settings: DJ_SETTLEMENT['MANDATE_SERVICE_CLASS']
    """
    return import_string(settlement_settings.MANDATE_SERVICE_CLASS)


def get_commission_service():
    """
    Returns the configured CommissionService class.
    Override via settings: DJ_SETTLEMENT['COMMISSION_SERVICE_CLASS']
    """
    return import_string(settlement_settings.COMMISSION_SERVICE_CLASS)


def get_win_fee_service():
    """
    Returns the configured WinFeeService class.
    Override via settings: DJ_SETTLEMENT['WIN_FEE_SERVICE_CLASS']
    """
    return import_string(settlement_settings.WIN_FEE_SERVICE_CLASS)


def get_gateway():
    """Instantiate the payment gateway named by DJ_SETTLEMENT['GATEWAY_CLASS']."""
    return import_string(settlement_settings.GATEWAY_CLASS)()


def get_shipment_resolver():
    """
    Returns the callable mapping a shipment id to a ShipmentContext, or None when
    DJ_SETTLEMENT['SHIPMENT_RESOLVER'] is not configured.
    """
    if not settlement_settings.SHIPMENT_RESOLVER:
        return None
    return import_string(settlement_settings.SHIPMENT_RESOLVER)


def get_franchise_resolver():
    return import_string(settlement_settings.FRANCHISE_RESOLVER)


def quantize(value):
    """Round to the configured money scale, half up."""
    exponent = Decimal(1).scaleb(-settlement_settings.MATH_SCALE)
    return value.quantize(exponent, rounding=ROUND_HALF_UP)


def verify_amount(amount):
    """
    Ensures amount is a positive decimal representable at the configured scale.
    """
    try:
        val = Decimal(str(amount))  # str() first to avoid float artefacts
    except (ValueError, InvalidOperation):
        raise AmountInvalid("Amount must be a number.") from None

    if not val.is_finite() or val <= 0:
        raise AmountInvalid("Amount must be positive.")
    if quantize(val) != val:
        raise AmountInvalid(
            f"Amount {val} has more than {settlement_settings.MATH_SCALE} decimal places."
        )
    return val


def verify_percentage(value):
    try:
        val = Decimal(str(value))
    except (ValueError, InvalidOperation):
        raise PercentageInvalid("Percentage must be a number.") from None

    if not val.is_finite() or val < 0 or val > 100:
        raise PercentageInvalid(f"Percentage must be between 0 and 100. Got: {val}")
    return val


def new_reference(prefix):
    return f"{prefix}-{uuid.uuid4().hex[:20].upper()}"


def audit(event, actor=None, **fields):
    """Emit one structured audit line for a financial mutation."""
    payload = {
        "event": event,
        "actor": actor or "system",
        "at": timezone.now().isoformat(),
    }
    payload.update({key: _jsonable(value) for key, value in fields.items()})
    audit_logger.info(json.dumps(payload, sort_keys=True))


def _jsonable(value):
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value
