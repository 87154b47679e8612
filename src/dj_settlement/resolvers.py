"""
Value types exchanged with the booking domain, and the default franchise resolver.

The booking domain owns shipments, bids and franchise assignments. Host projects
plug their lookups in through DJ_SETTLEMENT['SHIPMENT_RESOLVER'] and
DJ_SETTLEMENT['FRANCHISE_RESOLVER'].
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .conf import settlement_settings


@dataclass(frozen=True)
class ShipmentContext:
    shipment_id: str
    booking_id: str
    bid_id: str
    operator_id: str
    bid_amount: Decimal
    district_id: Optional[str] = None
    region_id: Optional[str] = None


@dataclass(frozen=True)
class FranchiseHierarchy:
    hq_id: str
    regional_id: str
    unit_id: str


def default_franchise_resolver(district_id=None, region_id=None):
    """
    Derive franchise ids from the pickup location using the configured prefixes.
    Projects with real franchise assignments should point FRANCHISE_RESOLVER at
    their own lookup.
    """
    regional_key = region_id or "DEFAULT"
    unit_key = district_id or regional_key
    return FranchiseHierarchy(
        hq_id=settlement_settings.HQ_FRANCHISE_ID,
        regional_id=f"{settlement_settings.REGIONAL_FRANCHISE_PREFIX}{regional_key}",
        unit_id=f"{settlement_settings.UNIT_FRANCHISE_PREFIX}{unit_key}",
    )
