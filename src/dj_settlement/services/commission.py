import logging
from dataclasses import dataclass
from decimal import Decimal

from django.db import DatabaseError, transaction
from django.db.models import Q
from django.utils import timezone

from ..conf import settlement_settings
from ..exceptions import (
    InvalidStatusTransition,
    NotFound,
    PercentageInvalid,
    SettlementException,
    ValidationError,
)
from ..models import (
    CommissionConfiguration,
    CommissionSettlement,
    CommissionSplit,
    WinFeeCharge,
)
from ..signals import commission_recorded
from ..utils import audit, new_reference, quantize, verify_percentage

logger = logging.getLogger("dj_settlement.commission")

# tier -> (franchise field, amount field, settlement field)
TIER_FIELDS = {
    CommissionSettlement.TIER_HQ: ("hq_franchise_id", "hq_amount", "hq_settlement"),
    CommissionSettlement.TIER_REGIONAL: (
        "regional_franchise_id",
        "regional_amount",
        "regional_settlement",
    ),
    CommissionSettlement.TIER_UNIT: ("unit_franchise_id", "unit_amount", "unit_settlement"),
}


@dataclass(frozen=True)
class CommissionPolicy:
    hq_split: Decimal
    regional_split: Decimal
    unit_split: Decimal


@dataclass(frozen=True)
class CommissionBreakdown:
    total_fee_amount: Decimal
    hq_amount: Decimal
    regional_amount: Decimal
    unit_amount: Decimal


class CommissionService:
    """
    Splits collected win fees across the HQ / Regional / Unit franchise tiers.

    Splitting is bookkeeping that trails the charge: a failure here is logged and
    never undoes the collected fee.
    """

    @staticmethod
    def _active_configurations():
        today = timezone.localdate()
        return CommissionConfiguration.objects.filter(is_active=True).filter(
            Q(valid_until__isnull=True) | Q(valid_until__gte=today)
        ).order_by("-created_at", "-pk")

    @classmethod
    def get_commission_configuration(cls, district_id=None, region_id=None):
        """District > region > global configuration, then the built-in default."""
        active = cls._active_configurations()
        config = None
        if district_id:
            config = active.filter(district_id=district_id).first()
        if config is None and region_id:
            config = active.filter(region_id=region_id, district_id__isnull=True).first()
        if config is None:
            config = active.filter(region_id__isnull=True, district_id__isnull=True).first()

        if config is None:
            logger.debug(
                "No commission configuration for district=%s region=%s, using default",
                district_id,
                region_id,
            )
            return CommissionPolicy(*settlement_settings.DEFAULT_COMMISSION_SPLIT)
        return CommissionPolicy(config.hq_split, config.regional_split, config.unit_split)

    @staticmethod
    def calculate_breakdown(fee_amount, policy):
        """
        Regional and unit shares are rounded; HQ takes whatever remains so the
        three amounts always add up to ``fee_amount``.
        """
        total = sum(
            verify_percentage(p)
            for p in (policy.hq_split, policy.regional_split, policy.unit_split)
        )
        if total != Decimal("100"):
            raise PercentageInvalid(f"Commission splits must total 100. Got: {total}")

        fee_amount = Decimal(str(fee_amount))
        regional_amount = quantize(fee_amount * policy.regional_split / Decimal("100"))
        unit_amount = quantize(fee_amount * policy.unit_split / Decimal("100"))
        hq_amount = fee_amount - regional_amount - unit_amount
        return CommissionBreakdown(
            total_fee_amount=fee_amount,
            hq_amount=hq_amount,
            regional_amount=regional_amount,
            unit_amount=unit_amount,
        )

    @classmethod
    def record_commissions(
        cls, charge_id, hq_id, regional_id, unit_id, district_id=None, region_id=None
    ):
        """
        Record the split for a collected charge. Returns the split, or None if it
        could not be recorded. Calling it again for the same charge returns the
        existing split.
        """
        try:
            with transaction.atomic():
                charge = WinFeeCharge.objects.filter(charge_id=charge_id).first()
                if charge is None:
                    raise NotFound(f"Fee charge {charge_id} not found")
                if not charge.is_collected:
                    raise InvalidStatusTransition(
                        f"Fee charge {charge_id} is {charge.payment_status}, not SUCCESS"
                    )

                existing = CommissionSplit.objects.filter(charge=charge).first()
                if existing is not None:
                    return existing

                policy = cls.get_commission_configuration(district_id, region_id)
                breakdown = cls.calculate_breakdown(charge.fee_amount, policy)
                split = CommissionSplit.objects.create(
                    charge=charge,
                    fee_amount=charge.fee_amount,
                    hq_franchise_id=hq_id,
                    hq_percentage=policy.hq_split,
                    hq_amount=breakdown.hq_amount,
                    regional_franchise_id=regional_id,
                    regional_percentage=policy.regional_split,
                    regional_amount=breakdown.regional_amount,
                    unit_franchise_id=unit_id,
                    unit_percentage=policy.unit_split,
                    unit_amount=breakdown.unit_amount,
                )
                commission_recorded.send(sender=cls, split=split)
        except (SettlementException, DatabaseError):
            logger.exception("Failed to record commissions for charge %s", charge_id)
            return None

        logger.info(
            "Commissions recorded for %s: hq=%s regional=%s unit=%s",
            charge_id,
            split.hq_amount,
            split.regional_amount,
            split.unit_amount,
        )
        audit(
            "commission.recorded",
            charge_id=charge_id,
            fee_amount=split.fee_amount,
            hq_franchise_id=hq_id,
            hq_amount=split.hq_amount,
            regional_franchise_id=regional_id,
            regional_amount=split.regional_amount,
            unit_franchise_id=unit_id,
            unit_amount=split.unit_amount,
        )
        return split

    @staticmethod
    def _refresh_split_status(split):
        settlements = [split.hq_settlement, split.regional_settlement, split.unit_settlement]
        if any(s is None for s in settlements):
            return
        if all(s.status == CommissionSettlement.STATUS_PAID for s in settlements):
            split.status = CommissionSplit.STATUS_PAID
        else:
            split.status = CommissionSplit.STATUS_APPROVED

    @classmethod
    def generate_settlement(cls, franchise_id, tier, period_start, period_end):
        """
        Roll up every unsettled split of ``franchise_id`` in ``tier`` created within
        [period_start, period_end) into one PENDING settlement.
        """
        if tier not in TIER_FIELDS:
            raise ValidationError(f"Unknown franchise tier: {tier!r}")
        if period_start >= period_end:
            raise ValidationError("Settlement period start must be before its end.")

        franchise_field, amount_field, settlement_field = TIER_FIELDS[tier]

        with transaction.atomic():
            splits = list(
                CommissionSplit.objects.select_for_update(of=("self",))
                .select_related("hq_settlement", "regional_settlement", "unit_settlement")
                .filter(
                    **{
                        franchise_field: franchise_id,
                        f"{settlement_field}__isnull": True,
                        "created_at__gte": period_start,
                        "created_at__lt": period_end,
                    }
                )
                .order_by("pk")
            )
            total = sum((getattr(s, amount_field) for s in splits), Decimal("0"))

            settlement = CommissionSettlement.objects.create(
                settlement_id=new_reference("SET"),
                franchise_id=franchise_id,
                tier=tier,
                period_start=period_start,
                period_end=period_end,
                commission_amount=total,
                transaction_count=len(splits),
            )
            for split in splits:
                setattr(split, settlement_field, settlement)
                cls._refresh_split_status(split)
                split.save(update_fields=[settlement_field, "status"])

        logger.info(
            "Settlement %s generated for %s (%s): %s over %d splits",
            settlement.settlement_id,
            franchise_id,
            tier,
            total,
            len(splits),
        )
        audit(
            "commission.settlement_generated",
            settlement_id=settlement.settlement_id,
            franchise_id=franchise_id,
            tier=tier,
            commission_amount=total,
            transaction_count=len(splits),
        )
        return settlement

    @classmethod
    def mark_settlement_paid(cls, settlement_id, payment_utr, payment_method, actor=None):
        with transaction.atomic():
            settlement = (
                CommissionSettlement.objects.select_for_update()
                .filter(settlement_id=settlement_id)
                .first()
            )
            if settlement is None:
                raise NotFound(f"Settlement {settlement_id} not found")
            if settlement.status == CommissionSettlement.STATUS_PAID:
                raise InvalidStatusTransition(f"Settlement {settlement_id} is already paid")

            settlement.status = CommissionSettlement.STATUS_PAID
            settlement.paid_at = timezone.now()
            settlement.payment_utr = payment_utr
            settlement.payment_method = payment_method
            settlement.save(
                update_fields=["status", "paid_at", "payment_utr", "payment_method", "updated_at"]
            )

            _, _, settlement_field = TIER_FIELDS[settlement.tier]
            splits = CommissionSplit.objects.select_related(
                "hq_settlement", "regional_settlement", "unit_settlement"
            ).filter(**{settlement_field: settlement})
            for split in splits:
                cls._refresh_split_status(split)
                split.save(update_fields=["status"])

        audit(
            "commission.settlement_paid",
            actor=actor,
            settlement_id=settlement_id,
            payment_utr=payment_utr,
            payment_method=payment_method,
            commission_amount=settlement.commission_amount,
        )
        return settlement
