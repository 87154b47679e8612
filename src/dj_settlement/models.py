"""
Models for dj_settlement.

Ledger entries are append-only; every other record changes only through status
transitions driven by the services in ``dj_settlement.services``.
"""
import uuid
from decimal import Decimal

from django.db import models
from django.utils.translation import gettext_lazy as _

from .conf import settlement_settings
from .exceptions import ImmutableRecord
from .managers import LedgerEntryManager, UPIMandateManager, WinFeeChargeManager

MONEY_DIGITS = 20


def money_field(**kwargs):
    return models.DecimalField(
        max_digits=MONEY_DIGITS,
        decimal_places=settlement_settings.MATH_SCALE,
        **kwargs,
    )


def percentage_field(**kwargs):
    return models.DecimalField(max_digits=6, decimal_places=2, **kwargs)


class LedgerAccount(models.Model):
    """
    One row per operator. Holds no balance; it is the row locked with
    ``select_for_update()`` to serialize postings for that operator.
    """

    operator_id = models.CharField(max_length=64, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = _("Ledger account")
        verbose_name_plural = _("Ledger accounts")

    def __str__(self):
        return self.operator_id


class LedgerEntry(models.Model):
    """
    Immutable money movement for one operator.
    ``balance_after`` is the running balance immediately after this entry.
    """

    TYPE_CREDIT = "CREDIT"
    TYPE_DEBIT = "DEBIT"

    TYPE_CHOICES = (
        (TYPE_CREDIT, _("Credit")),
        (TYPE_DEBIT, _("Debit")),
    )

    uuid = models.UUIDField(default=uuid.uuid4, editable=False, unique=True)
    operator_id = models.CharField(max_length=64)
    sequence = models.PositiveBigIntegerField()
    type = models.CharField(max_length=10, choices=TYPE_CHOICES)
    amount = money_field()
    balance_after = money_field()
    description = models.CharField(max_length=255, blank=True, default="")
    reference_type = models.CharField(max_length=32, blank=True, null=True)
    reference_id = models.CharField(max_length=64, blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    objects = LedgerEntryManager()

    class Meta:
        ordering = ("operator_id", "sequence")
        constraints = [
            models.UniqueConstraint(
                fields=["operator_id", "sequence"], name="ledger_operator_sequence_uniq"
            ),
            models.CheckConstraint(
                condition=models.Q(amount__gt=0), name="ledger_amount_positive"
            ),
            models.CheckConstraint(
                condition=models.Q(balance_after__gte=0),
                name="ledger_balance_non_negative",
            ),
        ]
        indexes = [
            models.Index(
                fields=["operator_id", "type", "created_at"],
                name="ledger_operator_type_idx",
            ),
            models.Index(
                fields=["reference_type", "reference_id"], name="ledger_reference_idx"
            ),
        ]
        verbose_name = _("Ledger entry")
        verbose_name_plural = _("Ledger entries")

    def __str__(self):
        return f"{self.type} {self.amount} -> {self.balance_after}"

    @property
    def signed_amount(self):
        return self.amount if self.type == self.TYPE_CREDIT else -self.amount

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecord("Ledger entries cannot be modified once posted.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecord("Ledger entries cannot be deleted.")


class WinFeeCharge(models.Model):
    """Platform fee owed for a won bid; collected when the trip starts."""

    STATUS_PENDING = "PENDING"
    STATUS_SUCCESS = "SUCCESS"
    STATUS_FAILED = "FAILED"
    STATUS_REFUNDED = "REFUNDED"
    STATUS_WAIVED = "WAIVED"

    STATUS_CHOICES = (
        (STATUS_PENDING, _("Pending")),
        (STATUS_SUCCESS, _("Success")),
        (STATUS_FAILED, _("Failed")),
        (STATUS_REFUNDED, _("Refunded")),
        (STATUS_WAIVED, _("Waived")),
    )

    METHOD_PENDING = "PENDING"
    METHOD_UPI_AUTOPAY = "UPI_AUTOPAY"
    METHOD_WALLET = "WALLET"

    METHOD_CHOICES = (
        (METHOD_PENDING, _("Pending")),
        (METHOD_UPI_AUTOPAY, _("UPI Autopay")),
        (METHOD_WALLET, _("Wallet")),
    )

    TRIGGER_BID_WIN = "BID_WIN"
    TRIGGER_TRIP_START = "TRIP_START"
    TRIGGER_TRIP_COMPLETE = "TRIP_COMPLETE"

    TRIGGER_CHOICES = (
        (TRIGGER_BID_WIN, _("Bid won")),
        (TRIGGER_TRIP_START, _("Trip started")),
        (TRIGGER_TRIP_COMPLETE, _("Trip completed")),
    )

    charge_id = models.CharField(max_length=40, unique=True)
    operator_id = models.CharField(max_length=64)
    booking_id = models.CharField(max_length=64)
    bid_id = models.CharField(max_length=64)
    shipment_id = models.CharField(max_length=64, blank=True, null=True)
    district_id = models.CharField(max_length=64, blank=True, null=True)
    region_id = models.CharField(max_length=64, blank=True, null=True)

    bid_amount = money_field()
    fee_percentage = percentage_field()
    fee_amount = money_field()

    payment_status = models.CharField(
        max_length=10, choices=STATUS_CHOICES, default=STATUS_PENDING
    )
    payment_method = models.CharField(
        max_length=12, choices=METHOD_CHOICES, default=METHOD_PENDING
    )
    trigger_event = models.CharField(
        max_length=14, choices=TRIGGER_CHOICES, default=TRIGGER_BID_WIN
    )

    transaction_id = models.CharField(max_length=64, blank=True, null=True)
    gateway_transaction_id = models.CharField(max_length=64, blank=True, null=True)
    failure_reason = models.CharField(max_length=255, blank=True, default="")
    retry_count = models.PositiveIntegerField(default=0)
    next_retry_at = models.DateTimeField(blank=True, null=True)

    charged_at = models.DateTimeField(blank=True, null=True)
    refunded_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = WinFeeChargeManager()

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["booking_id", "bid_id"], name="win_fee_booking_bid_uniq"
            ),
        ]
        indexes = [
            models.Index(
                fields=["operator_id", "payment_status"], name="win_fee_operator_idx"
            ),
            models.Index(fields=["shipment_id"], name="win_fee_shipment_idx"),
            models.Index(
                fields=["payment_status", "next_retry_at"], name="win_fee_retry_idx"
            ),
        ]
        verbose_name = _("Win fee charge")
        verbose_name_plural = _("Win fee charges")

    def __str__(self):
        return f"{self.charge_id} {self.fee_amount} ({self.payment_status})"

    @property
    def is_collected(self):
        return self.payment_status == self.STATUS_SUCCESS


class UPIMandate(models.Model):
    """UPI Autopay authorization allowing recurring debits up to ``max_amount``."""

    STATUS_PENDING = "PENDING"
    STATUS_ACTIVE = "ACTIVE"
    STATUS_PAUSED = "PAUSED"
    STATUS_REVOKED = "REVOKED"

    STATUS_CHOICES = (
        (STATUS_PENDING, _("Pending")),
        (STATUS_ACTIVE, _("Active")),
        (STATUS_PAUSED, _("Paused")),
        (STATUS_REVOKED, _("Revoked")),
    )

    FREQUENCY_AS_PRESENTED = "AS_PRESENTED"

    mandate_id = models.CharField(max_length=40, unique=True)
    operator_id = models.CharField(max_length=64)
    upi_id = models.CharField(max_length=128)
    max_amount = money_field()
    frequency = models.CharField(max_length=20, default=FREQUENCY_AS_PRESENTED)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_PENDING)
    failure_count = models.PositiveSmallIntegerField(default=0)
    last_failure_reason = models.CharField(max_length=255, blank=True, default="")
    last_failure_at = models.DateTimeField(blank=True, null=True)
    last_used_at = models.DateTimeField(blank=True, null=True)
    gateway_reference = models.CharField(max_length=64, blank=True, default="")
    start_date = models.DateField(blank=True, null=True)
    end_date = models.DateField(blank=True, null=True)
    approved_at = models.DateTimeField(blank=True, null=True)
    revoked_at = models.DateTimeField(blank=True, null=True)
    meta = models.JSONField(blank=True, default=dict)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = UPIMandateManager()

    class Meta:
        indexes = [
            models.Index(fields=["operator_id", "status"], name="mandate_operator_idx"),
        ]
        verbose_name = _("UPI mandate")
        verbose_name_plural = _("UPI mandates")

    def __str__(self):
        return f"{self.mandate_id} {self.upi_id} ({self.status})"


class FeeConfiguration(models.Model):
    """Fee policy for an operator, district, region or the whole platform."""

    SCOPE_OPERATOR = "OPERATOR"
    SCOPE_DISTRICT = "DISTRICT"
    SCOPE_REGION = "REGION"
    SCOPE_GLOBAL = "GLOBAL"

    SCOPE_CHOICES = (
        (SCOPE_OPERATOR, _("Operator")),
        (SCOPE_DISTRICT, _("District")),
        (SCOPE_REGION, _("Region")),
        (SCOPE_GLOBAL, _("Global")),
    )

    scope = models.CharField(max_length=10, choices=SCOPE_CHOICES)
    scope_id = models.CharField(max_length=64, blank=True, null=True)
    fee_percentage = percentage_field(default=Decimal("0"))
    fee_fixed = money_field(blank=True, null=True)
    minimum_fee = money_field(blank=True, null=True)
    maximum_fee = money_field(blank=True, null=True)
    is_active = models.BooleanField(default=True)
    valid_until = models.DateField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["scope", "scope_id"], name="fee_config_scope_idx"),
        ]

    def __str__(self):
        return f"{self.scope}:{self.scope_id or '*'} {self.fee_percentage}%"


class CommissionConfiguration(models.Model):
    """Franchise split percentages for a district, a region, or globally (both null)."""

    district_id = models.CharField(max_length=64, blank=True, null=True)
    region_id = models.CharField(max_length=64, blank=True, null=True)
    hq_split = percentage_field()
    regional_split = percentage_field()
    unit_split = percentage_field()
    is_active = models.BooleanField(default=True)
    valid_until = models.DateField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.hq_split}/{self.regional_split}/{self.unit_split}"


class CommissionSettlement(models.Model):
    """Roll-up of one franchise's commission for one tier over a period."""

    TIER_HQ = "HQ"
    TIER_REGIONAL = "REGIONAL"
    TIER_UNIT = "UNIT"

    TIER_CHOICES = (
        (TIER_HQ, _("HQ")),
        (TIER_REGIONAL, _("Regional")),
        (TIER_UNIT, _("Unit")),
    )

    STATUS_PENDING = "PENDING"
    STATUS_PAID = "PAID"

    STATUS_CHOICES = (
        (STATUS_PENDING, _("Pending")),
        (STATUS_PAID, _("Paid")),
    )

    settlement_id = models.CharField(max_length=40, unique=True)
    franchise_id = models.CharField(max_length=64)
    tier = models.CharField(max_length=10, choices=TIER_CHOICES)
    period_start = models.DateTimeField()
    period_end = models.DateTimeField()
    commission_amount = money_field(default=Decimal("0"))
    transaction_count = models.PositiveIntegerField(default=0)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_PENDING)
    paid_at = models.DateTimeField(blank=True, null=True)
    payment_utr = models.CharField(max_length=64, blank=True, default="")
    payment_method = models.CharField(max_length=32, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.settlement_id} {self.tier} {self.commission_amount}"


class CommissionSplit(models.Model):
    """Allocation of one collected fee across the HQ / Regional / Unit tiers."""

    STATUS_PENDING = "PENDING"
    STATUS_APPROVED = "APPROVED"
    STATUS_PAID = "PAID"

    STATUS_CHOICES = (
        (STATUS_PENDING, _("Pending")),
        (STATUS_APPROVED, _("Approved")),
        (STATUS_PAID, _("Paid")),
    )

    charge = models.OneToOneField(
        WinFeeCharge, on_delete=models.PROTECT, related_name="commission_split"
    )
    fee_amount = money_field()

    hq_franchise_id = models.CharField(max_length=64)
    hq_percentage = percentage_field()
    hq_amount = money_field()
    hq_settlement = models.ForeignKey(
        CommissionSettlement,
        on_delete=models.PROTECT,
        related_name="hq_splits",
        blank=True,
        null=True,
    )

    regional_franchise_id = models.CharField(max_length=64)
    regional_percentage = percentage_field()
    regional_amount = money_field()
    regional_settlement = models.ForeignKey(
        CommissionSettlement,
        on_delete=models.PROTECT,
        related_name="regional_splits",
        blank=True,
        null=True,
    )

    unit_franchise_id = models.CharField(max_length=64)
    unit_percentage = percentage_field()
    unit_amount = money_field()
    unit_settlement = models.ForeignKey(
        CommissionSettlement,
        on_delete=models.PROTECT,
        related_name="unit_splits",
        blank=True,
        null=True,
    )

    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_PENDING)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["hq_franchise_id"], name="split_hq_idx"),
            models.Index(fields=["regional_franchise_id"], name="split_regional_idx"),
            models.Index(fields=["unit_franchise_id"], name="split_unit_idx"),
        ]

    def __str__(self):
        return f"Split {self.charge_id} ({self.fee_amount})"

    @property
    def total(self):
        return self.hq_amount + self.regional_amount + self.unit_amount
