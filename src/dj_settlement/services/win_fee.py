"""
Win-based fee lifecycle.

A fee is *earned* when an operator's bid wins and *collected* only when the trip
starts, so bids on shipments that never move are not penalised. Trigger handlers are
safe to call more than once for the same event.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from django.core.exceptions import ImproperlyConfigured
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Count, Q, Sum
from django.utils import timezone

from ..conf import settlement_settings
from ..exceptions import (
    InsufficientBalance,
    InvalidStatusTransition,
    NotFound,
)
from ..models import FeeConfiguration, LedgerEntry, WinFeeCharge
from ..signals import fee_charge_created, fee_collected, fee_collection_failed, fee_refunded
from ..utils import (
    audit,
    get_commission_service,
    get_franchise_resolver,
    get_ledger_service,
    get_mandate_service,
    get_shipment_resolver,
    new_reference,
    quantize,
    verify_amount,
    verify_percentage,
)

logger = logging.getLogger("dj_settlement.win_fee")

ZERO = Decimal("0")


@dataclass(frozen=True)
class FeeConfig:
    fee_percentage: Decimal
    fee_fixed: Optional[Decimal] = None
    minimum_fee: Optional[Decimal] = None
    maximum_fee: Optional[Decimal] = None


@dataclass
class BidWinResult:
    charge_id: str
    fee_amount: Decimal


@dataclass
class TripStartResult:
    fee_collected: bool
    fee_amount: Decimal
    message: str
    payment_method: Optional[str] = None


@dataclass
class CollectionResult:
    success: bool
    message: str
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    error_code: Optional[str] = None
    already_collected: bool = False


@dataclass
class RetryReport:
    processed: int
    successful: int
    failed: int


@dataclass
class FeeStats:
    total_fees_charged: Decimal
    total_fees_paid: Decimal
    total_fees_outstanding: Decimal
    success_rate: float


class WinFeeService:
    """
    Drives WinFeeCharge records from bid win to collection, refund or waiver.

    Collection tries an ACTIVE UPI mandate first and falls back to a direct ledger
    debit. Payment problems are recorded on the charge for retry and reported in the
    result; they never stop the trip.
    """

    def __init__(
        self,
        gateway=None,
        mandate_service=None,
        ledger_service=None,
        commission_service=None,
        shipment_resolver=None,
        franchise_resolver=None,
    ):
        self.mandate_service = mandate_service or get_mandate_service()(gateway=gateway)
        self.ledger_service = ledger_service or get_ledger_service()
        self.commission_service = commission_service or get_commission_service()
        self.shipment_resolver = shipment_resolver or get_shipment_resolver()
        self.franchise_resolver = franchise_resolver or get_franchise_resolver()

    # ------------------------------------------------------------------
    # Fee policy
    # ------------------------------------------------------------------

    @staticmethod
    def calculate_fee(bid_amount, config):
        """Percentage plus fixed part, clamped to the minimum and maximum, rounded."""
        bid_amount = verify_amount(bid_amount)
        percentage = verify_percentage(config.fee_percentage)

        fee = ZERO
        if percentage > 0:
            fee = bid_amount * percentage / Decimal("100")
        if config.fee_fixed:
            fee += config.fee_fixed
        if config.minimum_fee and fee < config.minimum_fee:
            fee = config.minimum_fee
        if config.maximum_fee and fee > config.maximum_fee:
            fee = config.maximum_fee
        return quantize(Decimal(fee))

    @staticmethod
    def get_fee_configuration(operator_id, district_id=None, region_id=None):
        """Operator > district > region > global configuration, then the default."""
        today = timezone.localdate()
        active = (
            FeeConfiguration.objects.filter(is_active=True)
            .filter(Q(valid_until__isnull=True) | Q(valid_until__gte=today))
            .order_by("-created_at", "-pk")
        )

        lookups = [(FeeConfiguration.SCOPE_OPERATOR, operator_id)]
        if district_id:
            lookups.append((FeeConfiguration.SCOPE_DISTRICT, district_id))
        if region_id:
            lookups.append((FeeConfiguration.SCOPE_REGION, region_id))

        row = None
        for scope, scope_id in lookups:
            row = active.filter(scope=scope, scope_id=scope_id).first()
            if row is not None:
                break
        if row is None:
            row = active.filter(scope=FeeConfiguration.SCOPE_GLOBAL).first()

        if row is None:
            logger.warning("No fee configuration for operator %s, using default", operator_id)
            return FeeConfig(
                fee_percentage=settlement_settings.DEFAULT_FEE_PERCENTAGE,
                minimum_fee=settlement_settings.DEFAULT_MINIMUM_FEE,
            )
        return FeeConfig(
            fee_percentage=row.fee_percentage,
            fee_fixed=row.fee_fixed,
            minimum_fee=row.minimum_fee,
            maximum_fee=row.maximum_fee,
        )

    # ------------------------------------------------------------------
    # Charges
    # ------------------------------------------------------------------

    def create_charge(
        self,
        operator_id,
        booking_id,
        bid_id,
        bid_amount,
        district_id=None,
        region_id=None,
        trigger_event=WinFeeCharge.TRIGGER_BID_WIN,
    ):
        """
        Record the fee owed for ``(booking_id, bid_id)``. No money moves.
        Returns the existing charge if one was already recorded.
        """
        existing = WinFeeCharge.objects.filter(booking_id=booking_id, bid_id=bid_id).first()
        if existing is not None:
            return existing

        config = self.get_fee_configuration(operator_id, district_id, region_id)
        fee_amount = self.calculate_fee(bid_amount, config)

        try:
            with transaction.atomic():
                charge = WinFeeCharge.objects.create(
                    charge_id=new_reference("FEE"),
                    operator_id=operator_id,
                    booking_id=booking_id,
                    bid_id=bid_id,
                    bid_amount=verify_amount(bid_amount),
                    fee_percentage=config.fee_percentage,
                    fee_amount=fee_amount,
                    district_id=district_id,
                    region_id=region_id,
                    trigger_event=trigger_event,
                )
        except IntegrityError:
            # Lost a race with a concurrent delivery of the same event
            return WinFeeCharge.objects.get(booking_id=booking_id, bid_id=bid_id)

        fee_charge_created.send(sender=self.__class__, charge=charge)
        logger.info(
            "Win fee charge %s created for operator %s: %s on bid %s",
            charge.charge_id,
            operator_id,
            fee_amount,
            bid_amount,
        )
        audit(
            "win_fee.charge_created",
            charge_id=charge.charge_id,
            operator_id=operator_id,
            booking_id=booking_id,
            bid_id=bid_id,
            bid_amount=charge.bid_amount,
            fee_amount=fee_amount,
        )
        return charge

    def get_outstanding_fees(self, operator_id):
        return list(
            WinFeeCharge.objects.for_operator(operator_id)
            .outstanding()
            .order_by("-created_at", "-pk")
        )

    def get_operator_fee_stats(self, operator_id):
        stats = WinFeeCharge.objects.for_operator(operator_id).aggregate(
            total_charges=Count("pk"),
            paid_count=Count("pk", filter=Q(payment_status=WinFeeCharge.STATUS_SUCCESS)),
            total_charged=Sum("fee_amount"),
            total_paid=Sum(
                "fee_amount", filter=Q(payment_status=WinFeeCharge.STATUS_SUCCESS)
            ),
            total_outstanding=Sum(
                "fee_amount",
                filter=Q(
                    payment_status__in=(
                        WinFeeCharge.STATUS_PENDING,
                        WinFeeCharge.STATUS_FAILED,
                    )
                ),
            ),
        )
        total_charges = stats["total_charges"]
        return FeeStats(
            total_fees_charged=stats["total_charged"] or ZERO,
            total_fees_paid=stats["total_paid"] or ZERO,
            total_fees_outstanding=stats["total_outstanding"] or ZERO,
            success_rate=(stats["paid_count"] / total_charges * 100) if total_charges else 0.0,
        )

    def waive_fee(self, charge_id, actor, reason):
        """Admin action: forgive a fee that has not been collected."""
        with transaction.atomic():
            charge = self._get_charge(charge_id, for_update=True)
            if charge.payment_status not in (
                WinFeeCharge.STATUS_PENDING,
                WinFeeCharge.STATUS_FAILED,
            ):
                raise InvalidStatusTransition(
                    f"Fee charge {charge_id} is {charge.payment_status} and cannot be waived"
                )
            charge.payment_status = WinFeeCharge.STATUS_WAIVED
            charge.failure_reason = reason[:255]
            charge.next_retry_at = None
            charge.save(
                update_fields=["payment_status", "failure_reason", "next_retry_at", "updated_at"]
            )

        logger.info("Fee %s waived by %s: %s", charge_id, actor, reason)
        audit(
            "win_fee.waived",
            actor=actor,
            charge_id=charge_id,
            operator_id=charge.operator_id,
            fee_amount=charge.fee_amount,
            reason=reason,
        )
        return charge

    @staticmethod
    def _get_charge(charge_id, for_update=False):
        qs = WinFeeCharge.objects.all()
        if for_update:
            qs = qs.select_for_update()
        charge = qs.filter(charge_id=charge_id).first()
        if charge is None:
            raise NotFound(f"Fee charge {charge_id} not found")
        return charge

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    def _attempt_collection(self, charge, shipment_id):
        """Autopay first, then wallet. Caller holds the charge lock."""
        description = f"Win fee for shipment {shipment_id}"
        reasons = []
        error_code = InsufficientBalance.code

        mandate = self.mandate_service.find_chargeable_mandate(
            charge.operator_id, charge.fee_amount
        )
        if mandate is None:
            reasons.append("no usable autopay mandate")
        else:
            logger.info("Attempting autopay for %s via %s", charge.charge_id, mandate.mandate_id)
            result = self.mandate_service.charge_mandate(
                mandate.mandate_id, charge.fee_amount, description, shipment_id
            )
            if result.success:
                return CollectionResult(
                    success=True,
                    message="Fee collected via UPI Autopay",
                    payment_method=WinFeeCharge.METHOD_UPI_AUTOPAY,
                    transaction_id=result.transaction_id,
                    gateway_transaction_id=result.gateway_transaction_id,
                )
            logger.warning(
                "Autopay failed for %s (%s), trying wallet", charge.charge_id, result.message
            )
            reasons.append(f"autopay failed: {result.message}")
            error_code = result.error_code or error_code

        try:
            entry = self.ledger_service.post_entry(
                charge.operator_id,
                LedgerEntry.TYPE_DEBIT,
                charge.fee_amount,
                description,
                "win_fee",
                charge.charge_id,
            )
        except InsufficientBalance:
            reasons.append("insufficient wallet balance")
        else:
            return CollectionResult(
                success=True,
                message="Fee collected from wallet",
                payment_method=WinFeeCharge.METHOD_WALLET,
                transaction_id=str(entry.uuid),
            )

        return CollectionResult(
            success=False,
            message="; ".join(reasons),
            error_code=error_code,
        )

    def _retry_delay(self, retry_count):
        base = settlement_settings.RETRY_BASE_MINUTES
        return timedelta(minutes=base * 2 ** max(retry_count - 1, 0))

    def collect_win_fee(self, charge_id, shipment_id):
        """
        Collect a charge. At most one collection ever succeeds: the charge row stays
        locked for the whole attempt and a collected charge short-circuits.
        """
        with transaction.atomic():
            try:
                charge = self._get_charge(charge_id, for_update=True)
            except NotFound:
                return CollectionResult(
                    success=False, message="Fee charge not found", error_code=NotFound.code
                )

            if charge.is_collected:
                return CollectionResult(
                    success=True,
                    message="Fee already collected",
                    payment_method=charge.payment_method,
                    transaction_id=charge.transaction_id,
                    already_collected=True,
                )
            if charge.payment_status in (
                WinFeeCharge.STATUS_REFUNDED,
                WinFeeCharge.STATUS_WAIVED,
            ):
                return CollectionResult(
                    success=False,
                    message=f"Fee charge is {charge.payment_status}",
                    error_code=InvalidStatusTransition.code,
                )

            charge.shipment_id = shipment_id
            if charge.trigger_event == WinFeeCharge.TRIGGER_BID_WIN:
                charge.trigger_event = WinFeeCharge.TRIGGER_TRIP_START

            if charge.fee_amount <= ZERO:
                charge.payment_status = WinFeeCharge.STATUS_WAIVED
                charge.failure_reason = "No fee due"
                charge.next_retry_at = None
                charge.save()
                logger.info("Win fee %s is zero, waived without collection", charge.charge_id)
                audit(
                    "win_fee.waived",
                    actor="system",
                    charge_id=charge.charge_id,
                    operator_id=charge.operator_id,
                    fee_amount=charge.fee_amount,
                    reason="No fee due",
                )
                return CollectionResult(success=True, message="No fee due")

            outcome = self._attempt_collection(charge, shipment_id)
            now = timezone.now()

            if outcome.success:
                charge.payment_status = WinFeeCharge.STATUS_SUCCESS
                charge.payment_method = outcome.payment_method
                charge.transaction_id = outcome.transaction_id
                charge.gateway_transaction_id = outcome.gateway_transaction_id
                charge.charged_at = now
                charge.failure_reason = ""
                charge.next_retry_at = None
                charge.save()
                fee_collected.send(sender=self.__class__, charge=charge)
            else:
                charge.payment_status = WinFeeCharge.STATUS_FAILED
                charge.failure_reason = outcome.message[:255]
                charge.retry_count += 1
                charge.next_retry_at = now + self._retry_delay(charge.retry_count)
                charge.save()
                fee_collection_failed.send(
                    sender=self.__class__, charge=charge, reason=outcome.message
                )

        if outcome.success:
            logger.info(
                "Win fee %s collected via %s (%s)",
                charge.charge_id,
                charge.payment_method,
                charge.transaction_id,
            )
            audit(
                "win_fee.collected",
                charge_id=charge.charge_id,
                operator_id=charge.operator_id,
                shipment_id=shipment_id,
                fee_amount=charge.fee_amount,
                payment_method=charge.payment_method,
                transaction_id=charge.transaction_id,
            )
            self._record_commissions(charge)
        else:
            logger.warning(
                "Win fee %s not collected (attempt %d), next retry at %s: %s",
                charge.charge_id,
                charge.retry_count,
                charge.next_retry_at.isoformat(),
                outcome.message,
            )
            audit(
                "win_fee.collection_failed",
                charge_id=charge.charge_id,
                operator_id=charge.operator_id,
                shipment_id=shipment_id,
                fee_amount=charge.fee_amount,
                retry_count=charge.retry_count,
                reason=outcome.message,
            )
        return outcome

    def _record_commissions(self, charge):
        # Split bookkeeping trails the charge and must never undo it
        try:
            hierarchy = self.franchise_resolver(charge.district_id, charge.region_id)
        except Exception:
            logger.exception("Franchise lookup failed for charge %s", charge.charge_id)
            return None
        return self.commission_service.record_commissions(
            charge.charge_id,
            hierarchy.hq_id,
            hierarchy.regional_id,
            hierarchy.unit_id,
            charge.district_id,
            charge.region_id,
        )

    def process_retry_queue(self, now=None, limit=100):
        """Retry failed collections whose back-off has elapsed."""
        now = now or timezone.now()
        due = list(
            WinFeeCharge.objects.due_for_retry(now, settlement_settings.MAX_FEE_RETRIES)[
                :limit
            ]
        )

        successful = failed = 0
        for charge in due:
            result = self.collect_win_fee(charge.charge_id, charge.shipment_id)
            if result.success:
                successful += 1
            else:
                failed += 1

        logger.info(
            "Fee retry queue processed: %d due, %d collected, %d failed",
            len(due),
            successful,
            failed,
        )
        return RetryReport(processed=len(due), successful=successful, failed=failed)

    # ------------------------------------------------------------------
    # Trip triggers
    # ------------------------------------------------------------------

    def _resolve_shipment(self, shipment_id):
        if self.shipment_resolver is None:
            raise ImproperlyConfigured(
                "DJ_SETTLEMENT['SHIPMENT_RESOLVER'] must be set to handle trip events."
            )
        return self.shipment_resolver(shipment_id)

    def on_bid_win(
        self, operator_id, booking_id, bid_id, bid_amount, district_id=None, region_id=None
    ):
        """Record the fee owed for a won bid. Nothing is collected yet."""
        charge = self.create_charge(
            operator_id, booking_id, bid_id, bid_amount, district_id, region_id
        )
        return BidWinResult(charge_id=charge.charge_id, fee_amount=charge.fee_amount)

    def on_trip_start(self, shipment_id):
        """
        Collect the win fee for the shipment's winning bid.
        Always returns a result; a failed payment never blocks the trip.
        """
        context = self._resolve_shipment(shipment_id)
        if context is None:
            logger.error("Trip start for unknown shipment %s", shipment_id)
            return TripStartResult(
                fee_collected=False,
                fee_amount=ZERO,
                message=f"Shipment {shipment_id} not found. Trip can proceed.",
            )

        charge = None
        try:
            charge = WinFeeCharge.objects.filter(
                booking_id=context.booking_id, bid_id=context.bid_id
            ).first()
            if charge is not None and charge.is_collected:
                return TripStartResult(
                    fee_collected=True,
                    fee_amount=charge.fee_amount,
                    payment_method=charge.payment_method,
                    message="Fee already collected",
                )
            if charge is None:
                charge = self.create_charge(
                    context.operator_id,
                    context.booking_id,
                    context.bid_id,
                    context.bid_amount,
                    context.district_id,
                    context.region_id,
                    trigger_event=WinFeeCharge.TRIGGER_TRIP_START,
                )
            elif charge.payment_status in (
                WinFeeCharge.STATUS_REFUNDED,
                WinFeeCharge.STATUS_WAIVED,
            ):
                return TripStartResult(
                    fee_collected=False,
                    fee_amount=charge.fee_amount,
                    message=f"Fee is {charge.payment_status}, nothing to collect",
                )

            result = self.collect_win_fee(charge.charge_id, shipment_id)
        except Exception as exc:
            # Payment trouble of any kind must not hold up the trip
            logger.exception("Failed to process trip start payment for %s", shipment_id)
            return TripStartResult(
                fee_collected=False,
                fee_amount=charge.fee_amount if charge is not None else ZERO,
                message=f"Payment processing error: {exc}. Trip can proceed.",
            )

        if result.success and charge.fee_amount <= ZERO:
            return TripStartResult(
                fee_collected=False,
                fee_amount=charge.fee_amount,
                message="No fee due. Trip can proceed.",
            )
        if result.success:
            return TripStartResult(
                fee_collected=True,
                fee_amount=charge.fee_amount,
                payment_method=result.payment_method,
                message=(
                    "Fee already collected"
                    if result.already_collected
                    else "Fee collected successfully"
                ),
            )
        return TripStartResult(
            fee_collected=False,
            fee_amount=charge.fee_amount,
            message=(
                f"Fee collection failed: {result.message}. "
                "Trip can proceed, fee will be retried."
            ),
        )

    def on_trip_complete(self, shipment_id):
        """Flag the shipment's uncollected fees as overdue. No money moves."""
        match = Q(shipment_id=shipment_id)
        context = self._resolve_shipment(shipment_id)
        if context is not None:
            match |= Q(booking_id=context.booking_id, bid_id=context.bid_id)

        try:
            updated = (
                WinFeeCharge.objects.outstanding()
                .filter(match)
                .update(
                    trigger_event=WinFeeCharge.TRIGGER_TRIP_COMPLETE,
                    updated_at=timezone.now(),
                )
            )
        except DatabaseError:
            logger.exception("Failed to flag overdue fees for shipment %s", shipment_id)
            return

        if updated:
            logger.info("%d uncollected fee(s) overdue for shipment %s", updated, shipment_id)
            audit("win_fee.overdue", shipment_id=shipment_id, charges=updated)

    def on_trip_cancellation(self, shipment_id, reason):
        """
        Refund a fee collected less than REFUND_WINDOW_MINUTES ago: the charge moves
        to REFUNDED and a compensating CREDIT is posted in the same transaction.
        Older charges are left for manual review.
        """
        window = timedelta(minutes=settlement_settings.REFUND_WINDOW_MINUTES)

        with transaction.atomic():
            charge = (
                WinFeeCharge.objects.select_for_update()
                .filter(shipment_id=shipment_id, payment_status=WinFeeCharge.STATUS_SUCCESS)
                .first()
            )
            if charge is None:
                logger.info("Trip %s cancelled (%s), no collected fee", shipment_id, reason)
                return

            now = timezone.now()
            if charge.charged_at is None or now - charge.charged_at >= window:
                logger.info(
                    "Trip %s cancelled after the refund window, fee %s left for review",
                    shipment_id,
                    charge.charge_id,
                )
                return

            entry = self.ledger_service.post_entry(
                charge.operator_id,
                LedgerEntry.TYPE_CREDIT,
                charge.fee_amount,
                f"Refund: win fee for cancelled shipment {shipment_id} ({reason})",
                "win_fee_refund",
                charge.charge_id,
            )
            charge.payment_status = WinFeeCharge.STATUS_REFUNDED
            charge.refunded_at = now
            charge.save(update_fields=["payment_status", "refunded_at", "updated_at"])
            fee_refunded.send(sender=self.__class__, charge=charge, entry=entry)

        logger.info("Auto-refunded fee %s for cancelled trip %s", charge.charge_id, shipment_id)
        audit(
            "win_fee.refunded",
            charge_id=charge.charge_id,
            operator_id=charge.operator_id,
            shipment_id=shipment_id,
            fee_amount=charge.fee_amount,
            reason=reason,
            entry_uuid=str(entry.uuid),
        )
