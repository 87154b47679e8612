import logging
from dataclasses import dataclass
from typing import Optional

from django.db import transaction
from django.utils import timezone

from ..conf import settlement_settings
from ..exceptions import (
    GatewayDeclined,
    InvalidStatusTransition,
    MandateInactive,
    MandateLimitExceeded,
    MandatePaused,
    NotFound,
    ValidationError,
)
from ..models import UPIMandate
from ..signals import mandate_status_changed
from ..utils import audit, get_gateway, new_reference, verify_amount

logger = logging.getLogger("dj_settlement.mandate")


@dataclass
class MandateChargeResult:
    success: bool
    message: str
    error_code: Optional[str] = None
    mandate_id: Optional[str] = None
    transaction_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None


class MandateService:
    """
    UPI Autopay mandate lifecycle.

        PENDING --approve--> ACTIVE
        ACTIVE  --charge ok--> ACTIVE (failure_count = 0)
        ACTIVE  --charge failed--> ACTIVE (failure_count + 1), PAUSED at the threshold
        PENDING / ACTIVE / PAUSED --revoke--> REVOKED

    Leaving PAUSED only happens through ``reactivate_mandate``, an explicit admin action.
    """

    def __init__(self, gateway=None):
        self.gateway = gateway if gateway is not None else get_gateway()
        self.failure_threshold = settlement_settings.MANDATE_FAILURE_THRESHOLD

    @staticmethod
    def _get(mandate_id, for_update=False):
        qs = UPIMandate.objects.all()
        if for_update:
            qs = qs.select_for_update()
        mandate = qs.filter(mandate_id=mandate_id).first()
        if mandate is None:
            raise NotFound(f"Mandate {mandate_id} not found")
        return mandate

    @staticmethod
    def _set_status(mandate, status, actor=None, **extra_fields):
        previous = mandate.status
        mandate.status = status
        for name, value in extra_fields.items():
            setattr(mandate, name, value)
        mandate.save(update_fields=["status", "updated_at", *extra_fields])
        mandate_status_changed.send(
            sender=MandateService, mandate=mandate, previous_status=previous
        )
        audit(
            "mandate.status_changed",
            actor=actor,
            mandate_id=mandate.mandate_id,
            operator_id=mandate.operator_id,
            previous_status=previous,
            status=status,
        )
        return mandate

    def create_mandate(self, operator_id, upi_id, max_amount, start_date=None, end_date=None):
        """Register a mandate with the gateway and store it as PENDING approval."""
        max_amount = verify_amount(max_amount)
        if not upi_id or "@" not in upi_id:
            raise ValidationError(f"Invalid UPI id: {upi_id!r}")
        if start_date and end_date and end_date < start_date:
            raise ValidationError("Mandate end date is before its start date.")

        mandate_id = new_reference("MND")
        response = self.gateway.register_mandate(
            mandate_id, upi_id, max_amount, start_date, end_date
        )
        if not response.success:
            raise GatewayDeclined(response.message or "Mandate creation failed")

        mandate = UPIMandate.objects.create(
            mandate_id=mandate_id,
            operator_id=operator_id,
            upi_id=upi_id,
            max_amount=max_amount,
            start_date=start_date or timezone.localdate(),
            end_date=end_date,
            gateway_reference=response.reference or "",
            meta=response.metadata,
        )
        logger.info("Mandate %s created for operator %s", mandate_id, operator_id)
        audit(
            "mandate.created",
            mandate_id=mandate_id,
            operator_id=operator_id,
            upi_id=upi_id,
            max_amount=max_amount,
        )
        return mandate

    def approve_mandate(self, mandate_id):
        """The operator approved the mandate in their UPI app."""
        with transaction.atomic():
            mandate = self._get(mandate_id, for_update=True)
            if mandate.status != UPIMandate.STATUS_PENDING:
                raise InvalidStatusTransition(
                    f"Mandate {mandate_id} is {mandate.status}, only PENDING can be approved"
                )
            return self._set_status(
                mandate, UPIMandate.STATUS_ACTIVE, approved_at=timezone.now()
            )

    def revoke_mandate(self, mandate_id, actor=None):
        """Revoke a mandate. REVOKED is terminal; revoking twice is a no-op."""
        with transaction.atomic():
            mandate = self._get(mandate_id, for_update=True)
            if mandate.status == UPIMandate.STATUS_REVOKED:
                return mandate
            return self._set_status(
                mandate, UPIMandate.STATUS_REVOKED, actor=actor, revoked_at=timezone.now()
            )

    def reactivate_mandate(self, mandate_id, actor):
        """Admin action: put a PAUSED mandate back into service with a clean slate."""
        with transaction.atomic():
            mandate = self._get(mandate_id, for_update=True)
            if mandate.status != UPIMandate.STATUS_PAUSED:
                raise InvalidStatusTransition(
                    f"Mandate {mandate_id} is {mandate.status}, only PAUSED can be reactivated"
                )
            return self._set_status(
                mandate, UPIMandate.STATUS_ACTIVE, actor=actor, failure_count=0
            )

    def get_operator_mandates(self, operator_id):
        return list(UPIMandate.objects.for_operator(operator_id).order_by("-created_at", "-pk"))

    def find_chargeable_mandate(self, operator_id, amount):
        """Newest ACTIVE mandate whose cap covers ``amount`` and whose breaker is closed."""
        return (
            UPIMandate.objects.for_operator(operator_id)
            .active()
            .covering(amount)
            .filter(failure_count__lt=self.failure_threshold)
            .order_by("-created_at", "-pk")
            .first()
        )

    def _failure(self, exc_class, message, mandate_id):
        logger.info("Mandate %s not charged: %s", mandate_id, message)
        return MandateChargeResult(
            success=False, message=message, error_code=exc_class.code, mandate_id=mandate_id
        )

    def charge_mandate(self, mandate_id, amount, description, reference_id):
        """
        Charge ``amount`` against a mandate.

        Expected failures (missing, inactive, over limit, paused, declined) come back
        as an unsuccessful MandateChargeResult. A paused mandate never reaches the
        gateway.
        """
        amount = verify_amount(amount)

        with transaction.atomic():
            try:
                mandate = self._get(mandate_id, for_update=True)
            except NotFound:
                return self._failure(NotFound, "Mandate not found", mandate_id)

            if mandate.status == UPIMandate.STATUS_PAUSED:
                return self._failure(
                    MandatePaused, "Mandate paused due to multiple failures", mandate_id
                )
            if mandate.status != UPIMandate.STATUS_ACTIVE:
                return self._failure(
                    MandateInactive,
                    f"Mandate is {mandate.status}, cannot charge",
                    mandate_id,
                )
            if amount > mandate.max_amount:
                return self._failure(
                    MandateLimitExceeded,
                    f"Amount {amount} exceeds mandate limit {mandate.max_amount}",
                    mandate_id,
                )
            if mandate.failure_count >= self.failure_threshold:
                self._set_status(mandate, UPIMandate.STATUS_PAUSED)
                return self._failure(
                    MandatePaused, "Mandate paused due to multiple failures", mandate_id
                )
            upi_id = mandate.upi_id

        try:
            response = self.gateway.charge(mandate_id, upi_id, amount, description, reference_id)
        except (TimeoutError, ConnectionError) as exc:
            logger.warning("Gateway call for mandate %s failed: %s", mandate_id, exc)
            response = None
            reason = "Gateway timeout" if isinstance(exc, TimeoutError) else "Gateway unavailable"
        except Exception as exc:
            logger.exception("Gateway error while charging mandate %s", mandate_id)
            response = None
            reason = f"Gateway error: {exc}"
        else:
            reason = response.message or "Charge failed"

        with transaction.atomic():
            mandate = self._get(mandate_id, for_update=True)
            now = timezone.now()

            if response is not None and response.success:
                mandate.failure_count = 0
                mandate.last_used_at = now
                mandate.save(update_fields=["failure_count", "last_used_at", "updated_at"])
                logger.info(
                    "Autopay charge of %s on mandate %s succeeded (%s)",
                    amount,
                    mandate_id,
                    response.transaction_id,
                )
                audit(
                    "mandate.charged",
                    mandate_id=mandate_id,
                    operator_id=mandate.operator_id,
                    amount=amount,
                    reference_id=reference_id,
                    transaction_id=response.transaction_id,
                )
                return MandateChargeResult(
                    success=True,
                    message="Charge successful",
                    mandate_id=mandate_id,
                    transaction_id=response.transaction_id,
                    gateway_transaction_id=response.gateway_transaction_id,
                )

            # Concurrent failures must not push the count past the threshold
            mandate.failure_count = min(mandate.failure_count + 1, self.failure_threshold)
            mandate.last_failure_reason = reason[:255]
            mandate.last_failure_at = now
            mandate.save(
                update_fields=[
                    "failure_count",
                    "last_failure_reason",
                    "last_failure_at",
                    "updated_at",
                ]
            )
            logger.warning(
                "Autopay charge of %s on mandate %s failed (%d/%d): %s",
                amount,
                mandate_id,
                mandate.failure_count,
                self.failure_threshold,
                reason,
            )
            audit(
                "mandate.charge_failed",
                mandate_id=mandate_id,
                operator_id=mandate.operator_id,
                amount=amount,
                reference_id=reference_id,
                failure_count=mandate.failure_count,
                reason=reason,
            )
            if (
                mandate.failure_count >= self.failure_threshold
                and mandate.status == UPIMandate.STATUS_ACTIVE
            ):
                self._set_status(mandate, UPIMandate.STATUS_PAUSED)

        return MandateChargeResult(
            success=False,
            message=reason,
            error_code=GatewayDeclined.code,
            mandate_id=mandate_id,
        )
