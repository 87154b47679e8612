from django.db import models


class LedgerEntryQuerySet(models.QuerySet):
    def for_operator(self, operator_id):
        return self.filter(operator_id=operator_id)

    def credits(self):
        return self.filter(type="CREDIT")

    def debits(self):
        return self.filter(type="DEBIT")

    def chronological(self):
        return self.order_by("operator_id", "sequence")

    def latest_for(self, operator_id):
        """Most recent entry for the operator, or None."""
        return self.filter(operator_id=operator_id).order_by("-sequence").first()


LedgerEntryManager = models.Manager.from_queryset(LedgerEntryQuerySet)


class WinFeeChargeQuerySet(models.QuerySet):
    def for_operator(self, operator_id):
        return self.filter(operator_id=operator_id)

    def outstanding(self):
        return self.filter(payment_status__in=("PENDING", "FAILED"))

    def due_for_retry(self, now, max_retries):
        return self.filter(
            payment_status="FAILED",
            shipment_id__isnull=False,
            next_retry_at__lte=now,
            retry_count__lte=max_retries,
        ).order_by("next_retry_at", "pk")


WinFeeChargeManager = models.Manager.from_queryset(WinFeeChargeQuerySet)


class UPIMandateQuerySet(models.QuerySet):
    def for_operator(self, operator_id):
        return self.filter(operator_id=operator_id)

    def active(self):
        return self.filter(status="ACTIVE")

    def covering(self, amount):
        return self.filter(max_amount__gte=amount)


UPIMandateManager = models.Manager.from_queryset(UPIMandateQuerySet)
