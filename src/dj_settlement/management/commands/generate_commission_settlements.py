from __future__ import annotations

from datetime import date, datetime, time, timedelta

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from dj_settlement.models import CommissionSettlement, CommissionSplit
from dj_settlement.services.commission import TIER_FIELDS
from dj_settlement.utils import get_commission_service


def _parse_date(value: str | None, default: date) -> date:
    if not value:
        return default
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise CommandError(f"Invalid date: {value!r}, expected YYYY-MM-DD.") from None


def _start_of_day(day: date) -> datetime:
    return timezone.make_aware(datetime.combine(day, time.min))


class Command(BaseCommand):
    help = "Roll unsettled commission splits into one settlement per franchise and tier."

    def add_arguments(self, parser):
        parser.add_argument("--period-start", help="YYYY-MM-DD, inclusive")
        parser.add_argument("--period-end", help="YYYY-MM-DD, inclusive")
        parser.add_argument(
            "--tier",
            choices=[choice for choice, _ in CommissionSettlement.TIER_CHOICES],
            help="Only settle this tier",
        )
        parser.add_argument("--dry-run", action="store_true")

    def handle(self, *args, **options):
        today = timezone.localdate()
        period_start = _parse_date(options.get("period_start"), today - timedelta(days=7))
        period_end = _parse_date(options.get("period_end"), today - timedelta(days=1))
        if period_start > period_end:
            raise CommandError("period-start cannot be after period-end.")

        start = _start_of_day(period_start)
        end = _start_of_day(period_end + timedelta(days=1))
        tiers = [options["tier"]] if options.get("tier") else list(TIER_FIELDS)
        service = get_commission_service()

        created_count = 0
        for tier in tiers:
            franchise_field, _, settlement_field = TIER_FIELDS[tier]
            franchise_ids = (
                CommissionSplit.objects.filter(
                    **{
                        f"{settlement_field}__isnull": True,
                        "created_at__gte": start,
                        "created_at__lt": end,
                    }
                )
                .order_by(franchise_field)
                .values_list(franchise_field, flat=True)
                .distinct()
            )
            for franchise_id in franchise_ids:
                if options["dry_run"]:
                    self.stdout.write(f"DRY-RUN settlement franchise_id={franchise_id} tier={tier}")
                    continue
                settlement = service.generate_settlement(franchise_id, tier, start, end)
                created_count += 1
                self.stdout.write(
                    f"CREATED {settlement.settlement_id} franchise_id={franchise_id} tier={tier} "
                    f"amount={settlement.commission_amount} splits={settlement.transaction_count}"
                )

        self.stdout.write(
            f"Commission settlement run completed: settlements={created_count}, "
            f"dry_run={options['dry_run']}"
        )
