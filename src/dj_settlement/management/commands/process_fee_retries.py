from django.core.management.base import BaseCommand, CommandError

from dj_settlement.utils import get_win_fee_service


class Command(BaseCommand):
    help = "Retry collection of failed win fees whose back-off has elapsed."

    def add_arguments(self, parser):
        parser.add_argument("--limit", type=int, default=100)

    def handle(self, *args, **options):
        if options["limit"] < 1:
            raise CommandError("--limit must be at least 1.")

        service = get_win_fee_service()()
        report = service.process_retry_queue(limit=options["limit"])

        self.stdout.write(
            f"Fee retry run completed: processed={report.processed}, "
            f"successful={report.successful}, failed={report.failed}"
        )
