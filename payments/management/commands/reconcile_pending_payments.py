"""
Query Safaricom for payments still pending after a callback should have
arrived and reconcile them.

Run periodically via cron/scheduler:
    python manage.py reconcile_pending_payments --older-than 5
"""
from datetime import timedelta

from django.core.management.base import BaseCommand
from django.utils import timezone

from payments.models import PaymentAttempt
from payments.services.status import refresh_from_provider


class Command(BaseCommand):
    help = "Reconcile pending M-Pesa payments whose callback never arrived"

    def add_arguments(self, parser):
        parser.add_argument(
            "--older-than",
            type=int,
            default=5,
            help="Only reconcile attempts created at least this many minutes ago",
        )
        parser.add_argument(
            "--limit",
            type=int,
            default=100,
            help="Maximum number of attempts to query in one run",
        )

    def handle(self, *args, **options):
        cutoff = timezone.now() - timedelta(minutes=options["older_than"])
        pending = PaymentAttempt.objects.filter(
            status=PaymentAttempt.STATUS_PENDING,
            created_at__lte=cutoff,
        ).order_by("created_at")[: options["limit"]]

        counts = {
            PaymentAttempt.STATUS_COMPLETED: 0,
            PaymentAttempt.STATUS_FAILED: 0,
            PaymentAttempt.STATUS_PENDING: 0,
        }
        for attempt in pending:
            result = refresh_from_provider(attempt)
            counts[result.status] += 1
            self.stdout.write(f"  {attempt.provider_checkout_id}: {result.status}")

        self.stdout.write("")
        self.stdout.write(self.style.SUCCESS(f"Completed: {counts['completed']}"))
        self.stdout.write(self.style.ERROR(f"Failed: {counts['failed']}"))
        self.stdout.write(self.style.WARNING(f"Still pending: {counts['pending']}"))
