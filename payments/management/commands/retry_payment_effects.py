from datetime import timedelta

from django.core.management.base import BaseCommand
from django.db.models import Q
from django.utils import timezone

from payments.models import PaymentAttempt
from payments.services.effects import run_business_effect


class Command(BaseCommand):
    help = "Re-apply business effects (license grants, booking confirmations) that failed after payment"

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="List the affected payments without retrying",
        )
        parser.add_argument(
            "--stale-after",
            type=int,
            default=10,
            help="Also retry completed payments whose effect is still pending after this many minutes",
        )

    def handle(self, *args, **options):
        dry_run = options.get("dry_run", False)
        stale_cutoff = timezone.now() - timedelta(minutes=options["stale_after"])
        # A pending effect on a completed payment means the process stopped
        # between the status transition and the effect.
        failed = PaymentAttempt.objects.filter(
            Q(effect_status=PaymentAttempt.EFFECT_FAILED)
            | Q(effect_status=PaymentAttempt.EFFECT_PENDING, updated_at__lte=stale_cutoff),
            status=PaymentAttempt.STATUS_COMPLETED,
        ).order_by("created_at")

        if not failed.exists():
            self.stdout.write(self.style.WARNING("No failed business effects found."))
            return

        applied_count = 0
        failed_count = 0
        for attempt in failed:
            if dry_run:
                self.stdout.write(
                    f"  DRY-RUN: {attempt.provider_checkout_id} "
                    f"({attempt.payment_kind} {attempt.reference_id}): {attempt.effect_error}"
                )
                continue

            if run_business_effect(attempt):
                applied_count += 1
                self.stdout.write(self.style.SUCCESS(f"  APPLIED: {attempt.provider_checkout_id}"))
            else:
                failed_count += 1
                self.stdout.write(
                    self.style.ERROR(f"  FAILED: {attempt.provider_checkout_id}: {attempt.effect_error}")
                )

        if not dry_run:
            self.stdout.write("")
            self.stdout.write(self.style.SUCCESS(f"Applied: {applied_count}"))
            self.stdout.write(self.style.WARNING(f"Still failing: {failed_count}"))
