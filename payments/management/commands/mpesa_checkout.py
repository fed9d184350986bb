from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError

from payments.exceptions import QueryError
from payments.models import PaymentAttempt
from payments.poller import CheckoutPoller, POLL_INTERVAL_SECONDS, POLL_TIMEOUT_SECONDS
from payments.services.checkout import initiate_checkout
from payments.services.status import StatusResult, query_payment_status, refresh_from_provider


def fetch_attempt_status(checkout_id):
    attempt = PaymentAttempt.objects.filter(provider_checkout_id=checkout_id).first()
    if attempt is None:
        raise QueryError(detail="Payment not found")
    if attempt.is_terminal:
        return StatusResult.from_attempt(attempt)
    return refresh_from_provider(attempt)


class Command(BaseCommand):
    help = "Run an M-Pesa STK Push checkout from the terminal and wait for the result"

    def add_arguments(self, parser):
        parser.add_argument(
            "--payer",
            type=str,
            help="Username/email of the user paying (attempt is unowned otherwise)",
        )
        parser.add_argument("--interval", type=int, default=POLL_INTERVAL_SECONDS)
        parser.add_argument("--timeout", type=int, default=POLL_TIMEOUT_SECONDS)

    def _get_payer(self, identifier):
        if not identifier:
            return None
        User = get_user_model()
        try:
            return User.objects.get(**{User.USERNAME_FIELD: identifier})
        except User.DoesNotExist:
            raise CommandError(f"User '{identifier}' not found")

    def _prompt(self, label, required=True, default=""):
        value = input(label).strip() or default
        if required and not value:
            raise CommandError(f"{label.split('(')[0].strip(' :')} is required")
        return value

    def handle(self, *args, **options):
        self.stdout.write(self.style.SUCCESS("--- M-Pesa STK Push Checkout ---"))
        payer = self._get_payer(options.get("payer"))

        try:
            phone = self._prompt("Enter Phone Number (e.g., 0712345678): ")
            amount = self._prompt("Enter Amount: ")
            payment_kind = self._prompt(
                "Payment type [beat_purchase/booking/project] (default project): ",
                default=PaymentAttempt.KIND_PROJECT,
            )
            reference_id = self._prompt("Reference ID: ", required=False)
        except KeyboardInterrupt:
            self.stdout.write(self.style.WARNING("\nOperation cancelled by user."))
            return

        def fetch_status(checkout_id):
            if payer is None:
                return fetch_attempt_status(checkout_id)
            return query_payment_status(checkout_id, payer)

        poller = CheckoutPoller(
            fetch_status,
            interval=options["interval"],
            timeout=options["timeout"],
            on_change=self._report,
        )

        poller.start(
            lambda: initiate_checkout(
                payer=payer,
                phone_number=phone,
                amount=amount,
                payment_kind=payment_kind,
                reference_id=reference_id,
            )
        )
        if poller.state == CheckoutPoller.WAITING:
            self.stdout.write(f"CheckoutRequestID: {poller.checkout_id}")
            self.stdout.write("Enter your M-Pesa PIN on your phone to complete the payment")
            try:
                poller.wait()
            except KeyboardInterrupt:
                self.stdout.write(
                    self.style.WARNING(
                        "\nStopped waiting. The payment is still processing and will be "
                        "reconciled when M-Pesa calls back."
                    )
                )

    def _report(self, state, message):
        if state == CheckoutPoller.INITIATING:
            self.stdout.write("Connecting to M-Pesa...")
        elif state == CheckoutPoller.WAITING:
            self.stdout.write(self.style.SUCCESS("STK Push sent. Please check your phone."))
        elif state == CheckoutPoller.SUCCESS:
            self.stdout.write(self.style.SUCCESS("Payment Successful!"))
        elif state == CheckoutPoller.TIMEOUT:
            self.stdout.write(self.style.WARNING(message))
        elif state == CheckoutPoller.FAILED:
            self.stdout.write(self.style.ERROR(f"Payment Failed: {message}"))
