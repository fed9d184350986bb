from decimal import Decimal
from unittest.mock import Mock

from django.test import TestCase

from .exceptions import ProviderRejectionError, QueryError
from .models import PaymentAttempt
from .mpesa_utils import TIMEOUT_MESSAGE
from .poller import CheckoutPoller
from .services.checkout import CheckoutResult
from .services.status import StatusResult


class FakeClock:
    def __init__(self):
        self.now = 0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


class CheckoutPollerTests(TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.fetch_status = Mock(return_value=StatusResult(PaymentAttempt.STATUS_PENDING))
        self.poller = CheckoutPoller(
            self.fetch_status,
            interval=3,
            timeout=120,
            sleep=self.clock.sleep,
            clock=self.clock,
        )

    def _start(self):
        return self.poller.start(lambda: CheckoutResult(provider_checkout_id="ws_CO_123"))

    def test_initiation_moves_to_waiting(self):
        states = []
        self.poller.on_change = lambda state, message: states.append(state)

        self.assertEqual(self._start(), CheckoutPoller.WAITING)
        self.assertEqual(self.poller.checkout_id, "ws_CO_123")
        self.assertEqual(states, [CheckoutPoller.INITIATING, CheckoutPoller.WAITING])

    def test_rejected_initiation_fails_without_polling(self):
        def initiate():
            raise ProviderRejectionError(detail="Invalid Access Token")

        self.assertEqual(self.poller.start(initiate), CheckoutPoller.FAILED)
        self.assertEqual(self.poller.message, "Invalid Access Token")
        self.assertEqual(self.poller.wait(), CheckoutPoller.FAILED)
        self.fetch_status.assert_not_called()

    def test_completed_payment_is_success(self):
        self.fetch_status.side_effect = [
            StatusResult(PaymentAttempt.STATUS_PENDING),
            StatusResult(PaymentAttempt.STATUS_COMPLETED, receipt="QAX123"),
        ]
        self._start()

        self.assertEqual(self.poller.wait(), CheckoutPoller.SUCCESS)
        self.assertEqual(self.fetch_status.call_count, 2)
        self.assertEqual(self.clock.now, 6)

    def test_declined_payment_keeps_provider_message(self):
        self.fetch_status.return_value = StatusResult(
            PaymentAttempt.STATUS_FAILED, message="Request cancelled by user"
        )
        self._start()

        self.assertEqual(self.poller.wait(), CheckoutPoller.FAILED)
        self.assertEqual(self.poller.message, "Request cancelled by user")

    def test_poll_errors_do_not_stop_polling(self):
        self.fetch_status.side_effect = [
            QueryError(detail="Payment not found"),
            StatusResult(PaymentAttempt.STATUS_COMPLETED),
        ]
        self._start()

        self.assertEqual(self.poller.wait(), CheckoutPoller.SUCCESS)

    def test_timeout_is_local_and_distinct_from_failure(self):
        attempt = PaymentAttempt.objects.create(
            payment_kind=PaymentAttempt.KIND_PROJECT,
            amount=Decimal("100"),
            phone_number="254712345678",
            provider_checkout_id="ws_CO_123",
        )
        self.fetch_status.side_effect = lambda checkout_id: StatusResult.from_attempt(
            PaymentAttempt.objects.get(provider_checkout_id=checkout_id)
        )
        self._start()

        self.assertEqual(self.poller.wait(), CheckoutPoller.TIMEOUT)
        self.assertEqual(self.poller.message, TIMEOUT_MESSAGE)
        self.assertEqual(self.clock.now, 120)
        self.assertEqual(self.fetch_status.call_count, 40)
        attempt.refresh_from_db()
        self.assertEqual(attempt.status, PaymentAttempt.STATUS_PENDING)

    def test_can_retry_after_timeout(self):
        self._start()
        self.poller.wait()

        self.assertEqual(self._start(), CheckoutPoller.WAITING)

    def test_cannot_start_while_waiting(self):
        self._start()

        with self.assertRaises(RuntimeError):
            self._start()
