"""
Client-side checkout poller.

Mirrors what a checkout dialog does after the STK prompt is sent: poll the
payment status every few seconds and give up after a bounded wait. Giving up
is purely local; the server-side attempt stays pending and may still
complete through a late callback.
"""
import logging
import time

from .exceptions import PaymentError
from .models import PaymentAttempt
from .mpesa_utils import TIMEOUT_MESSAGE

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 3
POLL_TIMEOUT_SECONDS = 120


class CheckoutPoller:
    IDLE = "idle"
    INITIATING = "initiating"
    WAITING = "waiting"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"

    TERMINAL_STATES = (SUCCESS, FAILED, TIMEOUT)

    def __init__(
        self,
        fetch_status,
        interval=POLL_INTERVAL_SECONDS,
        timeout=POLL_TIMEOUT_SECONDS,
        sleep=time.sleep,
        clock=time.monotonic,
        on_change=None,
    ):
        """
        ``fetch_status(checkout_id)`` must return an object with ``status``
        and ``message`` attributes (e.g. a StatusResult).
        """
        self.fetch_status = fetch_status
        self.interval = interval
        self.timeout = timeout
        self.sleep = sleep
        self.clock = clock
        self.on_change = on_change

        self.state = self.IDLE
        self.checkout_id = None
        self.message = ""

    def _set_state(self, state, message=""):
        self.state = state
        self.message = message
        if self.on_change:
            self.on_change(state, message)

    def start(self, initiate):
        """
        Run ``initiate()`` (returning a CheckoutResult) and move to WAITING,
        or to FAILED when the checkout is refused up front.
        """
        if self.state not in (self.IDLE, self.FAILED, self.TIMEOUT):
            raise RuntimeError(f"Cannot start a checkout while {self.state}")

        self.checkout_id = None
        self._set_state(self.INITIATING)
        try:
            result = initiate()
        except PaymentError as e:
            self._set_state(self.FAILED, e.detail or "Failed to initiate M-Pesa payment")
            return self.state

        self.checkout_id = result.provider_checkout_id
        self._set_state(self.WAITING)
        return self.state

    def poll_once(self):
        try:
            result = self.fetch_status(self.checkout_id)
        except PaymentError as e:
            # Keep polling
            logger.warning(f"Status poll for {self.checkout_id} failed: {e}")
            return self.state

        if result.status == PaymentAttempt.STATUS_COMPLETED:
            self._set_state(self.SUCCESS, result.message or "")
        elif result.status == PaymentAttempt.STATUS_FAILED:
            self._set_state(self.FAILED, result.message or "Payment was not completed")
        return self.state

    def wait(self):
        if self.state != self.WAITING:
            return self.state

        deadline = self.clock() + self.timeout
        while True:
            self.sleep(self.interval)
            if self.poll_once() != self.WAITING:
                return self.state
            if self.clock() >= deadline:
                self._set_state(self.TIMEOUT, TIMEOUT_MESSAGE)
                return self.state
