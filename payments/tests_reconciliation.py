"""
Tests for callback reconciliation, the status query fallback and the
once-only business effects.
"""
from datetime import date, time, timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import Mock, patch

import requests
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import TestCase, override_settings
from django.utils import timezone

from studio.models import Beat, BeatPurchase, Booking

from .exceptions import AuthError, QueryError
from .models import PaymentAttempt
from .services.checkout import initiate_checkout
from .services.effects import run_business_effect
from .services.reconciliation import apply_provider_result, reconcile_callback, transition_attempt
from .services.status import query_payment_status, refresh_from_provider
from .tests import ACCEPTED_RESPONSE, MPESA_SETTINGS, UNCONFIGURED_SETTINGS

User = get_user_model()


def stk_callback(
    checkout_id,
    result_code=0,
    result_desc="The service request is processed successfully.",
    receipt="QAX123",
    amount=1500,
):
    stk = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        stk["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "Balance"},
                {"Name": "TransactionDate", "Value": 20260212153744},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": stk}}


class PaymentTestMixin:
    def setUp(self):
        super().setUp()
        self.user = User.objects.create_user(
            username="artist", email="artist@example.com", password="password123"
        )
        self.beat = Beat.objects.create(id="beat-42", title="Nairobi Nights")

    def make_attempt(self, checkout_id="ws_CO_123", kind=PaymentAttempt.KIND_BEAT_PURCHASE,
                     reference_id="beat-42", amount="1500", **fields):
        return PaymentAttempt.objects.create(
            payer=self.user,
            payment_kind=kind,
            reference_id=reference_id,
            amount=Decimal(amount),
            phone_number="254712345678",
            provider_checkout_id=checkout_id,
            **fields,
        )


@override_settings(**MPESA_SETTINGS)
class CheckoutToCallbackScenarioTests(PaymentTestMixin, TestCase):
    @patch("payments.services.checkout.stk_push", return_value=ACCEPTED_RESPONSE)
    @patch("payments.services.checkout.get_access_token", return_value="token")
    def _initiate(self, mock_token, mock_stk_push):
        return initiate_checkout(
            payer=self.user,
            phone_number="0712345678",
            amount=1500,
            payment_kind=PaymentAttempt.KIND_BEAT_PURCHASE,
            reference_id="beat-42",
            metadata={"license_type": "premium"},
        )

    def test_successful_payment_grants_license_exactly_once(self):
        result = self._initiate()
        self.assertEqual(result.provider_checkout_id, "ws_CO_123")
        attempt = PaymentAttempt.objects.get(provider_checkout_id="ws_CO_123")
        self.assertEqual(attempt.status, PaymentAttempt.STATUS_PENDING)

        outcome = reconcile_callback(stk_callback("ws_CO_123", amount=1))

        self.assertEqual(outcome.result, "completed")
        attempt.refresh_from_db()
        self.assertEqual(attempt.status, PaymentAttempt.STATUS_COMPLETED)
        self.assertEqual(attempt.provider_receipt, "QAX123")
        self.assertEqual(attempt.provider_result_code, "0")
        self.assertEqual(attempt.effect_status, PaymentAttempt.EFFECT_APPLIED)
        # The callback-reported amount never overrides the authorized amount.
        self.assertEqual(attempt.amount, Decimal("1500"))
        self.assertEqual(attempt.transacted_amount, Decimal("1"))
        self.assertEqual(attempt.transacted_phone, "254712345678")
        self.assertIsNotNone(attempt.callback_received_at)

        purchase = BeatPurchase.objects.get(beat=self.beat)
        self.assertEqual(purchase.buyer, self.user)
        self.assertEqual(purchase.license_type, "premium")
        self.assertEqual(purchase.price_paid, Decimal("1500"))
        self.assertEqual(purchase.payment, attempt)

        duplicate = reconcile_callback(stk_callback("ws_CO_123", amount=1))

        self.assertEqual(duplicate.result, "duplicate")
        self.assertTrue(duplicate.acknowledged)
        self.assertEqual(BeatPurchase.objects.count(), 1)
        attempt.refresh_from_db()
        self.assertEqual(attempt.status, PaymentAttempt.STATUS_COMPLETED)

    def test_cancelled_payment_creates_no_grant(self):
        self._initiate()

        outcome = reconcile_callback(
            stk_callback("ws_CO_123", result_code=1032, result_desc="Request cancelled by user")
        )

        self.assertEqual(outcome.result, "failed")
        attempt = PaymentAttempt.objects.get(provider_checkout_id="ws_CO_123")
        self.assertEqual(attempt.status, PaymentAttempt.STATUS_FAILED)
        self.assertEqual(attempt.provider_result_code, "1032")
        self.assertIsNone(attempt.provider_receipt)
        self.assertEqual(attempt.effect_status, PaymentAttempt.EFFECT_NOT_APPLICABLE)
        self.assertFalse(BeatPurchase.objects.exists())

        with patch("payments.services.status.query_stk_status") as mock_query:
            result = query_payment_status("ws_CO_123", self.user)

        mock_query.assert_not_called()
        self.assertEqual(result.status, PaymentAttempt.STATUS_FAILED)
        self.assertEqual(result.message, "Request cancelled by user")
        self.assertIsNone(result.receipt)


class CallbackReconcilerTests(PaymentTestMixin, TestCase):
    def test_result_codes_arriving_as_strings(self):
        self.make_attempt()

        outcome = reconcile_callback(stk_callback("ws_CO_123", result_code="1037", result_desc="Timeout"))

        self.assertEqual(outcome.result, "failed")

    def test_unknown_checkout_is_not_an_error(self):
        outcome = reconcile_callback(stk_callback("ws_CO_UNKNOWN"))

        self.assertEqual(outcome.result, "unknown")
        self.assertFalse(outcome.acknowledged)

    def test_malformed_envelopes(self):
        for payload in ({}, {"Body": {}}, {"Body": {"stkCallback": {"ResultCode": 0}}}, []):
            self.assertEqual(reconcile_callback(payload).result, "invalid", payload)

    def test_terminal_states_are_never_left(self):
        completed = self.make_attempt("ws_CO_1")
        failed = self.make_attempt("ws_CO_2")
        reconcile_callback(stk_callback("ws_CO_1"))
        reconcile_callback(stk_callback("ws_CO_2", result_code=2001, result_desc="Wrong PIN"))

        reconcile_callback(stk_callback("ws_CO_1", result_code=1032, result_desc="Cancelled"))
        reconcile_callback(stk_callback("ws_CO_2", receipt="LATE999"))

        completed.refresh_from_db()
        failed.refresh_from_db()
        self.assertEqual(completed.status, PaymentAttempt.STATUS_COMPLETED)
        self.assertEqual(completed.provider_result_code, "0")
        self.assertEqual(failed.status, PaymentAttempt.STATUS_FAILED)
        self.assertEqual(failed.provider_result_message, "Wrong PIN")
        self.assertIsNone(failed.provider_receipt)
        self.assertEqual(BeatPurchase.objects.count(), 1)

    def test_raw_callback_is_kept_for_audit(self):
        self.make_attempt()
        payload = stk_callback("ws_CO_123")

        reconcile_callback(payload)

        self.assertEqual(PaymentAttempt.objects.get().raw_callback, payload)


class ConditionalTransitionTests(PaymentTestMixin, TestCase):
    def test_only_first_transition_wins(self):
        self.make_attempt()
        first = PaymentAttempt.objects.get()
        second = PaymentAttempt.objects.get()

        self.assertTrue(transition_attempt(first, PaymentAttempt.STATUS_COMPLETED))
        self.assertFalse(transition_attempt(second, PaymentAttempt.STATUS_FAILED))

        # The loser observes the winner's state.
        self.assertEqual(second.status, PaymentAttempt.STATUS_COMPLETED)
        self.assertEqual(PaymentAttempt.objects.get().status, PaymentAttempt.STATUS_COMPLETED)

    def test_pending_is_not_a_valid_target(self):
        attempt = self.make_attempt()

        with self.assertRaises(ValueError):
            transition_attempt(attempt, PaymentAttempt.STATUS_PENDING)


@override_settings(**MPESA_SETTINGS)
class InterleavedReconciliationTests(PaymentTestMixin, TestCase):
    """
    A webhook and a status query racing on the same attempt: each test
    loads a stale in-memory copy before the other path runs.
    """

    @patch("payments.services.status.get_access_token", return_value="token")
    @patch("payments.services.status.query_stk_status")
    def test_callback_then_stale_query(self, mock_query, mock_token):
        self.make_attempt()
        stale = PaymentAttempt.objects.get()
        mock_query.return_value = {"ResultCode": "0", "ResultDesc": "Processed"}

        reconcile_callback(stk_callback("ws_CO_123"))
        result = refresh_from_provider(stale)

        self.assertEqual(result.status, PaymentAttempt.STATUS_COMPLETED)
        self.assertEqual(result.receipt, "QAX123")
        self.assertEqual(BeatPurchase.objects.count(), 1)

    @patch("payments.services.status.get_access_token", return_value="token")
    @patch("payments.services.status.query_stk_status")
    def test_query_then_callback_backfills_receipt(self, mock_query, mock_token):
        self.make_attempt()
        mock_query.return_value = {
            "ResponseCode": "0",
            "ResultCode": "0",
            "ResultDesc": "The service request is processed successfully.",
        }

        result = query_payment_status("ws_CO_123", self.user)
        self.assertEqual(result.status, PaymentAttempt.STATUS_COMPLETED)
        self.assertIsNone(result.receipt)

        outcome = reconcile_callback(stk_callback("ws_CO_123", amount=1500))

        self.assertEqual(outcome.result, "duplicate")
        attempt = PaymentAttempt.objects.get()
        self.assertEqual(attempt.provider_receipt, "QAX123")
        self.assertEqual(attempt.transacted_amount, Decimal("1500"))
        self.assertEqual(BeatPurchase.objects.count(), 1)

    @patch("payments.services.status.get_access_token", return_value="token")
    @patch("payments.services.status.query_stk_status")
    def test_disagreeing_paths_keep_first_outcome(self, mock_query, mock_token):
        self.make_attempt()
        stale = PaymentAttempt.objects.get()
        mock_query.return_value = {"ResultCode": "1032", "ResultDesc": "Request cancelled by user"}

        refresh_from_provider(stale)
        reconcile_callback(stk_callback("ws_CO_123"))

        attempt = PaymentAttempt.objects.get()
        self.assertEqual(attempt.status, PaymentAttempt.STATUS_FAILED)
        self.assertIsNone(attempt.provider_receipt)
        self.assertFalse(BeatPurchase.objects.exists())

    @patch("payments.services.status.get_access_token", return_value="token")
    @patch("payments.services.status.query_stk_status")
    def test_stale_callback_and_query_grant_once(self, mock_query, mock_token):
        self.make_attempt()
        from_callback = PaymentAttempt.objects.get()
        from_query = PaymentAttempt.objects.get()
        mock_query.return_value = {"ResultCode": "0", "ResultDesc": "Processed"}

        won = apply_provider_result(
            from_callback, 0, "Processed", provider_receipt="QAX123"
        )
        result = refresh_from_provider(from_query)

        self.assertTrue(won)
        self.assertFalse(apply_provider_result(from_query, 0, "Processed"))
        self.assertEqual(result.status, PaymentAttempt.STATUS_COMPLETED)
        self.assertEqual(result.receipt, "QAX123")
        self.assertEqual(BeatPurchase.objects.count(), 1)
        self.assertEqual(
            PaymentAttempt.objects.get().effect_status, PaymentAttempt.EFFECT_APPLIED
        )


@override_settings(**MPESA_SETTINGS)
class StatusQueryTests(PaymentTestMixin, TestCase):
    @patch("payments.services.status.get_access_token", return_value="token")
    @patch("payments.services.status.query_stk_status")
    def test_still_processing_is_pending(self, mock_query, mock_token):
        self.make_attempt()
        mock_query.return_value = {
            "requestId": "1234",
            "errorCode": "500.001.1001",
            "errorMessage": "The transaction is being processed",
        }

        result = query_payment_status("ws_CO_123", self.user)

        self.assertEqual(result.status, PaymentAttempt.STATUS_PENDING)
        self.assertEqual(result.message, "The transaction is being processed")
        self.assertEqual(PaymentAttempt.objects.get().status, PaymentAttempt.STATUS_PENDING)

    @patch("payments.services.status.get_access_token", return_value="token")
    @patch("payments.services.status.query_stk_status")
    def test_under_processing_result_code_is_pending(self, mock_query, mock_token):
        self.make_attempt()
        mock_query.return_value = {"ResultCode": "4999", "ResultDesc": "The transaction is still under processing"}

        result = query_payment_status("ws_CO_123", self.user)

        self.assertEqual(result.status, PaymentAttempt.STATUS_PENDING)

    @patch("payments.services.status.get_access_token", return_value="token")
    @patch("payments.services.status.query_stk_status")
    def test_unreachable_provider_is_pending(self, mock_query, mock_token):
        self.make_attempt()
        mock_query.side_effect = requests.ConnectionError("connection reset")

        result = query_payment_status("ws_CO_123", self.user)

        self.assertEqual(result.status, PaymentAttempt.STATUS_PENDING)

    @patch("payments.services.status.get_access_token")
    def test_auth_failure_is_pending(self, mock_token):
        self.make_attempt()
        mock_token.side_effect = AuthError(reason="provider_rejected")

        result = query_payment_status("ws_CO_123", self.user)

        self.assertEqual(result.status, PaymentAttempt.STATUS_PENDING)

    @override_settings(**UNCONFIGURED_SETTINGS)
    @patch("payments.services.status.query_stk_status")
    def test_unconfigured_provider_is_pending(self, mock_query):
        self.make_attempt()

        result = query_payment_status("ws_CO_123", self.user)

        self.assertEqual(result.status, PaymentAttempt.STATUS_PENDING)
        self.assertEqual(result.message, "Awaiting payment confirmation")
        mock_query.assert_not_called()

    @patch("payments.services.status.get_access_token", return_value="token")
    @patch("payments.services.status.query_stk_status")
    def test_query_failure_marks_attempt_failed(self, mock_query, mock_token):
        self.make_attempt()
        mock_query.return_value = {"ResultCode": "1037", "ResultDesc": "DS timeout user cannot be reached"}

        result = query_payment_status("ws_CO_123", self.user)

        self.assertEqual(result.status, PaymentAttempt.STATUS_FAILED)
        self.assertEqual(result.message, "DS timeout user cannot be reached")
        self.assertFalse(BeatPurchase.objects.exists())

    def test_other_payers_and_guests_get_not_found(self):
        other = User.objects.create_user(
            username="other", email="other@example.com", password="password123"
        )
        self.make_attempt()
        PaymentAttempt.objects.create(
            payer=None,
            payment_kind=PaymentAttempt.KIND_PROJECT,
            amount=Decimal("10"),
            phone_number="254712345678",
            provider_checkout_id="ws_CO_GUEST",
        )

        with self.assertRaises(QueryError) as ctx:
            query_payment_status("ws_CO_123", other)
        self.assertEqual(ctx.exception.reason, "not_found")

        with self.assertRaises(QueryError):
            query_payment_status("ws_CO_GUEST", None)
        with self.assertRaises(QueryError):
            query_payment_status("ws_CO_MISSING", self.user)


class BusinessEffectTests(PaymentTestMixin, TestCase):
    def _complete(self, attempt):
        reconcile_callback(stk_callback(attempt.provider_checkout_id))
        attempt.refresh_from_db()
        return attempt

    def test_missing_beat_does_not_roll_back_payment(self):
        attempt = self._complete(self.make_attempt(reference_id="beat-gone"))

        self.assertEqual(attempt.status, PaymentAttempt.STATUS_COMPLETED)
        self.assertEqual(attempt.provider_receipt, "QAX123")
        self.assertEqual(attempt.effect_status, PaymentAttempt.EFFECT_FAILED)
        self.assertIn("beat-gone", attempt.effect_error)
        self.assertFalse(BeatPurchase.objects.exists())

    def test_default_license_is_basic(self):
        self._complete(self.make_attempt())

        self.assertEqual(BeatPurchase.objects.get().license_type, BeatPurchase.LICENSE_BASIC)

    def test_exclusive_license_marks_beat_sold(self):
        self._complete(self.make_attempt(metadata={"license_type": "exclusive"}))

        self.beat.refresh_from_db()
        self.assertTrue(self.beat.is_sold_exclusive)

    def test_unknown_license_type_fails_effect(self):
        attempt = self._complete(self.make_attempt(metadata={"license_type": "platinum"}))

        self.assertEqual(attempt.effect_status, PaymentAttempt.EFFECT_FAILED)
        self.assertFalse(BeatPurchase.objects.exists())

    def test_non_string_license_type_fails_effect(self):
        attempt = self.make_attempt(metadata={"license_type": {"tier": "premium"}})

        outcome = reconcile_callback(stk_callback(attempt.provider_checkout_id))

        self.assertEqual(outcome.result, PaymentAttempt.STATUS_COMPLETED)
        attempt.refresh_from_db()
        self.assertEqual(attempt.status, PaymentAttempt.STATUS_COMPLETED)
        self.assertEqual(attempt.effect_status, PaymentAttempt.EFFECT_FAILED)
        self.assertIn("Unknown license type", attempt.effect_error)
        self.assertFalse(BeatPurchase.objects.exists())

    def test_unexpected_handler_error_is_recorded(self):
        handler = Mock(side_effect=KeyError("beat_id"))
        with patch.dict(
            "payments.services.effects.EFFECT_HANDLERS",
            {PaymentAttempt.KIND_BEAT_PURCHASE: handler},
        ):
            attempt = self._complete(self.make_attempt())

        handler.assert_called_once()
        self.assertEqual(attempt.status, PaymentAttempt.STATUS_COMPLETED)
        self.assertEqual(attempt.effect_status, PaymentAttempt.EFFECT_FAILED)
        self.assertIn("KeyError", attempt.effect_error)

    @override_settings(**MPESA_SETTINGS)
    @patch("payments.services.status.get_access_token", return_value="token")
    @patch("payments.services.status.query_stk_status")
    def test_unexpected_handler_error_does_not_break_status_query(self, mock_query, mock_token):
        mock_query.return_value = {"ResultCode": "0", "ResultDesc": "Processed"}
        self.make_attempt()

        with patch.dict(
            "payments.services.effects.EFFECT_HANDLERS",
            {PaymentAttempt.KIND_BEAT_PURCHASE: Mock(side_effect=TypeError("unhashable"))},
        ):
            result = query_payment_status("ws_CO_123", self.user)

        self.assertEqual(result.status, PaymentAttempt.STATUS_COMPLETED)
        self.assertEqual(PaymentAttempt.objects.get().effect_status, PaymentAttempt.EFFECT_FAILED)

    def test_booking_is_confirmed(self):
        booking = Booking.objects.create(
            client=self.user,
            session_type="recording",
            session_date=date.today() + timedelta(days=3),
            start_time=time(10, 0),
        )

        attempt = self._complete(
            self.make_attempt(kind=PaymentAttempt.KIND_BOOKING, reference_id=booking.id)
        )

        booking.refresh_from_db()
        self.assertEqual(booking.status, Booking.STATUS_CONFIRMED)
        self.assertEqual(attempt.effect_status, PaymentAttempt.EFFECT_APPLIED)

    def test_cancelled_booking_needs_manual_remediation(self):
        booking = Booking.objects.create(
            client=self.user,
            session_type="mixing",
            session_date=date.today(),
            start_time=time(14, 0),
            status=Booking.STATUS_CANCELLED,
        )

        attempt = self._complete(
            self.make_attempt(kind=PaymentAttempt.KIND_BOOKING, reference_id=booking.id)
        )

        booking.refresh_from_db()
        self.assertEqual(booking.status, Booking.STATUS_CANCELLED)
        self.assertEqual(attempt.status, PaymentAttempt.STATUS_COMPLETED)
        self.assertEqual(attempt.effect_status, PaymentAttempt.EFFECT_FAILED)

    def test_project_payments_have_no_effect(self):
        attempt = self._complete(self.make_attempt(kind=PaymentAttempt.KIND_PROJECT, reference_id="p-1"))

        self.assertEqual(attempt.status, PaymentAttempt.STATUS_COMPLETED)
        self.assertEqual(attempt.effect_status, PaymentAttempt.EFFECT_NOT_APPLICABLE)

    def test_rerunning_an_applied_effect_creates_no_second_grant(self):
        attempt = self._complete(self.make_attempt())

        self.assertTrue(run_business_effect(attempt))
        self.assertEqual(BeatPurchase.objects.count(), 1)


class PaymentCommandTests(PaymentTestMixin, TestCase):
    def test_retry_payment_effects_after_remediation(self):
        reconcile_callback(stk_callback(self.make_attempt(reference_id="beat-99").provider_checkout_id))
        Beat.objects.create(id="beat-99", title="Restored Beat")
        out = StringIO()

        call_command("retry_payment_effects", stdout=out)

        self.assertIn("Applied: 1", out.getvalue())
        self.assertEqual(BeatPurchase.objects.filter(beat_id="beat-99").count(), 1)
        self.assertEqual(PaymentAttempt.objects.get().effect_status, PaymentAttempt.EFFECT_APPLIED)

        call_command("retry_payment_effects", stdout=out)
        self.assertEqual(BeatPurchase.objects.count(), 1)

    def test_retry_payment_effects_dry_run(self):
        reconcile_callback(stk_callback(self.make_attempt(reference_id="beat-99").provider_checkout_id))
        out = StringIO()

        call_command("retry_payment_effects", "--dry-run", stdout=out)

        self.assertIn("DRY-RUN", out.getvalue())
        self.assertEqual(PaymentAttempt.objects.get().effect_status, PaymentAttempt.EFFECT_FAILED)

    def test_retry_payment_effects_picks_up_stale_pending_effects(self):
        stuck = self.make_attempt("ws_CO_STUCK")
        transition_attempt(stuck, PaymentAttempt.STATUS_COMPLETED, provider_receipt="QAX1")
        PaymentAttempt.objects.filter(pk=stuck.pk).update(
            updated_at=timezone.now() - timedelta(minutes=30)
        )
        recent = self.make_attempt("ws_CO_RECENT")
        transition_attempt(recent, PaymentAttempt.STATUS_COMPLETED, provider_receipt="QAX2")
        out = StringIO()

        call_command("retry_payment_effects", stdout=out)

        self.assertIn("Applied: 1", out.getvalue())
        self.assertEqual(BeatPurchase.objects.get().payment_id, stuck.pk)
        recent.refresh_from_db()
        self.assertEqual(recent.effect_status, PaymentAttempt.EFFECT_PENDING)

    @override_settings(**MPESA_SETTINGS)
    @patch("payments.services.status.get_access_token", return_value="token")
    @patch("payments.services.status.query_stk_status")
    def test_reconcile_pending_payments(self, mock_query, mock_token):
        old = self.make_attempt("ws_CO_OLD")
        PaymentAttempt.objects.filter(pk=old.pk).update(
            created_at=timezone.now() - timedelta(minutes=30)
        )
        self.make_attempt("ws_CO_FRESH")
        mock_query.return_value = {"ResultCode": "0", "ResultDesc": "Processed"}
        out = StringIO()

        call_command("reconcile_pending_payments", "--older-than", "5", stdout=out)

        mock_query.assert_called_once()
        self.assertEqual(mock_query.call_args.args[2], "ws_CO_OLD")
        self.assertEqual(
            PaymentAttempt.objects.get(provider_checkout_id="ws_CO_OLD").status,
            PaymentAttempt.STATUS_COMPLETED,
        )
        self.assertEqual(
            PaymentAttempt.objects.get(provider_checkout_id="ws_CO_FRESH").status,
            PaymentAttempt.STATUS_PENDING,
        )
        self.assertIn("Completed: 1", out.getvalue())
