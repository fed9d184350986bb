import base64
import json
from decimal import Decimal
from unittest.mock import Mock, patch

import requests
from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import RefreshToken

from .credentials import load_credentials
from .exceptions import (
    AuthError,
    ConfigurationError,
    PaymentValidationError,
    ProviderRejectionError,
    ProviderUnavailableError,
)
from .models import PaymentAttempt, PlatformSetting
from .mpesa_utils import generate_password, normalize_phone, parse_amount
from .services.checkout import initiate_checkout
from .services.mpesa_auth import get_access_token
from .services.stk_push import stk_push

User = get_user_model()

MPESA_SETTINGS = {
    "MPESA_ENVIRONMENT": "sandbox",
    "MPESA_CONSUMER_KEY": "test-key",
    "MPESA_CONSUMER_SECRET": "test-secret",
    "MPESA_PASSKEY": "test-passkey",
    "MPESA_SHORTCODE": "174379",
    "MPESA_CALLBACK_URL": "https://example.com/api/payments/mpesa/callback/",
}

UNCONFIGURED_SETTINGS = {
    "MPESA_CONSUMER_KEY": None,
    "MPESA_CONSUMER_SECRET": None,
    "MPESA_PASSKEY": None,
}

ACCEPTED_RESPONSE = {
    "MerchantRequestID": "29115-34620561-1",
    "CheckoutRequestID": "ws_CO_123",
    "ResponseCode": "0",
    "ResponseDescription": "Success. Request accepted for processing",
    "CustomerMessage": "Success. Request accepted for processing",
}


class PhoneNormalizationTests(SimpleTestCase):
    def test_local_and_international_forms_normalize_to_same_number(self):
        self.assertEqual(normalize_phone("0712345678"), "254712345678")
        self.assertEqual(normalize_phone("+254712345678"), "254712345678")
        self.assertEqual(normalize_phone("254712345678"), "254712345678")

    def test_formatting_characters_are_stripped(self):
        self.assertEqual(normalize_phone("+254 712-345 678"), "254712345678")

    def test_missing_prefix_is_prepended(self):
        self.assertEqual(normalize_phone("712345678"), "254712345678")

    def test_wrong_length_is_rejected(self):
        self.assertIsNone(normalize_phone("07123456"))
        self.assertIsNone(normalize_phone("07123456789"))
        self.assertIsNone(normalize_phone(""))
        self.assertIsNone(normalize_phone("not a phone"))


class AmountParsingTests(SimpleTestCase):
    def test_positive_amounts(self):
        self.assertEqual(parse_amount(500), Decimal("500"))
        self.assertEqual(parse_amount("1500.50"), Decimal("1500.50"))

    def test_non_positive_or_garbage_amounts(self):
        for value in (0, -5, "0.00", "abc", None, "NaN", "Infinity"):
            self.assertIsNone(parse_amount(value), value)

    def test_amounts_that_round_to_zero_shillings(self):
        self.assertIsNone(parse_amount("0.4"))
        self.assertEqual(parse_amount("0.5"), Decimal("0.5"))


class PasswordTests(SimpleTestCase):
    def test_password_is_base64_of_shortcode_passkey_timestamp(self):
        password, timestamp = generate_password("174379", "passkey", "20260212153723")

        self.assertEqual(timestamp, "20260212153723")
        self.assertEqual(base64.b64decode(password).decode(), "174379passkey20260212153723")

    def test_generated_timestamp_has_second_precision(self):
        _, timestamp = generate_password("174379", "passkey")

        self.assertEqual(len(timestamp), 14)
        self.assertTrue(timestamp.isdigit())


@override_settings(**MPESA_SETTINGS)
class CredentialStoreTests(TestCase):
    def test_settings_are_used_by_default(self):
        credentials = load_credentials()

        self.assertTrue(credentials.is_configured)
        self.assertEqual(credentials.base_url, "https://sandbox.safaricom.co.ke")
        self.assertEqual(credentials.shortcode, "174379")
        self.assertNotIn("test-secret", repr(credentials))

    def test_platform_settings_override_environment(self):
        PlatformSetting.objects.create(setting_key="mpesa_environment", setting_value="live")
        PlatformSetting.objects.create(setting_key="mpesa_shortcode", setting_value="600000")
        PlatformSetting.objects.create(setting_key="mpesa_passkey", setting_value="   ")

        credentials = load_credentials()

        self.assertEqual(credentials.base_url, "https://api.safaricom.co.ke")
        self.assertEqual(credentials.shortcode, "600000")
        self.assertEqual(credentials.passkey, "test-passkey")

    @override_settings(MPESA_SHORTCODE=None)
    def test_sandbox_shortcode_default(self):
        self.assertEqual(load_credentials().shortcode, "174379")

    @override_settings(**UNCONFIGURED_SETTINGS)
    def test_missing_credentials(self):
        credentials = load_credentials()

        self.assertFalse(credentials.is_configured)


@override_settings(**MPESA_SETTINGS)
class ProviderAuthTests(TestCase):
    @patch("payments.services.mpesa_auth.requests.get")
    def test_returns_access_token_using_basic_auth(self, mock_get):
        mock_get.return_value = Mock(ok=True, json=Mock(return_value={"access_token": "abc123"}))

        token = get_access_token(load_credentials())

        self.assertEqual(token, "abc123")
        url = mock_get.call_args.args[0]
        headers = mock_get.call_args.kwargs["headers"]
        self.assertEqual(
            url,
            "https://sandbox.safaricom.co.ke/oauth/v1/generate?grant_type=client_credentials",
        )
        expected = base64.b64encode(b"test-key:test-secret").decode()
        self.assertEqual(headers["Authorization"], f"Basic {expected}")
        self.assertIn("timeout", mock_get.call_args.kwargs)

    @override_settings(MPESA_CONSUMER_SECRET="")
    @patch("payments.services.mpesa_auth.requests.get")
    def test_missing_credentials(self, mock_get):
        with self.assertRaises(AuthError) as ctx:
            get_access_token(load_credentials())

        self.assertEqual(ctx.exception.reason, "missing_credentials")
        mock_get.assert_not_called()

    @patch("payments.services.mpesa_auth.requests.get")
    def test_non_2xx_is_provider_rejected(self, mock_get):
        mock_get.return_value = Mock(ok=False, status_code=400, text="Bad Request")

        with self.assertRaises(AuthError) as ctx:
            get_access_token(load_credentials())

        self.assertEqual(ctx.exception.reason, "provider_rejected")

    @patch("payments.services.mpesa_auth.requests.get")
    def test_network_failure_is_provider_unreachable(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("connection refused")

        with self.assertRaises(AuthError) as ctx:
            get_access_token(load_credentials())

        self.assertEqual(ctx.exception.reason, "provider_unreachable")


@override_settings(**MPESA_SETTINGS)
class StkPushRequestTests(TestCase):
    @patch("payments.services.stk_push.requests.post")
    def test_push_payload(self, mock_post):
        mock_post.return_value = Mock(json=Mock(return_value=ACCEPTED_RESPONSE))

        response = stk_push(
            load_credentials(),
            "token",
            "254712345678",
            Decimal("1500.60"),
            "beat-42-with-a-long-identifier",
            "beat_purchase payment",
        )

        self.assertEqual(response, ACCEPTED_RESPONSE)
        url = mock_post.call_args.args[0]
        payload = mock_post.call_args.kwargs["json"]
        self.assertEqual(url, "https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest")
        self.assertEqual(mock_post.call_args.kwargs["headers"]["Authorization"], "Bearer token")
        self.assertEqual(payload["Amount"], 1501)
        self.assertEqual(payload["PartyA"], "254712345678")
        self.assertEqual(payload["PhoneNumber"], "254712345678")
        self.assertEqual(payload["PartyB"], "174379")
        self.assertEqual(payload["AccountReference"], "beat-42-with")
        self.assertEqual(payload["TransactionType"], "CustomerPayBillOnline")
        self.assertEqual(payload["CallBackURL"], MPESA_SETTINGS["MPESA_CALLBACK_URL"])
        decoded = base64.b64decode(payload["Password"]).decode()
        self.assertEqual(decoded, f"174379test-passkey{payload['Timestamp']}")


@override_settings(**MPESA_SETTINGS)
class InitiateCheckoutTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(
            username="artist", email="artist@example.com", password="password123"
        )

    def _initiate(self, **overrides):
        params = {
            "payer": self.user,
            "phone_number": "0712345678",
            "amount": 500,
            "payment_kind": "beat_purchase",
            "reference_id": "beat-42",
            "metadata": {"license_type": "premium"},
        }
        params.update(overrides)
        return initiate_checkout(**params)

    @patch("payments.services.checkout.stk_push")
    @patch("payments.services.checkout.get_access_token", return_value="token")
    def test_accepted_push_persists_pending_attempt(self, mock_token, mock_stk_push):
        mock_stk_push.return_value = ACCEPTED_RESPONSE

        result = self._initiate()

        self.assertEqual(result.provider_checkout_id, "ws_CO_123")
        attempt = PaymentAttempt.objects.get(provider_checkout_id="ws_CO_123")
        self.assertEqual(str(attempt.id), result.payment_id)
        self.assertEqual(attempt.status, PaymentAttempt.STATUS_PENDING)
        self.assertEqual(attempt.amount, Decimal("500"))
        self.assertEqual(attempt.phone_number, "254712345678")
        self.assertEqual(attempt.payer, self.user)
        self.assertEqual(attempt.provider_merchant_id, "29115-34620561-1")
        self.assertEqual(attempt.metadata, {"license_type": "premium"})
        self.assertEqual(attempt.method, "mpesa")

        args = mock_stk_push.call_args.args
        self.assertEqual(args[2], "254712345678")
        self.assertEqual(args[5], "beat_purchase payment")

    @patch("payments.services.checkout.stk_push")
    @patch("payments.services.checkout.get_access_token", return_value="token")
    def test_unchargeable_amounts_are_rejected(self, mock_token, mock_stk_push):
        for amount in (0, -5, "0.4"):
            with self.assertRaises(PaymentValidationError) as ctx:
                self._initiate(amount=amount)
            self.assertEqual(ctx.exception.reason, "invalid_amount")

        mock_stk_push.assert_not_called()
        self.assertFalse(PaymentAttempt.objects.exists())

    @patch("payments.services.checkout.stk_push")
    @patch("payments.services.checkout.get_access_token", return_value="token")
    def test_invalid_phone_is_rejected(self, mock_token, mock_stk_push):
        with self.assertRaises(PaymentValidationError) as ctx:
            self._initiate(phone_number="07123")

        self.assertEqual(ctx.exception.reason, "invalid_phone")
        mock_stk_push.assert_not_called()

    def test_unknown_payment_kind_is_rejected(self):
        with self.assertRaises(PaymentValidationError) as ctx:
            self._initiate(payment_kind="subscription")

        self.assertEqual(ctx.exception.reason, "invalid_kind")

    @override_settings(**UNCONFIGURED_SETTINGS)
    @patch("payments.services.checkout.stk_push")
    def test_unconfigured_provider_creates_no_attempt(self, mock_stk_push):
        with self.assertRaises(ConfigurationError) as ctx:
            self._initiate()

        self.assertEqual(ctx.exception.reason, "provider_not_configured")
        mock_stk_push.assert_not_called()
        self.assertFalse(PaymentAttempt.objects.exists())

    @patch("payments.services.checkout.stk_push")
    @patch("payments.services.checkout.get_access_token")
    def test_auth_failure_is_provider_error(self, mock_token, mock_stk_push):
        mock_token.side_effect = AuthError(reason="provider_rejected")

        with self.assertRaises(ProviderUnavailableError) as ctx:
            self._initiate()

        self.assertEqual(ctx.exception.reason, "provider_error")
        mock_stk_push.assert_not_called()

    @patch("payments.services.checkout.stk_push")
    @patch("payments.services.checkout.get_access_token", return_value="token")
    def test_synchronous_rejection_is_not_recorded(self, mock_token, mock_stk_push):
        mock_stk_push.return_value = {
            "requestId": "1234-5678",
            "errorCode": "400.002.02",
            "errorMessage": "Bad Request - Invalid PhoneNumber",
        }

        with self.assertRaises(ProviderRejectionError) as ctx:
            self._initiate()

        self.assertEqual(ctx.exception.reason, "provider_rejected")
        self.assertEqual(ctx.exception.detail, "Bad Request - Invalid PhoneNumber")
        self.assertFalse(PaymentAttempt.objects.exists())

    @patch("payments.services.checkout.stk_push")
    @patch("payments.services.checkout.get_access_token", return_value="token")
    def test_network_failure_during_push(self, mock_token, mock_stk_push):
        mock_stk_push.side_effect = requests.Timeout("read timed out")

        with self.assertRaises(ProviderUnavailableError):
            self._initiate()

    @patch("payments.services.checkout.stk_push")
    @patch("payments.services.checkout.get_access_token", return_value="token")
    def test_persistence_failure_does_not_fail_checkout(self, mock_token, mock_stk_push):
        mock_stk_push.return_value = ACCEPTED_RESPONSE

        with patch.object(PaymentAttempt.objects, "create", side_effect=DatabaseError("db down")):
            result = self._initiate()

        self.assertEqual(result.provider_checkout_id, "ws_CO_123")
        self.assertIsNone(result.payment_id)


@override_settings(**MPESA_SETTINGS)
class MpesaViewTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = User.objects.create_user(
            username="artist", email="artist@example.com", password="password123"
        )
        refresh = RefreshToken.for_user(self.user)
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {refresh.access_token}")

        self.payment_url = reverse("mpesa-pay")
        self.callback_url = reverse("mpesa-callback")
        self.query_url = reverse("mpesa-query")

    @patch("payments.services.checkout.stk_push")
    @patch("payments.services.checkout.get_access_token", return_value="token")
    def test_initiate_payment_returns_checkout_id(self, mock_token, mock_stk_push):
        mock_stk_push.return_value = ACCEPTED_RESPONSE

        response = self.client.post(
            self.payment_url,
            {
                "phone_number": "0712345678",
                "amount": 1500,
                "payment_kind": "booking",
                "reference_id": "booking-7",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["success"])
        self.assertEqual(response.data["checkout_id"], "ws_CO_123")
        self.assertEqual(response.data["merchant_id"], "29115-34620561-1")
        attempt = PaymentAttempt.objects.get(provider_checkout_id="ws_CO_123")
        self.assertEqual(response.data["payment_id"], str(attempt.id))
        self.assertEqual(attempt.payer, self.user)

    @patch("payments.services.checkout.stk_push")
    @patch("payments.services.checkout.get_access_token", return_value="token")
    def test_legacy_field_names_are_accepted(self, mock_token, mock_stk_push):
        mock_stk_push.return_value = ACCEPTED_RESPONSE

        response = self.client.post(
            self.payment_url,
            {"phone": "0712345678", "amount": "100", "payment_type": "project"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            PaymentAttempt.objects.get().payment_kind, PaymentAttempt.KIND_PROJECT
        )

    def test_invalid_phone_returns_400(self):
        response = self.client.post(
            self.payment_url,
            {"phone_number": "12", "amount": 100, "payment_kind": "booking"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.data["success"])
        self.assertIn("error", response.data)

    def test_requires_caller_identity(self):
        self.client.credentials()

        response = self.client.post(
            self.payment_url,
            {"phone_number": "0712345678", "amount": 100, "payment_kind": "booking"},
            format="json",
        )

        self.assertEqual(response.status_code, 401)

    @override_settings(**UNCONFIGURED_SETTINGS)
    def test_unconfigured_provider_returns_generic_error(self):
        response = self.client.post(
            self.payment_url,
            {"phone_number": "0712345678", "amount": 100, "payment_kind": "booking"},
            format="json",
        )

        self.assertEqual(response.status_code, 503)
        self.assertFalse(response.data["success"])
        self.assertNotIn("admin panel", response.data["error"])

    @patch("payments.services.checkout.stk_push")
    @patch("payments.services.checkout.get_access_token", return_value="token")
    def test_provider_rejection_returns_description(self, mock_token, mock_stk_push):
        mock_stk_push.return_value = {
            "ResponseCode": "1",
            "ResponseDescription": "The balance is insufficient for the transaction",
        }

        response = self.client.post(
            self.payment_url,
            {"phone_number": "0712345678", "amount": 100, "payment_kind": "booking"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.data["error"], "The balance is insufficient for the transaction"
        )

    def test_callback_for_unknown_checkout_is_acknowledged(self):
        callback_data = {
            "Body": {
                "stkCallback": {
                    "MerchantRequestID": "non-existent",
                    "CheckoutRequestID": "non-existent",
                    "ResultCode": 0,
                    "ResultDesc": "Success",
                }
            }
        }

        response = self.client.post(
            self.callback_url,
            data=json.dumps(callback_data),
            content_type="application/json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"success": False})

    def test_callback_with_garbage_body_is_acknowledged(self):
        response = self.client.post(
            self.callback_url, data="not json", content_type="application/json"
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"success": False})

    def test_callback_does_not_require_identity(self):
        PaymentAttempt.objects.create(
            payer=self.user,
            payment_kind=PaymentAttempt.KIND_PROJECT,
            amount=Decimal("100"),
            phone_number="254712345678",
            provider_checkout_id="ws_CO_999",
        )
        anonymous = APIClient()
        callback_data = {
            "Body": {
                "stkCallback": {
                    "MerchantRequestID": "m-1",
                    "CheckoutRequestID": "ws_CO_999",
                    "ResultCode": 1037,
                    "ResultDesc": "DS timeout user cannot be reached",
                }
            }
        }

        response = anonymous.post(
            self.callback_url,
            data=json.dumps(callback_data),
            content_type="application/json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"success": True})
        self.assertEqual(
            PaymentAttempt.objects.get(provider_checkout_id="ws_CO_999").status,
            PaymentAttempt.STATUS_FAILED,
        )

    def test_status_query_of_another_users_payment_is_not_found(self):
        other = User.objects.create_user(
            username="other", email="other@example.com", password="password123"
        )
        PaymentAttempt.objects.create(
            payer=other,
            payment_kind=PaymentAttempt.KIND_BOOKING,
            amount=Decimal("100"),
            phone_number="254712345678",
            provider_checkout_id="ws_CO_OTHER",
            status=PaymentAttempt.STATUS_COMPLETED,
        )

        response = self.client.post(
            self.query_url, {"checkout_request_id": "ws_CO_OTHER"}, format="json"
        )
        missing = self.client.post(
            self.query_url, {"checkout_request_id": "ws_CO_MISSING"}, format="json"
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(response.data, missing.data)

    def test_status_query_returns_terminal_state(self):
        PaymentAttempt.objects.create(
            payer=self.user,
            payment_kind=PaymentAttempt.KIND_BOOKING,
            amount=Decimal("100"),
            phone_number="254712345678",
            provider_checkout_id="ws_CO_DONE",
            status=PaymentAttempt.STATUS_COMPLETED,
            provider_receipt="QAX123",
            provider_result_message="The service request is processed successfully.",
        )

        response = self.client.get(reverse("mpesa-status", args=["ws_CO_DONE"]))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "completed")
        self.assertEqual(response.data["receipt_number"], "QAX123")

    def test_payment_history_lists_only_own_attempts(self):
        other = User.objects.create_user(
            username="other", email="other@example.com", password="password123"
        )
        for payer, checkout_id in ((self.user, "ws_CO_A"), (other, "ws_CO_B")):
            PaymentAttempt.objects.create(
                payer=payer,
                payment_kind=PaymentAttempt.KIND_PROJECT,
                amount=Decimal("100"),
                phone_number="254712345678",
                provider_checkout_id=checkout_id,
            )

        response = self.client.get(reverse("mpesa-payments"))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]["provider_checkout_id"], "ws_CO_A")
