import logging
import json

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST
from rest_framework import generics, status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from .exceptions import (
    CheckoutError,
    ConfigurationError,
    ProviderUnavailableError,
    QueryError,
)
from .models import PaymentAttempt
from .serializers import (
    InitiatePaymentSerializer,
    PaymentAttemptSerializer,
    StatusQuerySerializer,
)
from .services.checkout import initiate_checkout
from .services.reconciliation import reconcile_callback
from .services.status import query_payment_status

logger = logging.getLogger(__name__)


def _error(message, http_status):
    return Response({"success": False, "error": message}, status=http_status)


class InitiateMpesaPaymentView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = InitiatePaymentSerializer(data=request.data)
        if not serializer.is_valid():
            first_field, errors = next(iter(serializer.errors.items()))
            return _error(f"{first_field}: {errors[0]}", status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        try:
            result = initiate_checkout(
                payer=request.user,
                phone_number=data["phone_number"],
                amount=data["amount"],
                payment_kind=data["payment_kind"],
                reference_id=data.get("reference_id", ""),
                metadata=data.get("metadata") or {},
                description=data.get("description") or None,
            )
        except ConfigurationError as e:
            logger.error(f"M-Pesa STK Push error: {e}")
            # Operators fix this, not payers.
            return _error(
                "Payments are temporarily unavailable. Please try again later.",
                status.HTTP_503_SERVICE_UNAVAILABLE,
            )
        except ProviderUnavailableError as e:
            logger.error(f"M-Pesa STK Push error: {e}")
            return _error(e.detail, status.HTTP_502_BAD_GATEWAY)
        except CheckoutError as e:
            logger.warning(f"M-Pesa STK Push refused: {e}")
            return _error(e.detail, status.HTTP_400_BAD_REQUEST)

        return Response(
            {
                "success": True,
                "message": result.customer_message,
                "checkout_id": result.provider_checkout_id,
                "merchant_id": result.provider_merchant_id,
                "payment_id": result.payment_id,
            },
            status=status.HTTP_200_OK,
        )


@csrf_exempt
@require_POST
def mpesa_callback(request):
    """
    Safaricom STK callback. Always answers 200: anything else makes
    Safaricom redeliver, and redelivery is handled by idempotency instead.
    """
    try:
        data = json.loads(request.body)
    except (ValueError, UnicodeDecodeError):
        logger.error("Invalid callback data: body is not JSON")
        return JsonResponse({"success": False})

    logger.info("--- M-PESA CALLBACK RECEIVED ---")
    logger.info(json.dumps(data, indent=4))

    try:
        outcome = reconcile_callback(data)
    except Exception:
        logger.exception("Unexpected error in mpesa_callback")
        return JsonResponse({"success": False})

    return JsonResponse({"success": outcome.acknowledged})


class MpesaPaymentStatusView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, checkout_request_id):
        return self._status_response(request, checkout_request_id)

    def post(self, request, checkout_request_id=None):
        serializer = StatusQuerySerializer(data=request.data)
        if not serializer.is_valid():
            return _error("Missing checkout_request_id", status.HTTP_400_BAD_REQUEST)
        return self._status_response(request, serializer.validated_data["checkout_request_id"])

    def _status_response(self, request, checkout_request_id):
        try:
            result = query_payment_status(checkout_request_id, request.user)
        except QueryError as e:
            return _error(e.detail, status.HTTP_404_NOT_FOUND)

        return Response(
            {
                "success": True,
                "status": result.status,
                "receipt_number": result.receipt,
                "result_desc": result.message,
            }
        )


class PaymentAttemptListView(generics.ListAPIView):
    permission_classes = [IsAuthenticated]
    serializer_class = PaymentAttemptSerializer

    def get_queryset(self):
        return PaymentAttempt.objects.filter(payer=self.request.user)
