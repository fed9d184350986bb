import logging
from dataclasses import dataclass
from typing import Optional

import requests
from django.db import DatabaseError

from ..credentials import load_credentials
from ..exceptions import (
    AuthError,
    ConfigurationError,
    PaymentValidationError,
    ProviderRejectionError,
    ProviderUnavailableError,
)
from ..models import PaymentAttempt
from ..mpesa_utils import normalize_phone, parse_amount
from .mpesa_auth import get_access_token
from .stk_push import stk_push

logger = logging.getLogger(__name__)

PAYMENT_KINDS = {kind for kind, _ in PaymentAttempt.KIND_CHOICES}


@dataclass
class CheckoutResult:
    provider_checkout_id: str
    provider_merchant_id: str = ""
    payment_id: Optional[str] = None
    customer_message: str = "STK Push sent. Please check your phone."


def initiate_checkout(
    payer,
    phone_number,
    amount,
    payment_kind,
    reference_id,
    metadata=None,
    description=None,
):
    logger.info("--- M-PESA PAYMENT INITIATE ATTEMPT ---")
    logger.info(
        f"Phone(raw): {phone_number}, Amount: {amount}, Kind: {payment_kind}, Reference: {reference_id}"
    )

    amount_decimal = parse_amount(amount)
    if amount_decimal is None:
        raise PaymentValidationError(
            reason="invalid_amount", detail="Amount must be a positive number."
        )

    if payment_kind not in PAYMENT_KINDS:
        raise PaymentValidationError(
            reason="invalid_kind", detail=f"Unsupported payment type '{payment_kind}'."
        )

    phone = normalize_phone(phone_number)
    if phone is None:
        raise PaymentValidationError(
            reason="invalid_phone",
            detail="Use a valid M-Pesa number in format 2547XXXXXXXX.",
        )

    credentials = load_credentials()
    if not credentials.is_configured:
        raise ConfigurationError(
            detail="M-Pesa not configured. Please configure M-Pesa settings in admin panel."
        )

    try:
        access_token = get_access_token(credentials)
    except AuthError as e:
        if e.reason == "missing_credentials":
            raise ConfigurationError(detail=e.detail) from e
        raise ProviderUnavailableError(detail="Failed to authenticate with M-Pesa") from e

    description = description or f"{payment_kind} payment"
    try:
        response = stk_push(
            credentials,
            access_token,
            phone,
            amount_decimal,
            reference_id,
            description,
        )
    except (requests.RequestException, ValueError) as e:
        logger.error(f"Error initiating STK Push: {str(e)}")
        raise ProviderUnavailableError(detail="Failed to connect to Safaricom") from e

    logger.info(f"STK Push response: {response}")

    if str(response.get("ResponseCode")) != "0" or not response.get("CheckoutRequestID"):
        reason = (
            response.get("ResponseDescription")
            or response.get("errorMessage")
            or "STK Push failed"
        )
        logger.error(f"STK Push failed: {reason}")
        raise ProviderRejectionError(detail=reason)

    result = CheckoutResult(
        provider_checkout_id=response["CheckoutRequestID"],
        provider_merchant_id=response.get("MerchantRequestID", ""),
        customer_message=response.get("CustomerMessage") or CheckoutResult.customer_message,
    )

    # The payer already has the prompt on their phone; a failed insert must
    # not turn into a failed checkout.
    try:
        attempt = PaymentAttempt.objects.create(
            payer=payer,
            payment_kind=payment_kind,
            reference_id=str(reference_id or ""),
            amount=amount_decimal,
            phone_number=phone,
            description=description[:255],
            provider_checkout_id=result.provider_checkout_id,
            provider_merchant_id=result.provider_merchant_id,
            metadata=metadata or {},
        )
    except DatabaseError:
        logger.exception(
            f"Payment record error for CheckoutRequestID {result.provider_checkout_id}"
        )
    else:
        result.payment_id = str(attempt.id)
        logger.info(f"PaymentAttempt created: {attempt.provider_checkout_id}")

    return result
