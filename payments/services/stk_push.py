import logging

import requests
from django.conf import settings

from ..mpesa_utils import account_reference, generate_password, provider_amount

logger = logging.getLogger(__name__)


def stk_push(credentials, access_token, phone, amount, reference_id, description):
    password, timestamp = generate_password(credentials.shortcode, credentials.passkey)

    payload = {
        "BusinessShortCode": credentials.shortcode,
        "Password": password,
        "Timestamp": timestamp,
        "TransactionType": "CustomerPayBillOnline",
        "Amount": provider_amount(amount),
        "PartyA": phone,
        "PartyB": credentials.shortcode,
        "PhoneNumber": phone,
        "CallBackURL": credentials.callback_url,
        "AccountReference": account_reference(reference_id),
        "TransactionDesc": description,
    }

    logger.info(f"Sending STK Push: {dict(payload, Password='[REDACTED]')}")

    response = requests.post(
        f"{credentials.base_url}/mpesa/stkpush/v1/processrequest",
        json=payload,
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=settings.MPESA_HTTP_TIMEOUT,
    )

    return response.json()
