import requests
from django.conf import settings

from ..mpesa_utils import generate_password


def query_stk_status(credentials, access_token, checkout_request_id):
    password, timestamp = generate_password(credentials.shortcode, credentials.passkey)

    payload = {
        "BusinessShortCode": credentials.shortcode,
        "Password": password,
        "Timestamp": timestamp,
        "CheckoutRequestID": checkout_request_id,
    }

    response = requests.post(
        f"{credentials.base_url}/mpesa/stkpushquery/v1/query",
        json=payload,
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=settings.MPESA_HTTP_TIMEOUT,
    )

    return response.json()
