import base64
import logging

import requests
from django.conf import settings

from ..exceptions import AuthError

logger = logging.getLogger(__name__)


def get_access_token(credentials):
    consumer_key = credentials.consumer_key
    consumer_secret = credentials.consumer_secret

    if not consumer_key or not consumer_secret:
        raise AuthError(
            reason="missing_credentials",
            detail="M-Pesa not configured. Please configure M-Pesa settings in admin panel.",
        )

    auth = base64.b64encode(f"{consumer_key}:{consumer_secret}".encode()).decode()

    try:
        response = requests.get(
            f"{credentials.base_url}/oauth/v1/generate?grant_type=client_credentials",
            headers={"Authorization": f"Basic {auth}"},
            timeout=settings.MPESA_HTTP_TIMEOUT,
        )
    except requests.RequestException as e:
        logger.error(f"OAuth token request failed: {str(e)}")
        raise AuthError(reason="provider_unreachable") from e

    if not response.ok:
        logger.error(f"OAuth token error ({response.status_code}): {response.text}")
        raise AuthError(reason="provider_rejected")

    try:
        access_token = response.json()["access_token"]
    except (ValueError, KeyError) as e:
        logger.error("OAuth token response did not contain an access_token")
        raise AuthError(reason="provider_rejected") from e

    logger.info("Got M-Pesa access token")
    return access_token
