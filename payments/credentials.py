import logging
from dataclasses import dataclass

from django.conf import settings
from django.urls import reverse

from .models import PlatformSetting

logger = logging.getLogger(__name__)

SANDBOX_SHORTCODE = "174379"
SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
LIVE_BASE_URL = "https://api.safaricom.co.ke"

# PlatformSetting key -> settings.py attribute
SETTING_KEYS = {
    "mpesa_environment": "MPESA_ENVIRONMENT",
    "mpesa_consumer_key": "MPESA_CONSUMER_KEY",
    "mpesa_consumer_secret": "MPESA_CONSUMER_SECRET",
    "mpesa_passkey": "MPESA_PASSKEY",
    "mpesa_shortcode": "MPESA_SHORTCODE",
    "mpesa_callback_url": "MPESA_CALLBACK_URL",
}


@dataclass(frozen=True)
class MpesaCredentials:
    environment: str = "sandbox"
    consumer_key: str = ""
    consumer_secret: str = ""
    passkey: str = ""
    shortcode: str = SANDBOX_SHORTCODE
    callback_url: str = ""

    @property
    def is_sandbox(self):
        return self.environment == "sandbox"

    @property
    def base_url(self):
        return SANDBOX_BASE_URL if self.is_sandbox else LIVE_BASE_URL

    @property
    def is_configured(self):
        return bool(self.consumer_key and self.consumer_secret and self.passkey)

    def __repr__(self):
        # Keep secrets out of logs and tracebacks.
        return (
            f"MpesaCredentials(environment={self.environment!r}, "
            f"shortcode={self.shortcode!r}, configured={self.is_configured})"
        )


def _default_callback_url():
    site_url = getattr(settings, "SITE_URL", "") or ""
    if not site_url:
        return ""
    return f"{site_url.rstrip('/')}{reverse('mpesa-callback')}"


def load_credentials():
    """
    Read the M-Pesa configuration. Admin-managed PlatformSetting rows win
    over environment-backed settings; blank values are ignored.
    """
    values = {
        key: (getattr(settings, attr, None) or "").strip()
        for key, attr in SETTING_KEYS.items()
    }

    rows = PlatformSetting.objects.filter(setting_key__in=SETTING_KEYS.keys())
    for row in rows:
        if row.setting_value and row.setting_value.strip():
            values[row.setting_key] = row.setting_value.strip()

    credentials = MpesaCredentials(
        environment=(values["mpesa_environment"] or "sandbox").lower(),
        consumer_key=values["mpesa_consumer_key"],
        consumer_secret=values["mpesa_consumer_secret"],
        passkey=values["mpesa_passkey"],
        shortcode=values["mpesa_shortcode"] or SANDBOX_SHORTCODE,
        callback_url=values["mpesa_callback_url"] or _default_callback_url(),
    )
    if not credentials.is_configured:
        logger.warning("M-Pesa credentials are incomplete; integration not configured")
    return credentials
