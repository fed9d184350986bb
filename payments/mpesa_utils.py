import base64
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.utils import timezone

COUNTRY_PREFIX = "254"
PHONE_DIGITS = 12
ACCOUNT_REFERENCE_MAX_LENGTH = 12
TIMEOUT_MESSAGE = "Payment timeout. Please try again."


def generate_timestamp():
    # Provider-local time (TIME_ZONE is Africa/Nairobi), second precision.
    return timezone.localtime().strftime("%Y%m%d%H%M%S")


def generate_password(shortcode, passkey, timestamp=None):
    """
    Password = Base64(BusinessShortCode + Passkey + Timestamp)

    Returns the password together with the timestamp it was derived from,
    both have to be sent in the same request.
    """
    timestamp = timestamp or generate_timestamp()
    data_to_encode = f"{shortcode}{passkey}{timestamp}"
    encoded_string = base64.b64encode(data_to_encode.encode()).decode()
    return encoded_string, timestamp


def normalize_phone(phone):
    """
    Normalize a Kenyan phone number to the 2547XXXXXXXX form M-Pesa expects.

    Returns None when the result is not a 12 digit number.
    """
    cleaned = re.sub(r"\D", "", str(phone or ""))
    if not cleaned:
        return None

    if cleaned.startswith("0"):
        cleaned = f"{COUNTRY_PREFIX}{cleaned[1:]}"
    elif not cleaned.startswith(COUNTRY_PREFIX):
        cleaned = f"{COUNTRY_PREFIX}{cleaned}"

    if len(cleaned) != PHONE_DIGITS:
        return None
    return cleaned


def parse_amount(value):
    """Return a Decimal for value, or None when it is not chargeable (under 1 KES once rounded)."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    if provider_amount(amount) < 1:
        return None
    return amount


def provider_amount(amount):
    # Safaricom expects an integer amount in KES
    return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def account_reference(reference_id):
    return str(reference_id or "")[:ACCOUNT_REFERENCE_MAX_LENGTH]


def parse_callback_items(items):
    """Flatten CallbackMetadata.Item [{Name, Value}, ...] into a dict."""
    parsed = {}
    for item in items or []:
        if isinstance(item, dict) and "Name" in item:
            parsed[item["Name"]] = item.get("Value")
    return parsed


def parse_result_code(value):
    """
    Result codes arrive as ints in callbacks and as strings from the query
    endpoint. Returns None when no usable code is present.
    """
    if value is None or value == "":
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None
