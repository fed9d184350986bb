import logging
from dataclasses import dataclass
from typing import Optional

import requests

from ..credentials import load_credentials
from ..exceptions import AuthError, QueryError
from ..models import PaymentAttempt
from ..mpesa_utils import parse_result_code
from .mpesa_auth import get_access_token
from .query_status import query_stk_status
from .reconciliation import apply_provider_result

logger = logging.getLogger(__name__)

# Daraja answers 4999 while the payer has not acted on the prompt yet.
STILL_PROCESSING_CODES = {4999}
AWAITING_MESSAGE = "Awaiting payment confirmation"


@dataclass
class StatusResult:
    status: str
    receipt: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_attempt(cls, attempt, message=None):
        return cls(
            status=attempt.status,
            receipt=attempt.provider_receipt,
            message=attempt.provider_result_message or message,
        )

    @property
    def is_terminal(self):
        return self.status in PaymentAttempt.TERMINAL_STATUSES


def refresh_from_provider(attempt):
    """
    Ask Safaricom about a pending attempt and reconcile the answer.

    "Still processing", missing credentials and network trouble all come back
    as pending; callers are expected to ask again later.
    """
    pending = StatusResult(PaymentAttempt.STATUS_PENDING, message=AWAITING_MESSAGE)

    credentials = load_credentials()
    if not credentials.is_configured:
        return pending

    try:
        access_token = get_access_token(credentials)
    except AuthError as e:
        logger.warning(f"STK query skipped for {attempt.provider_checkout_id}: {e}")
        return pending

    try:
        query_res = query_stk_status(credentials, access_token, attempt.provider_checkout_id)
    except (requests.RequestException, ValueError) as e:
        logger.warning(f"STK query failed for {attempt.provider_checkout_id}: {str(e)}")
        return pending

    logger.info(f"STK Query response: {query_res}")

    result_code = parse_result_code(query_res.get("ResultCode"))
    if result_code is None or result_code in STILL_PROCESSING_CODES:
        return StatusResult(
            PaymentAttempt.STATUS_PENDING,
            message=query_res.get("errorMessage") or query_res.get("ResultDesc") or AWAITING_MESSAGE,
        )

    apply_provider_result(attempt, result_code, query_res.get("ResultDesc"))
    return StatusResult.from_attempt(attempt)


def query_payment_status(provider_checkout_id, payer):
    """
    Status of one of ``payer``'s payments. Someone else's payment is reported
    exactly like a missing one.
    """
    payer_id = getattr(payer, "pk", payer)
    attempt = PaymentAttempt.objects.filter(provider_checkout_id=provider_checkout_id).first()

    if attempt is None or payer_id is None or attempt.payer_id != payer_id:
        raise QueryError(reason="not_found", detail="Payment not found")

    if attempt.is_terminal:
        return StatusResult.from_attempt(attempt)

    return refresh_from_provider(attempt)
