import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from django.utils import timezone

from ..exceptions import ReconciliationAmbiguity
from ..models import PaymentAttempt
from ..mpesa_utils import parse_callback_items, parse_result_code
from .effects import run_business_effect

logger = logging.getLogger(__name__)

SUCCESS_RESULT_CODE = 0


@dataclass
class CallbackOutcome:
    result: str
    checkout_request_id: Optional[str] = None
    attempt: Optional[PaymentAttempt] = None

    @property
    def acknowledged(self):
        return self.result not in ("invalid", "unknown")


def transition_attempt(attempt, status, **fields):
    """
    Move a pending attempt into a terminal status.

    The UPDATE only matches while the row is still pending, so when a webhook
    and a status query race exactly one of them gets True back. The loser's
    instance is refreshed with the winner's state.
    """
    if status not in PaymentAttempt.TERMINAL_STATUSES:
        raise ValueError(f"{status} is not a terminal payment status")

    now = timezone.now()
    updated = PaymentAttempt.objects.filter(
        pk=attempt.pk,
        status=PaymentAttempt.STATUS_PENDING,
    ).update(status=status, updated_at=now, **fields)

    if updated:
        attempt.status = status
        attempt.updated_at = now
        for name, value in fields.items():
            setattr(attempt, name, value)
        return True

    attempt.refresh_from_db()
    return False


def apply_provider_result(attempt, result_code, result_desc, **fields):
    """
    Map a provider result code onto the attempt. Returns True when this call
    performed the transition; the business effect runs only in that case.
    """
    status = (
        PaymentAttempt.STATUS_COMPLETED
        if result_code == SUCCESS_RESULT_CODE
        else PaymentAttempt.STATUS_FAILED
    )
    fields.update(
        provider_result_code=str(result_code),
        provider_result_message=(result_desc or "")[:255],
    )
    if status == PaymentAttempt.STATUS_FAILED:
        fields.pop("provider_receipt", None)
        fields["effect_status"] = PaymentAttempt.EFFECT_NOT_APPLICABLE

    won = transition_attempt(attempt, status, **fields)
    if not won:
        logger.info(
            f"Payment {attempt.provider_checkout_id} already {attempt.status}; ignoring result {result_code}"
        )
        return False

    if status == PaymentAttempt.STATUS_COMPLETED:
        logger.info(f"Payment {attempt.provider_checkout_id} marked as COMPLETED")
        run_business_effect(attempt)
    else:
        logger.warning(
            f"Payment {attempt.provider_checkout_id} marked as FAILED. Reason: {result_desc}"
        )
    return True


def _to_decimal(value):
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None


def _backfill_receipt(attempt, receipt, transacted_amount):
    # A status query can complete an attempt before the callback brings the receipt.
    updated = PaymentAttempt.objects.filter(
        pk=attempt.pk,
        status=PaymentAttempt.STATUS_COMPLETED,
        provider_receipt__isnull=True,
    ).update(
        provider_receipt=receipt,
        transacted_amount=transacted_amount,
        updated_at=timezone.now(),
    )
    if updated:
        attempt.refresh_from_db()
        logger.info(f"Receipt {receipt} recorded for payment {attempt.provider_checkout_id}")


def _find_attempt(checkout_id):
    try:
        return PaymentAttempt.objects.get(provider_checkout_id=checkout_id)
    except PaymentAttempt.DoesNotExist:
        raise ReconciliationAmbiguity(
            detail=f"Payment not found for CheckoutRequestID {checkout_id}"
        ) from None


def reconcile_callback(payload):
    """
    Apply an STK callback envelope. Never raises for bad or unknown payloads:
    Safaricom redelivers anything that is not acknowledged.
    """
    body = payload.get("Body") if isinstance(payload, dict) else None
    stk = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(stk, dict):
        logger.error("Invalid callback data: 'stkCallback' missing")
        return CallbackOutcome("invalid")

    checkout_id = stk.get("CheckoutRequestID")
    result_code = parse_result_code(stk.get("ResultCode"))
    if not checkout_id or result_code is None:
        logger.error(f"Invalid callback data: CheckoutRequestID={checkout_id!r} ResultCode={stk.get('ResultCode')!r}")
        return CallbackOutcome("invalid", checkout_id)

    try:
        attempt = _find_attempt(checkout_id)
    except ReconciliationAmbiguity as e:
        logger.error(e.detail)
        return CallbackOutcome("unknown", checkout_id)

    items = parse_callback_items((stk.get("CallbackMetadata") or {}).get("Item"))
    receipt = items.get("MpesaReceiptNumber")
    receipt = str(receipt) if receipt else None
    transacted_amount = _to_decimal(items.get("Amount"))
    transacted_phone = str(items.get("PhoneNumber") or "")

    if attempt.is_terminal:
        logger.info(f"Duplicate callback for {checkout_id}; payment already {attempt.status}")
        if (
            result_code == SUCCESS_RESULT_CODE
            and receipt
            and attempt.status == PaymentAttempt.STATUS_COMPLETED
            and not attempt.provider_receipt
        ):
            _backfill_receipt(attempt, receipt, transacted_amount)
        return CallbackOutcome("duplicate", checkout_id, attempt)

    won = apply_provider_result(
        attempt,
        result_code,
        stk.get("ResultDesc"),
        provider_receipt=receipt,
        transacted_amount=transacted_amount,
        transacted_phone=transacted_phone[:15],
        raw_callback=payload,
        callback_received_at=timezone.now(),
    )
    if not won:
        return CallbackOutcome("duplicate", checkout_id, attempt)
    return CallbackOutcome(attempt.status, checkout_id, attempt)
