"""
Business effects applied once a payment completes.

Handlers are looked up by ``PaymentAttempt.payment_kind``. They must be
idempotent: the conditional status transition already guarantees a single
call per completed attempt, but operators may re-run failed effects.
"""
import logging

from django.db import DatabaseError, transaction
from django.utils import timezone

from studio.models import Beat, BeatPurchase, Booking

from ..exceptions import EffectApplicationError
from ..models import PaymentAttempt

logger = logging.getLogger(__name__)


def _grant_beat_purchase(attempt):
    if attempt.payer_id is None:
        raise EffectApplicationError(detail="Beat purchase has no buyer to grant the license to.")

    metadata = attempt.metadata if isinstance(attempt.metadata, dict) else {}
    license_type = metadata.get("license_type") or BeatPurchase.LICENSE_BASIC
    if not isinstance(license_type, str) or license_type not in BeatPurchase.LICENSE_TYPES:
        raise EffectApplicationError(detail=f"Unknown license type '{license_type}'.")

    beat = Beat.objects.filter(pk=attempt.reference_id).first()
    if beat is None:
        raise EffectApplicationError(detail=f"Beat {attempt.reference_id} no longer exists.")

    purchase, created = BeatPurchase.objects.get_or_create(
        payment=attempt,
        defaults={
            "beat": beat,
            "buyer_id": attempt.payer_id,
            "license_type": license_type,
            "price_paid": attempt.amount,
        },
    )
    if not created:
        logger.info(f"Beat purchase already granted for payment {attempt.id}")
        return

    if license_type == BeatPurchase.LICENSE_EXCLUSIVE and not beat.is_sold_exclusive:
        beat.is_sold_exclusive = True
        beat.save(update_fields=["is_sold_exclusive", "updated_at"])

    logger.info(f"Beat purchase {purchase.id} granted: beat {beat.id} ({license_type})")


def _confirm_booking(attempt):
    booking = Booking.objects.filter(pk=attempt.reference_id).first()
    if booking is None:
        raise EffectApplicationError(detail=f"Booking {attempt.reference_id} no longer exists.")

    if booking.status == Booking.STATUS_CONFIRMED:
        return
    if booking.status != Booking.STATUS_PENDING:
        raise EffectApplicationError(
            detail=f"Booking {booking.id} is {booking.status} and cannot be confirmed."
        )

    booking.status = Booking.STATUS_CONFIRMED
    booking.save(update_fields=["status", "updated_at"])
    logger.info(f"Booking {booking.id} confirmed")


def _reserved(attempt):
    # Project payments carry no downstream record yet.
    return None


EFFECT_HANDLERS = {
    PaymentAttempt.KIND_BEAT_PURCHASE: _grant_beat_purchase,
    PaymentAttempt.KIND_BOOKING: _confirm_booking,
    PaymentAttempt.KIND_PROJECT: _reserved,
}


def apply_business_effect(attempt):
    if attempt.status != PaymentAttempt.STATUS_COMPLETED:
        raise EffectApplicationError(detail=f"Payment {attempt.id} is {attempt.status}, not completed.")

    handler = EFFECT_HANDLERS.get(attempt.payment_kind)
    if handler is None:
        raise EffectApplicationError(detail=f"No business effect for '{attempt.payment_kind}'.")
    handler(attempt)


def _record_effect(attempt, effect_status, error=""):
    PaymentAttempt.objects.filter(pk=attempt.pk).update(
        effect_status=effect_status,
        effect_error=error,
        updated_at=timezone.now(),
    )
    attempt.effect_status = effect_status
    attempt.effect_error = error


def run_business_effect(attempt):
    """
    Apply the effect for a completed attempt and record the outcome.

    Failures are logged and stored on the attempt for manual remediation;
    they never touch the payment status. Returns True when applied.
    """
    try:
        with transaction.atomic():
            apply_business_effect(attempt)
    except EffectApplicationError as e:
        logger.error(f"Business effect failed for payment {attempt.id}: {e.detail}")
        _record_effect(attempt, PaymentAttempt.EFFECT_FAILED, e.detail)
        return False
    except DatabaseError as e:
        logger.exception(f"Database error applying business effect for payment {attempt.id}")
        _record_effect(attempt, PaymentAttempt.EFFECT_FAILED, str(e))
        return False
    except Exception as e:
        # The payment is already completed; keep the failure on the attempt.
        logger.exception(f"Unexpected error applying business effect for payment {attempt.id}")
        _record_effect(attempt, PaymentAttempt.EFFECT_FAILED, f"{type(e).__name__}: {e}")
        return False

    if attempt.payment_kind == PaymentAttempt.KIND_PROJECT:
        _record_effect(attempt, PaymentAttempt.EFFECT_NOT_APPLICABLE)
    else:
        _record_effect(attempt, PaymentAttempt.EFFECT_APPLIED)
    return True
