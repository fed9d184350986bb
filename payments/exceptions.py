class PaymentError(Exception):
    """
    Base class for payment core failures.

    ``reason`` is a stable machine-readable code, ``detail`` carries the
    human readable text (often verbatim from Safaricom).
    """

    default_reason = "payment_error"
    default_detail = "Payment processing failed."

    def __init__(self, reason=None, detail=None):
        self.reason = reason or self.default_reason
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def __str__(self):
        return f"{self.reason}: {self.detail}"


class AuthError(PaymentError):
    default_reason = "provider_unreachable"
    default_detail = "Failed to authenticate with M-Pesa."


# =========================
# Checkout initiation
# =========================
class CheckoutError(PaymentError):
    default_reason = "checkout_failed"
    default_detail = "Payment initiation failed."


class ConfigurationError(CheckoutError):
    default_reason = "provider_not_configured"
    default_detail = "M-Pesa is not configured."


class PaymentValidationError(CheckoutError):
    default_reason = "invalid_request"
    default_detail = "Invalid payment request."


class ProviderRejectionError(CheckoutError):
    default_reason = "provider_rejected"
    default_detail = "STK Push failed."


class ProviderUnavailableError(CheckoutError):
    default_reason = "provider_error"
    default_detail = "Failed to connect to Safaricom."


# =========================
# Reconciliation
# =========================
class QueryError(PaymentError):
    default_reason = "not_found"
    default_detail = "Payment not found."


class ReconciliationAmbiguity(PaymentError):
    default_reason = "unknown_checkout"
    default_detail = "No payment matches this checkout request."


class EffectApplicationError(PaymentError):
    default_reason = "effect_failed"
    default_detail = "Payment succeeded but its business effect could not be applied."
