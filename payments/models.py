import uuid

from django.conf import settings
from django.db import models

User = settings.AUTH_USER_MODEL


class PaymentAttempt(models.Model):
    STATUS_PENDING = "pending"
    STATUS_COMPLETED = "completed"
    STATUS_FAILED = "failed"

    STATUS_CHOICES = [
        (STATUS_PENDING, "Pending"),
        (STATUS_COMPLETED, "Completed"),
        (STATUS_FAILED, "Failed"),
    ]
    TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)

    KIND_BEAT_PURCHASE = "beat_purchase"
    KIND_BOOKING = "booking"
    KIND_PROJECT = "project"

    KIND_CHOICES = [
        (KIND_BEAT_PURCHASE, "Beat Purchase"),
        (KIND_BOOKING, "Booking"),
        (KIND_PROJECT, "Project"),
    ]

    EFFECT_NOT_APPLICABLE = "not_applicable"
    EFFECT_PENDING = "pending"
    EFFECT_APPLIED = "applied"
    EFFECT_FAILED = "failed"

    EFFECT_STATUS_CHOICES = [
        (EFFECT_NOT_APPLICABLE, "Not Applicable"),
        (EFFECT_PENDING, "Pending"),
        (EFFECT_APPLIED, "Applied"),
        (EFFECT_FAILED, "Failed"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    payer = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payment_attempts",
    )

    payment_kind = models.CharField(max_length=20, choices=KIND_CHOICES)
    reference_id = models.CharField(max_length=100, blank=True)
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=3, default="KES", editable=False)
    method = models.CharField(max_length=20, default="mpesa", editable=False)
    phone_number = models.CharField(max_length=15)
    description = models.CharField(max_length=255, blank=True)

    provider_checkout_id = models.CharField(max_length=100, unique=True)
    provider_merchant_id = models.CharField(max_length=100, blank=True)

    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_PENDING,
    )
    provider_result_code = models.CharField(max_length=20, blank=True)
    provider_result_message = models.CharField(max_length=255, blank=True)
    provider_receipt = models.CharField(max_length=50, blank=True, null=True)

    # What the callback reported; audit only, never overrides ``amount``.
    transacted_amount = models.DecimalField(
        max_digits=10, decimal_places=2, null=True, blank=True
    )
    transacted_phone = models.CharField(max_length=15, blank=True)
    raw_callback = models.JSONField(null=True, blank=True)
    callback_received_at = models.DateTimeField(null=True, blank=True)

    effect_status = models.CharField(
        max_length=20,
        choices=EFFECT_STATUS_CHOICES,
        default=EFFECT_PENDING,
    )
    effect_error = models.TextField(blank=True)

    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="payments_pa_status_created_idx"),
            models.Index(fields=["payer", "created_at"], name="payments_pa_payer_created_idx"),
        ]

    def __str__(self):
        return f"{self.phone_number} - {self.amount} - {self.status}"

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES


class PlatformSetting(models.Model):
    """
    Operator-managed configuration rows, e.g. M-Pesa credentials entered
    through the admin. Non-blank values take precedence over settings.py.
    """

    setting_key = models.CharField(max_length=100, unique=True)
    setting_value = models.TextField(blank=True, null=True)
    setting_type = models.CharField(max_length=20, default="string")
    description = models.CharField(max_length=255, blank=True)
    is_sensitive = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["setting_key"]

    def __str__(self):
        value = "********" if self.is_sensitive else self.setting_value
        return f"{self.setting_key} = {value}"
