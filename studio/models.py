import uuid
from decimal import Decimal

from django.conf import settings
from django.db import models

User = settings.AUTH_USER_MODEL


def generate_id():
    return str(uuid.uuid4())


# =========================
# Beat Model
# =========================
class Beat(models.Model):
    id = models.CharField(primary_key=True, max_length=64, default=generate_id, editable=False)
    title = models.CharField(max_length=255)
    producer = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="beats",
    )
    price_basic = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    price_premium = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    price_exclusive = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    is_sold_exclusive = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.title


# =========================
# Beat Purchase (license grant)
# =========================
class BeatPurchase(models.Model):
    LICENSE_BASIC = "basic"
    LICENSE_PREMIUM = "premium"
    LICENSE_EXCLUSIVE = "exclusive"

    LICENSE_CHOICES = [
        (LICENSE_BASIC, "Basic"),
        (LICENSE_PREMIUM, "Premium"),
        (LICENSE_EXCLUSIVE, "Exclusive"),
    ]
    LICENSE_TYPES = {choice for choice, _ in LICENSE_CHOICES}

    beat = models.ForeignKey(Beat, on_delete=models.PROTECT, related_name="purchases")
    buyer = models.ForeignKey(User, on_delete=models.CASCADE, related_name="beat_purchases")
    license_type = models.CharField(max_length=20, choices=LICENSE_CHOICES)
    price_paid = models.DecimalField(max_digits=10, decimal_places=2)
    # One grant per payment, enforced by the database as well.
    payment = models.OneToOneField(
        "payments.PaymentAttempt",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="beat_purchase",
    )
    purchased_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-purchased_at"]

    def __str__(self):
        return f"{self.buyer} - {self.beat} ({self.license_type})"


# =========================
# Booking Model
# =========================
class Booking(models.Model):
    STATUS_PENDING = "pending"
    STATUS_CONFIRMED = "confirmed"
    STATUS_COMPLETED = "completed"
    STATUS_CANCELLED = "cancelled"

    STATUS_CHOICES = [
        (STATUS_PENDING, "Pending"),
        (STATUS_CONFIRMED, "Confirmed"),
        (STATUS_COMPLETED, "Completed"),
        (STATUS_CANCELLED, "Cancelled"),
    ]

    SESSION_TYPE_CHOICES = [
        ("recording", "Recording"),
        ("mixing", "Mixing"),
        ("mastering", "Mastering"),
        ("production", "Production"),
        ("consultation", "Consultation"),
    ]

    id = models.CharField(primary_key=True, max_length=64, default=generate_id, editable=False)
    client = models.ForeignKey(User, on_delete=models.CASCADE, related_name="bookings")
    producer = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="producer_bookings",
    )
    session_type = models.CharField(max_length=20, choices=SESSION_TYPE_CHOICES)
    session_date = models.DateField()
    start_time = models.TimeField()
    duration_hours = models.PositiveIntegerField(default=1)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    total_price = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["session_date", "start_time"]

    def __str__(self):
        return f"{self.client} - {self.session_type} on {self.session_date} ({self.status})"
