import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="PlatformSetting",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("setting_key", models.CharField(max_length=100, unique=True)),
                ("setting_value", models.TextField(blank=True, null=True)),
                ("setting_type", models.CharField(default="string", max_length=20)),
                ("description", models.CharField(blank=True, max_length=255)),
                ("is_sensitive", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["setting_key"],
            },
        ),
        migrations.CreateModel(
            name="PaymentAttempt",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("payment_kind", models.CharField(choices=[("beat_purchase", "Beat Purchase"), ("booking", "Booking"), ("project", "Project")], max_length=20)),
                ("reference_id", models.CharField(blank=True, max_length=100)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=10)),
                ("currency", models.CharField(default="KES", editable=False, max_length=3)),
                ("method", models.CharField(default="mpesa", editable=False, max_length=20)),
                ("phone_number", models.CharField(max_length=15)),
                ("description", models.CharField(blank=True, max_length=255)),
                ("provider_checkout_id", models.CharField(max_length=100, unique=True)),
                ("provider_merchant_id", models.CharField(blank=True, max_length=100)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("completed", "Completed"), ("failed", "Failed")], default="pending", max_length=20)),
                ("provider_result_code", models.CharField(blank=True, max_length=20)),
                ("provider_result_message", models.CharField(blank=True, max_length=255)),
                ("provider_receipt", models.CharField(blank=True, max_length=50, null=True)),
                ("transacted_amount", models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ("transacted_phone", models.CharField(blank=True, max_length=15)),
                ("raw_callback", models.JSONField(blank=True, null=True)),
                ("callback_received_at", models.DateTimeField(blank=True, null=True)),
                ("effect_status", models.CharField(choices=[("not_applicable", "Not Applicable"), ("pending", "Pending"), ("applied", "Applied"), ("failed", "Failed")], default="pending", max_length=20)),
                ("effect_error", models.TextField(blank=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("payer", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="payment_attempts", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="payments_pa_status_created_idx"),
                    models.Index(fields=["payer", "created_at"], name="payments_pa_payer_created_idx"),
                ],
            },
        ),
    ]
