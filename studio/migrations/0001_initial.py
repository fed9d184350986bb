from decimal import Decimal

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

import studio.models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("payments", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Beat",
            fields=[
                ("id", models.CharField(default=studio.models.generate_id, editable=False, max_length=64, primary_key=True, serialize=False)),
                ("title", models.CharField(max_length=255)),
                ("price_basic", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=10)),
                ("price_premium", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=10)),
                ("price_exclusive", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=10)),
                ("is_sold_exclusive", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("producer", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="beats", to=settings.AUTH_USER_MODEL)),
            ],
        ),
        migrations.CreateModel(
            name="Booking",
            fields=[
                ("id", models.CharField(default=studio.models.generate_id, editable=False, max_length=64, primary_key=True, serialize=False)),
                ("session_type", models.CharField(choices=[("recording", "Recording"), ("mixing", "Mixing"), ("mastering", "Mastering"), ("production", "Production"), ("consultation", "Consultation")], max_length=20)),
                ("session_date", models.DateField()),
                ("start_time", models.TimeField()),
                ("duration_hours", models.PositiveIntegerField(default=1)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("confirmed", "Confirmed"), ("completed", "Completed"), ("cancelled", "Cancelled")], default="pending", max_length=20)),
                ("total_price", models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ("notes", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("client", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="bookings", to=settings.AUTH_USER_MODEL)),
                ("producer", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="producer_bookings", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["session_date", "start_time"],
            },
        ),
        migrations.CreateModel(
            name="BeatPurchase",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("license_type", models.CharField(choices=[("basic", "Basic"), ("premium", "Premium"), ("exclusive", "Exclusive")], max_length=20)),
                ("price_paid", models.DecimalField(decimal_places=2, max_digits=10)),
                ("purchased_at", models.DateTimeField(auto_now_add=True)),
                ("beat", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="purchases", to="studio.beat")),
                ("buyer", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="beat_purchases", to=settings.AUTH_USER_MODEL)),
                ("payment", models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name="beat_purchase", to="payments.paymentattempt")),
            ],
            options={
                "ordering": ["-purchased_at"],
            },
        ),
    ]
