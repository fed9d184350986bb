from django.contrib import admin
from .models import Beat, BeatPurchase, Booking


@admin.register(Beat)
class BeatAdmin(admin.ModelAdmin):
    list_display = ("title", "producer", "price_basic", "price_premium", "price_exclusive", "is_sold_exclusive")
    search_fields = ("title",)


@admin.register(BeatPurchase)
class BeatPurchaseAdmin(admin.ModelAdmin):
    list_display = ("beat", "buyer", "license_type", "price_paid", "payment", "purchased_at")
    list_filter = ("license_type",)


@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    list_display = ("client", "session_type", "session_date", "start_time", "status", "total_price")
    list_filter = ("status", "session_type")
