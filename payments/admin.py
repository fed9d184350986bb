from django.contrib import admin
from .models import PaymentAttempt, PlatformSetting


@admin.register(PaymentAttempt)
class PaymentAttemptAdmin(admin.ModelAdmin):
    list_display = (
        "provider_checkout_id",
        "payer",
        "payment_kind",
        "reference_id",
        "amount",
        "status",
        "provider_receipt",
        "effect_status",
        "created_at",
    )
    list_filter = ("status", "payment_kind", "effect_status", "created_at")
    search_fields = (
        "provider_checkout_id",
        "provider_receipt",
        "phone_number",
        "reference_id",
        "payer__email",
    )
    # Audit trail: attempts only change through reconciliation.
    readonly_fields = [field.name for field in PaymentAttempt._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(PlatformSetting)
class PlatformSettingAdmin(admin.ModelAdmin):
    list_display = ("setting_key", "display_value", "is_sensitive", "updated_at")
    search_fields = ("setting_key", "description")

    @admin.display(description="Value")
    def display_value(self, obj):
        return "********" if obj.is_sensitive and obj.setting_value else obj.setting_value
