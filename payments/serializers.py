from rest_framework import serializers

from .models import PaymentAttempt


class InitiatePaymentSerializer(serializers.Serializer):
    # Amount/phone checks live in the checkout service so every caller gets
    # the same error reasons.
    phone_number = serializers.CharField(max_length=20)
    amount = serializers.CharField(max_length=20)
    payment_kind = serializers.CharField(max_length=20)
    reference_id = serializers.CharField(max_length=100, required=False, allow_blank=True)
    description = serializers.CharField(max_length=255, required=False, allow_blank=True)
    metadata = serializers.DictField(required=False, default=dict)

    def to_internal_value(self, data):
        # Accept both keys for backward compatibility with older clients
        if hasattr(data, "copy"):
            data = data.copy()
        if not data.get("phone_number") and data.get("phone"):
            data["phone_number"] = data.get("phone")
        if not data.get("payment_kind") and data.get("payment_type"):
            data["payment_kind"] = data.get("payment_type")
        return super().to_internal_value(data)


class StatusQuerySerializer(serializers.Serializer):
    checkout_request_id = serializers.CharField(max_length=100)


class PaymentAttemptSerializer(serializers.ModelSerializer):
    class Meta:
        model = PaymentAttempt
        fields = (
            "id",
            "payment_kind",
            "reference_id",
            "amount",
            "currency",
            "method",
            "phone_number",
            "status",
            "provider_checkout_id",
            "provider_receipt",
            "provider_result_message",
            "created_at",
            "updated_at",
        )
        read_only_fields = fields
