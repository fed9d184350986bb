from django.urls import path
from .views import (
    InitiateMpesaPaymentView,
    mpesa_callback,
    MpesaPaymentStatusView,
    PaymentAttemptListView,
)

urlpatterns = [
    path("mpesa/pay/", InitiateMpesaPaymentView.as_view(), name="mpesa-pay"),
    path("mpesa/callback/", mpesa_callback, name="mpesa-callback"),
    path("mpesa/query/", MpesaPaymentStatusView.as_view(), name="mpesa-query"),
    path("mpesa/status/<str:checkout_request_id>/", MpesaPaymentStatusView.as_view(), name="mpesa-status"),
    path("mpesa/payments/", PaymentAttemptListView.as_view(), name="mpesa-payments"),
]
