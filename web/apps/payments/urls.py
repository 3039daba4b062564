from django.urls import path

from .views import PaymentByOrderView, ProviderOrderView, RefundView, WebhookView

app_name = "payments"

urlpatterns = [
    path("orders/", ProviderOrderView.as_view(), name="provider-order"),
    path("webhook/", WebhookView.as_view(), name="webhook"),
    path("by-order/<uuid:oid>/", PaymentByOrderView.as_view(), name="by-order"),
    path("<str:public_id>/refunds/", RefundView.as_view(), name="refunds"),
]
