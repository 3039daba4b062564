from django.urls import path

from .views import (
    BulkOrderStatusView,
    CheckoutSummaryView,
    CheckoutValidateView,
    CheckoutView,
    OrderDetailView,
    OrderStatusView,
    OrderTrackingView,
)

app_name = "orders"

urlpatterns = [
    path("checkout/", CheckoutView.as_view(), name="checkout"),
    path("checkout/summary/", CheckoutSummaryView.as_view(), name="checkout-summary"),
    path("checkout/validate/", CheckoutValidateView.as_view(), name="checkout-validate"),
    path("orders/status/bulk/", BulkOrderStatusView.as_view(), name="orders-bulk-status"),
    path("orders/<uuid:oid>/", OrderDetailView.as_view(), name="orders-detail"),
    path("orders/<uuid:oid>/tracking/", OrderTrackingView.as_view(), name="orders-tracking"),
    path("orders/<uuid:oid>/status/", OrderStatusView.as_view(), name="orders-status"),
]
