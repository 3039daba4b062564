from django.urls import include, path

urlpatterns = [
    path("", include("apps.monitoring.urls")),
    path("api/", include("apps.orders.urls")),
    path("api/payments/", include("apps.payments.urls")),
    path("api/inventory/", include("apps.inventory.urls")),
]
