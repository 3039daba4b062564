from django.urls import path

from .views import StockAdjustView, StockDetailView, StockHoldView

app_name = "inventory"

urlpatterns = [
    path("<str:sku>/", StockDetailView.as_view(), name="stock-detail"),
    path("<str:sku>/adjust/", StockAdjustView.as_view(), name="stock-adjust"),
    path("<str:sku>/reserve/", StockHoldView.as_view(hold_action="reserve"), name="stock-reserve"),
    path("<str:sku>/unreserve/", StockHoldView.as_view(hold_action="unreserve"), name="stock-unreserve"),
]
