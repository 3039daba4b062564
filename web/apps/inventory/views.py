"""Stock read and operator endpoints."""

from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from apps.common.errors import AppError

from .ledger import StockLedger
from .schemas import AdjustStockIn, HoldIn, StockOut


def _serialize(stock) -> dict:
    return StockOut(
        sku=stock.sku,
        product_id=stock.product_id,
        variant_id=stock.variant_id,
        quantity=stock.quantity,
        reserved=stock.reserved,
        available=stock.available,
        low_stock_threshold=stock.low_stock_threshold,
        is_low_stock=stock.is_low_stock,
    ).model_dump()


class InventoryView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "inventory"
    ledger_class = StockLedger


class StockDetailView(InventoryView):
    def get(self, request, sku: str):
        try:
            stock = self.ledger_class().get(sku)
        except AppError as e:
            return Response(e.to_body(), status=e.status_code)
        return Response(_serialize(stock))


class StockAdjustView(InventoryView):
    def post(self, request, sku: str):
        try:
            dto = AdjustStockIn.model_validate(request.data)
        except ValidationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        try:
            stock = self.ledger_class().adjust(
                sku, dto.delta, dto.reference, notes=dto.notes, movement_type=dto.type
            )
        except AppError as e:
            return Response(e.to_body(), status=e.status_code)
        return Response(_serialize(stock))


class StockHoldView(InventoryView):
    """``reserve`` or ``unreserve`` depending on ``hold_action``."""

    hold_action = "reserve"

    def post(self, request, sku: str):
        try:
            dto = HoldIn.model_validate(request.data)
        except ValidationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        ledger = self.ledger_class()
        op = ledger.reserve if self.hold_action == "reserve" else ledger.unreserve
        try:
            stock = op(sku, dto.quantity, dto.order_ref)
        except AppError as e:
            return Response(e.to_body(), status=e.status_code)
        return Response(_serialize(stock))
