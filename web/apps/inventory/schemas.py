"""Pydantic schemas for the stock endpoints."""

from pydantic import BaseModel, Field, field_validator

ADJUSTABLE_TYPES = {"in", "out", "adjustment", "return"}


class AdjustStockIn(BaseModel):
    delta: int
    reference: str = Field(default="", max_length=64)
    notes: str = Field(default="", max_length=500)
    type: str = "adjustment"

    @field_validator("delta")
    @classmethod
    def non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("delta must be non-zero")
        return v

    @field_validator("type")
    @classmethod
    def known_type(cls, v: str) -> str:
        v2 = v.lower()
        if v2 not in ADJUSTABLE_TYPES:
            raise ValueError("Unsupported movement type")
        return v2


class HoldIn(BaseModel):
    quantity: int = Field(gt=0)
    order_ref: str = Field(min_length=1, max_length=64)


class StockOut(BaseModel):
    sku: str
    product_id: str
    variant_id: str
    quantity: int
    reserved: int
    available: int
    low_stock_threshold: int
    is_low_stock: bool
