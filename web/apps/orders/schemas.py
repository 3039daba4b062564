"""Pydantic schemas for orders.

Request schemas validate shape only; business rules (required shipping
address, supported payment method, non-empty cart) are enforced by the
checkout service so the API and direct callers get the same error codes.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from .domain import Order, PaymentDetails


class AddressIn(BaseModel):
    """Postal address as sent by the client."""

    name: str = Field(min_length=1, max_length=120)
    line1: str = Field(min_length=1, max_length=200)
    line2: str = Field(default="", max_length=200)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(default="", max_length=100)
    postal_code: str = Field(min_length=3, max_length=16)
    country: str = Field(default="IN", min_length=2, max_length=2)
    phone: str = Field(default="", max_length=20)

    @field_validator("country")
    @classmethod
    def upper_country(cls, v: str) -> str:
        return v.upper()


class PaymentDetailsIn(BaseModel):
    """Checkout callback fields returned by the provider's payment widget."""

    provider_order_id: str = Field(min_length=1, max_length=64)
    payment_id: str = Field(min_length=1, max_length=64)
    signature: str = Field(min_length=1, max_length=256)

    def to_domain(self) -> PaymentDetails:
        return PaymentDetails(
            provider_order_id=self.provider_order_id,
            payment_id=self.payment_id,
            signature=self.signature,
        )


class CheckoutRequest(BaseModel):
    """Body of ``POST /api/checkout/``.

    Attributes:
        shipping_address: Required by the service; optional here so the
            service reports ``SHIPPING_ADDRESS_REQUIRED``.
        billing_address: Defaults to the shipping address.
        payment_method: One of the supported methods, case-insensitive.
        coupon_code: Normalized to uppercase.
        payment_details: Provider callback fields.
    """

    shipping_address: Optional[AddressIn] = None
    billing_address: Optional[AddressIn] = None
    payment_method: Optional[str] = Field(default=None, max_length=32)
    coupon_code: Optional[str] = Field(default=None, max_length=32)
    payment_details: Optional[PaymentDetailsIn] = None

    @field_validator("coupon_code")
    @classmethod
    def normalize_coupon(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip().upper() or None


class ValidateCheckoutRequest(BaseModel):
    shipping_address: Optional[AddressIn] = None
    payment_method: Optional[str] = Field(default=None, max_length=32)


class OrderItemOut(BaseModel):
    product_id: str
    sku: str
    name: str = ""
    quantity: int
    unit_price_cents: int
    discount_cents: int
    total_cents: int


class OrderReadDTO(BaseModel):
    """Public representation of an order."""

    id: UUID
    order_number: str
    status: str
    items: list[OrderItemOut]
    subtotal_cents: int
    discount_cents: int
    coupon_code: Optional[str] = None
    coupon_discount_cents: int
    tax_cents: int
    total_cents: int
    currency: str
    payment_method: str
    payment_status: str
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    shipping_address_id: str
    billing_address_id: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, order: Order) -> "OrderReadDTO":
        return cls(
            id=order.id,
            order_number=order.order_number,
            status=order.status.value,
            items=[
                OrderItemOut(
                    product_id=i.product_id,
                    sku=i.sku,
                    name=i.name,
                    quantity=i.quantity,
                    unit_price_cents=i.unit_price_cents,
                    discount_cents=i.discount_cents,
                    total_cents=i.total_cents,
                )
                for i in order.items
            ],
            subtotal_cents=order.subtotal_cents,
            discount_cents=order.discount_cents,
            coupon_code=order.coupon_code,
            coupon_discount_cents=order.coupon_discount_cents,
            tax_cents=order.tax_cents,
            total_cents=order.total_cents,
            currency=order.currency,
            payment_method=order.payment.method.value,
            payment_status=order.payment.status.value,
            transaction_id=order.payment.transaction_id,
            paid_at=order.payment.paid_at,
            shipping_address_id=order.shipping_address_id,
            billing_address_id=order.billing_address_id,
            created_at=order.created_at,
        )


class TrackingOut(BaseModel):
    id: UUID
    order_number: str
    status: str
    tracking_number: str
    shipping_provider: str
    updated_at: Optional[datetime] = None


class StatusUpdateDTO(BaseModel):
    status: str = Field(min_length=1, max_length=16)
    tracking_number: Optional[str] = Field(default=None, max_length=64)
    shipping_provider: Optional[str] = Field(default=None, max_length=64)
    note: Optional[str] = Field(default=None, max_length=500)


class BulkStatusDTO(BaseModel):
    order_ids: list[UUID] = Field(min_length=1, max_length=100)
    status: str = Field(min_length=1, max_length=16)
