"""Pydantic schemas for the payments API."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class ProviderOrderIn(BaseModel):
    """Request a provider order for the caller's current cart.

    The amount is never taken from the client; it is priced server-side.
    """

    coupon_code: Optional[str] = Field(default=None, max_length=32)

    @field_validator("coupon_code")
    @classmethod
    def normalize_coupon(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() or None if v else None


class RefundIn(BaseModel):
    amount_cents: Optional[int] = Field(default=None, gt=0)
    reason: str = Field(default="requested_by_customer", min_length=1, max_length=255)


class RefundOut(BaseModel):
    provider_refund_id: str
    amount_cents: int
    reason: str
    status: str
    processed_at: Optional[datetime] = None


class TransactionOut(BaseModel):
    transaction_id: str
    order_id: str
    provider: str
    provider_order_id: str
    provider_payment_id: str
    amount_cents: int
    currency: str
    method: str
    status: str
    retry_count: int
    flagged_for_review: bool
    refunds: list[RefundOut] = []

    @classmethod
    def from_model(cls, tx) -> "TransactionOut":
        return cls(
            transaction_id=tx.public_id,
            order_id=str(tx.order_id),
            provider=tx.provider,
            provider_order_id=tx.provider_order_id,
            provider_payment_id=tx.provider_payment_id,
            amount_cents=tx.amount_cents,
            currency=tx.currency,
            method=tx.method,
            status=tx.status,
            retry_count=tx.retry_count,
            flagged_for_review=tx.flagged_for_review,
            refunds=[
                RefundOut(
                    provider_refund_id=r.provider_refund_id,
                    amount_cents=r.amount_cents,
                    reason=r.reason,
                    status=r.status,
                    processed_at=r.processed_at,
                )
                for r in tx.refunds.all()
            ],
        )
