import secrets
import uuid

from django.db import models
from django.db.models import Q, Sum

from .statuses import PaymentMethod, PaymentStatus, RefundStatus


def _txn_public_id() -> str:
    return f"TXN-{secrets.token_hex(8).upper()}"


class Transaction(models.Model):
    """One attempt to move money for one order.

    ``order_id`` is a plain UUID rather than a foreign key: the payment row
    is written outside the checkout's transaction scope and must survive
    when the order insert is rolled back.
    """

    class Provider(models.TextChoices):
        RAZORPAY = "razorpay"
        SANDBOX = "sandbox"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    public_id = models.CharField(max_length=32, unique=True, default=_txn_public_id, editable=False)

    order_id = models.UUIDField(db_index=True)
    order_number = models.CharField(max_length=32, blank=True, default="")
    user_id = models.CharField(max_length=64, db_index=True)

    provider = models.CharField(max_length=16, choices=Provider.choices, default=Provider.SANDBOX)
    provider_order_id = models.CharField(max_length=64, blank=True, default="", db_index=True)
    provider_payment_id = models.CharField(max_length=64, blank=True, default="", db_index=True)

    amount_cents = models.PositiveIntegerField()
    currency = models.CharField(max_length=3, default="INR")
    method = models.CharField(max_length=16, choices=[(m.value, m.value) for m in PaymentMethod])
    status = models.CharField(max_length=16, choices=PaymentStatus.choices(), default=PaymentStatus.PENDING.value)
    gateway_response = models.JSONField(default=dict, blank=True)
    processing_fee_cents = models.PositiveIntegerField(default=0)

    retry_count = models.PositiveSmallIntegerField(default=0)
    next_retry_at = models.DateTimeField(null=True, blank=True)
    error_message = models.TextField(blank=True, default="")

    flagged_for_review = models.BooleanField(default=False)
    flag_reason = models.CharField(max_length=255, blank=True, default="")

    captured_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    last_synced_at = models.DateTimeField(null=True, blank=True)

    is_deleted = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "transactions"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "next_retry_at"], name="txn_status_retry_idx"),
            models.Index(fields=["status", "created_at"], name="txn_status_created_idx"),
        ]
        constraints = [
            # One provider payment settles at most one order.
            models.UniqueConstraint(
                fields=["provider_payment_id"],
                condition=Q(status="success"),
                name="txn_unique_successful_payment",
            ),
        ]

    @property
    def refunded_cents(self) -> int:
        total = (
            self.refunds.exclude(status=RefundStatus.FAILED.value)
            .aggregate(total=Sum("amount_cents"))
            .get("total")
        )
        return total or 0

    def flag(self, reason: str):
        self.flagged_for_review = True
        self.flag_reason = reason[:255]

    def __str__(self):
        return f"{self.public_id} {self.status} {self.amount_cents} {self.currency}"


class Refund(models.Model):
    transaction = models.ForeignKey(Transaction, related_name="refunds", on_delete=models.PROTECT)
    provider_refund_id = models.CharField(max_length=64, blank=True, default="", db_index=True)
    amount_cents = models.PositiveIntegerField()
    reason = models.CharField(max_length=255, blank=True, default="")
    status = models.CharField(
        max_length=16,
        choices=[(s.value, s.value) for s in RefundStatus],
        default=RefundStatus.PENDING.value,
    )
    error_message = models.TextField(blank=True, default="")
    processed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "refunds"
        ordering = ["created_at"]
