import uuid

from django.db import models, transaction

from .domain import OrderPaymentStatus, OrderStatus


class OrderModel(models.Model):
    # Public UUID primary key exposed in the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Internal incremental counter
    internal_id = models.BigIntegerField(unique=True, editable=False, null=True)
    order_number = models.CharField(max_length=32, unique=True)
    user_id = models.CharField(max_length=64, db_index=True)

    status = models.CharField(
        max_length=16,
        choices=[(s.value, s.value) for s in OrderStatus],
        default=OrderStatus.PENDING.value,
    )

    shipping_address_id = models.CharField(max_length=64)
    billing_address_id = models.CharField(max_length=64)

    subtotal_cents = models.PositiveIntegerField(default=0)
    discount_cents = models.PositiveIntegerField(default=0)
    tax_cents = models.PositiveIntegerField(default=0)
    coupon_code = models.CharField(max_length=32, null=True, blank=True)
    coupon_discount_cents = models.PositiveIntegerField(default=0)
    total_cents = models.PositiveIntegerField(default=0)
    currency = models.CharField(max_length=3, default="INR")

    # Embedded payment summary
    payment_method = models.CharField(max_length=16)
    payment_status = models.CharField(
        max_length=16,
        choices=[(s.value, s.value) for s in OrderPaymentStatus],
        default=OrderPaymentStatus.PENDING.value,
    )
    payment_transaction_id = models.CharField(max_length=32, null=True, blank=True)
    payment_amount_cents = models.PositiveIntegerField(default=0)
    paid_at = models.DateTimeField(null=True, blank=True)

    tracking_number = models.CharField(max_length=64, blank=True, default="")
    shipping_provider = models.CharField(max_length=64, blank=True, default="")
    notes = models.TextField(blank=True, default="")

    is_deleted = models.BooleanField(default=False)
    created_by = models.CharField(max_length=64, blank=True, default="")
    updated_by = models.CharField(max_length=64, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ["-internal_id"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="orders_status_created_idx"),
        ]

    def save(self, *args, **kwargs):
        # Assign incremental `internal_id` only on creation
        if self.internal_id is None:
            with transaction.atomic():
                last = (
                    OrderModel.objects.select_for_update()
                    .order_by("-internal_id")
                    .only("internal_id")
                    .first()
                )
                self.internal_id = 1 if not last or last.internal_id is None else last.internal_id + 1
                super().save(*args, **kwargs)
            return
        super().save(*args, **kwargs)


class OrderItemModel(models.Model):
    order = models.ForeignKey(OrderModel, related_name="items", on_delete=models.CASCADE)
    product_id = models.CharField(max_length=64)
    variant_id = models.CharField(max_length=64, blank=True, default="")
    sku = models.CharField(max_length=64)
    name = models.CharField(max_length=200, blank=True, default="")
    quantity = models.PositiveIntegerField()
    unit_price_cents = models.PositiveIntegerField()
    mrp_cents = models.PositiveIntegerField(default=0)
    discount_cents = models.PositiveIntegerField(default=0)
    total_cents = models.PositiveIntegerField()

    class Meta:
        db_table = "order_items"
        ordering = ["id"]


class IdempotencyKey(models.Model):
    """Durable record of a keyed checkout request and its final response."""

    key = models.CharField(max_length=200, unique=True)
    request_hash = models.CharField(max_length=64)
    # 0 while the first request is still running
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict, blank=True)
    order_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    expires_at = models.DateTimeField(db_index=True)

    class Meta:
        db_table = "idempotency_keys"
