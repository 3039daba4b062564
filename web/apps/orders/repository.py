"""Repository layer mapping ``Order`` domain objects to the ORM.

Keeps the checkout service free of Django types: it takes and returns
domain dataclasses, and status changes go through the domain status
machine before anything is written.
"""

import logging
from datetime import timedelta
from typing import Iterable

from django.db import transaction
from django.utils import timezone

from apps.common.errors import AppError, NotFound
from apps.payments.statuses import PaymentMethod

from .domain import Order, OrderItem, OrderPayment, OrderPaymentStatus, OrderStatus, check_transition
from .models import OrderItemModel, OrderModel

logger = logging.getLogger(__name__)


def to_domain(obj: OrderModel) -> Order:
    return Order(
        id=obj.id,
        order_number=obj.order_number,
        user_id=obj.user_id,
        items=[
            OrderItem(
                product_id=i.product_id,
                sku=i.sku,
                quantity=i.quantity,
                unit_price_cents=i.unit_price_cents,
                total_cents=i.total_cents,
                discount_cents=i.discount_cents,
                variant_id=i.variant_id,
                mrp_cents=i.mrp_cents,
                name=i.name,
            )
            for i in obj.items.all()
        ],
        payment=OrderPayment(
            method=PaymentMethod(obj.payment_method),
            status=OrderPaymentStatus(obj.payment_status),
            transaction_id=obj.payment_transaction_id,
            amount_cents=obj.payment_amount_cents,
            paid_at=obj.paid_at,
        ),
        shipping_address_id=obj.shipping_address_id,
        billing_address_id=obj.billing_address_id,
        subtotal_cents=obj.subtotal_cents,
        discount_cents=obj.discount_cents,
        tax_cents=obj.tax_cents,
        total_cents=obj.total_cents,
        currency=obj.currency,
        coupon_code=obj.coupon_code,
        coupon_discount_cents=obj.coupon_discount_cents,
        status=OrderStatus(obj.status),
        notes=obj.notes,
        tracking_number=obj.tracking_number,
        shipping_provider=obj.shipping_provider,
        created_by=obj.created_by,
        updated_by=obj.updated_by,
        internal_id=obj.internal_id,
        created_at=obj.created_at,
        updated_at=obj.updated_at,
    )


class OrderRepository:
    """Django-backed ``OrderStore`` plus the operational queries."""

    def add(self, order: Order) -> None:
        """Insert the order and its lines; fills ``internal_id`` and timestamps."""
        obj = OrderModel(
            id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            status=order.status.value,
            shipping_address_id=order.shipping_address_id,
            billing_address_id=order.billing_address_id,
            subtotal_cents=order.subtotal_cents,
            discount_cents=order.discount_cents,
            tax_cents=order.tax_cents,
            coupon_code=order.coupon_code,
            coupon_discount_cents=order.coupon_discount_cents,
            total_cents=order.total_cents,
            currency=order.currency,
            payment_method=order.payment.method.value,
            payment_status=order.payment.status.value,
            payment_transaction_id=order.payment.transaction_id,
            payment_amount_cents=order.payment.amount_cents,
            paid_at=order.payment.paid_at,
            notes=order.notes,
            created_by=order.created_by or order.user_id,
            updated_by=order.updated_by or order.user_id,
        )
        obj.save(force_insert=True)
        OrderItemModel.objects.bulk_create(
            [
                OrderItemModel(
                    order=obj,
                    product_id=i.product_id,
                    variant_id=i.variant_id,
                    sku=i.sku,
                    name=i.name,
                    quantity=i.quantity,
                    unit_price_cents=i.unit_price_cents,
                    mrp_cents=i.mrp_cents,
                    discount_cents=i.discount_cents,
                    total_cents=i.total_cents,
                )
                for i in order.items
            ]
        )
        order.internal_id = obj.internal_id
        order.created_at = obj.created_at
        order.updated_at = obj.updated_at

    def save(self, order: Order) -> None:
        """Persist status, payment summary and tracking of an existing order."""
        now = timezone.now()
        updated = OrderModel.objects.filter(id=order.id).update(
            status=order.status.value,
            payment_status=order.payment.status.value,
            payment_transaction_id=order.payment.transaction_id,
            payment_amount_cents=order.payment.amount_cents,
            paid_at=order.payment.paid_at,
            tracking_number=order.tracking_number,
            shipping_provider=order.shipping_provider,
            notes=order.notes,
            updated_by=order.updated_by,
            updated_at=now,
        )
        if not updated:
            raise NotFound(f"order {order.id}")
        order.updated_at = now

    def get(self, order_id, user_id: str | None = None) -> Order:
        qs = OrderModel.objects.prefetch_related("items").filter(id=order_id, is_deleted=False)
        if user_id is not None:
            qs = qs.filter(user_id=user_id)
        obj = qs.first()
        if obj is None:
            raise NotFound(f"order {order_id}")
        return to_domain(obj)

    @transaction.atomic
    def transition_status(
        self,
        order_id,
        target,
        actor: str,
        tracking_number: str | None = None,
        shipping_provider: str | None = None,
        note: str | None = None,
    ) -> Order:
        """Move one order through the status machine under a row lock.

        Raises:
            NotFound: Unknown or soft-deleted order.
            InvalidStatus: ``target`` is not a known status.
            InvalidTransition: The move is not allowed.
        """
        try:
            obj = OrderModel.objects.select_for_update().get(id=order_id, is_deleted=False)
        except OrderModel.DoesNotExist:
            raise NotFound(f"order {order_id}")
        new_status = check_transition(obj.status, target)
        old_status = obj.status
        obj.status = new_status.value
        if tracking_number is not None:
            obj.tracking_number = tracking_number
        if shipping_provider is not None:
            obj.shipping_provider = shipping_provider
        if note:
            obj.notes = f"{obj.notes}\n{note}".strip()
        obj.updated_by = actor
        obj.save()
        logger.info(
            "order status changed",
            extra={"order_id": str(obj.id), "from_status": old_status, "to_status": obj.status, "actor": actor},
        )
        return self.get(obj.id)

    def bulk_transition(self, order_ids: Iterable, target, actor: str) -> dict:
        """Transition many orders; each one succeeds or fails on its own.

        Returns:
            dict: ``{"updated": [ids], "failed": {id: code}}``.
        """
        target = OrderStatus.parse(target)
        result: dict = {"updated": [], "failed": {}}
        for oid in order_ids:
            try:
                self.transition_status(oid, target, actor)
                result["updated"].append(str(oid))
            except AppError as e:
                result["failed"][str(oid)] = e.code
        return result

    def soft_delete(self, order_id, actor: str) -> None:
        updated = OrderModel.objects.filter(id=order_id, is_deleted=False).update(
            is_deleted=True, updated_by=actor, updated_at=timezone.now()
        )
        if not updated:
            raise NotFound(f"order {order_id}")

    def cancel_stale_pending(self, older_than: timedelta, actor: str = "system:order-cleanup") -> int:
        """Cancel orders stuck in ``pending`` longer than ``older_than``."""
        cutoff = timezone.now() - older_than
        stale_ids = list(
            OrderModel.objects.filter(
                status=OrderStatus.PENDING.value, is_deleted=False, created_at__lt=cutoff
            ).values_list("id", flat=True)
        )
        cancelled = 0
        for oid in stale_ids:
            try:
                self.transition_status(oid, OrderStatus.CANCELLED, actor, note="auto-cancelled: payment never completed")
                cancelled += 1
            except AppError as e:
                logger.warning("stale order not cancelled", extra={"order_id": str(oid), "code": e.code})
        return cancelled
