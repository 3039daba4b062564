"""Checkout saga coordinator.

``CheckoutService`` turns a user's cart into a paid, confirmed order. The
order insert, the payment confirmation and the stock decrements share one
unit of work; the provider capture cannot join it, so a capture that
succeeded before the scope aborted is compensated with a refund.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from apps.common.errors import (
    EmptyCart,
    InvalidPaymentMethod,
    PaymentAlreadyUsed,
    PaymentDetailsRequired,
    PaymentMethodRequired,
    ShippingAddressRequired,
)
from apps.payments.statuses import PaymentMethod

from .domain import (
    AddressPort,
    Cart,
    CartPort,
    CouponPort,
    IdempotencyStore,
    Order,
    OrderItem,
    OrderPayment,
    OrderStatus,
    OrderStore,
    PaymentAttempt,
    PaymentDetails,
    PaymentsPort,
    PricingPort,
    PricingSummary,
    StockPort,
    UnitOfWork,
    generate_order_number,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CheckoutService:
    """Coordinates cart, pricing, payment and stock for one checkout.

    Collaborators are injected as ports so the same saga runs against
    Django and the sandbox provider in production, and against in-memory
    fakes in unit tests. ``uow_factory`` returns a fresh unit of work per
    checkout.
    """

    def __init__(
        self,
        *,
        cart: CartPort,
        coupons: CouponPort,
        pricing: PricingPort,
        addresses: AddressPort,
        stock: StockPort,
        payments: PaymentsPort,
        orders: OrderStore,
        uow_factory: Callable[[], UnitOfWork],
        idempotency: IdempotencyStore,
        clock: Callable[[], datetime] = _utcnow,
        currency: str = "INR",
    ):
        self.cart = cart
        self.coupons = coupons
        self.pricing = pricing
        self.addresses = addresses
        self.stock = stock
        self.payments = payments
        self.orders = orders
        self.uow_factory = uow_factory
        self.idempotency = idempotency
        self.clock = clock
        self.currency = currency

    # ---- read-only ----

    def checkout_summary(self, user_id: str, coupon_code: Optional[str] = None) -> PricingSummary:
        """Price the user's current cart without side effects."""
        cart = self._load_cart(user_id)
        return self._resolve_pricing(cart, coupon_code)

    def validate_checkout(self, user_id: str, shipping_address: Optional[dict], payment_method) -> dict:
        """Check that a checkout with these inputs would be accepted.

        Returns:
            dict: ``valid``, ``item_count``, ``total_cents`` and ``tax_cents``.
        """
        cart = self._load_cart(user_id)
        self._require_shipping(shipping_address)
        self._parse_method(payment_method)
        summary = self._resolve_pricing(cart, None)
        return {
            "valid": True,
            "item_count": sum(i.quantity for i in cart.items),
            "total_cents": summary.total_cents,
            "tax_cents": summary.tax_cents,
        }

    # ---- saga ----

    def process_checkout(
        self,
        user_id: str,
        shipping_address: Optional[dict],
        billing_address: Optional[dict] = None,
        payment_method=None,
        coupon_code: Optional[str] = None,
        payment_details: Optional[PaymentDetails] = None,
        idempotency_key: Optional[str] = None,
    ) -> Order:
        """Run the checkout saga.

        Raises:
            EmptyCart, ShippingAddressRequired, PaymentMethodRequired,
            InvalidPaymentMethod, PaymentDetailsRequired, InvalidCoupon,
            InsufficientStock: Client errors; payment and stock untouched
                (except ``InsufficientStock`` raised by the decrement
                itself, which is compensated).
            InvalidSignature, PaymentFailed, PaymentOutcomeUnknown,
            PaymentAlreadyUsed: Payment errors.
        """
        if idempotency_key:
            cached = self.idempotency.get(idempotency_key)
            if cached is not None:
                logger.info("checkout replayed from idempotency cache", extra={"order_id": str(cached.id)})
                return cached

        # Validation: nothing here touches payment or stock.
        self._require_shipping(shipping_address)
        method = self._parse_method(payment_method)
        if payment_details is None:
            raise PaymentDetailsRequired()
        cart = self._load_cart(user_id)
        self.stock.check_availability([(i.sku, i.quantity) for i in cart.items])
        summary = self._resolve_pricing(cart, coupon_code)

        shipping_ref = self.addresses.create_address(user_id, shipping_address)
        billing_ref = self.addresses.create_address(user_id, billing_address) if billing_address else shipping_ref

        now = self.clock()
        order = Order(
            id=uuid.uuid4(),
            order_number=generate_order_number(now),
            user_id=user_id,
            items=list(summary.items),
            payment=OrderPayment(method=method, amount_cents=summary.total_cents),
            shipping_address_id=shipping_ref,
            billing_address_id=billing_ref,
            subtotal_cents=summary.subtotal_cents,
            discount_cents=summary.discount_cents,
            tax_cents=summary.tax_cents,
            total_cents=summary.total_cents,
            currency=summary.currency,
            coupon_code=summary.coupon_code,
            coupon_discount_cents=summary.coupon_discount_cents,
            created_by=user_id,
            updated_by=user_id,
        )

        attempt = self.payments.begin(order, method, payment_details)
        uow = self.uow_factory()
        uow.begin()
        try:
            self.orders.add(order)
            attempt = self.payments.capture(attempt, payment_details.signature)
            self.payments.confirm(attempt)
            order.mark_paid(attempt.transaction_id, self.clock())
            order.transition_to(OrderStatus.CONFIRMED, actor=user_id)
            self.orders.save(order)
            for item in order.items:
                self.stock.decrement(item.sku, item.quantity, reference=order.order_number)
            uow.commit()
        except Exception as exc:
            uow.abort()
            self._settle_failed_payment(attempt, exc)
            logger.warning(
                "checkout aborted",
                extra={
                    "order_number": order.order_number,
                    "user_id": user_id,
                    "error": getattr(exc, "code", type(exc).__name__),
                    "captured": attempt.captured,
                },
            )
            raise

        if idempotency_key:
            self.idempotency.save(idempotency_key, order)
        logger.info(
            "checkout completed",
            extra={
                "order_id": str(order.id),
                "order_number": order.order_number,
                "total_cents": order.total_cents,
                "transaction": attempt.transaction_id,
            },
        )
        return order

    # ---- helpers ----

    def _load_cart(self, user_id: str) -> Cart:
        cart = self.cart.get_cart_by_user_id(user_id)
        if cart is None or not cart.items:
            raise EmptyCart()
        return cart

    @staticmethod
    def _require_shipping(shipping_address) -> None:
        if not shipping_address:
            raise ShippingAddressRequired()

    @staticmethod
    def _parse_method(raw) -> PaymentMethod:
        if raw is None or raw == "":
            raise PaymentMethodRequired()
        method = PaymentMethod.parse(raw)
        if method is None:
            raise InvalidPaymentMethod(f"unsupported payment method {raw!r}")
        return method

    def _resolve_pricing(self, cart: Cart, coupon_code: Optional[str]) -> PricingSummary:
        """Apply the coupon to the cart subtotal, then per-line pricing rules.

        A line total is the rule's final unit price times that line's own
        quantity. The order total is clamped at zero.
        """
        code = (coupon_code or "").strip().upper() or None
        coupon_discount = self.coupons.validate_coupon(code, cart.subtotal_cents) if code else 0

        items = []
        discount = 0
        for line in cart.items:
            quote = self.pricing.calculate_price(line.product_id, line.quantity, line.price_cents)
            discount += quote.discount_cents
            items.append(
                OrderItem(
                    product_id=line.product_id,
                    sku=line.sku,
                    quantity=line.quantity,
                    unit_price_cents=quote.final_price_cents,
                    total_cents=quote.final_price_cents * line.quantity,
                    discount_cents=quote.discount_cents,
                    variant_id=line.variant_id,
                    mrp_cents=line.mrp_cents,
                    name=line.name,
                )
            )

        total = max(0, cart.subtotal_cents - discount - coupon_discount + cart.tax_cents)
        return PricingSummary(
            items=items,
            subtotal_cents=cart.subtotal_cents,
            discount_cents=discount,
            coupon_code=code,
            coupon_discount_cents=coupon_discount,
            tax_cents=cart.tax_cents,
            total_cents=total,
            currency=cart.currency or self.currency,
        )

    def _settle_failed_payment(self, attempt: PaymentAttempt, exc: Exception) -> None:
        """Refund a captured attempt, otherwise record why it never captured.

        A capture is never refunded when the payment turned out to settle
        another order (``PaymentAlreadyUsed``).

        Errors here are logged and swallowed so the caller re-raises the
        error that aborted the checkout.
        """
        try:
            if attempt.captured and not isinstance(exc, PaymentAlreadyUsed):
                reason = f"checkout aborted: {getattr(exc, 'code', type(exc).__name__)}"
                self.payments.refund(attempt, reason)
            else:
                self.payments.release(attempt, exc)
        except Exception:
            logger.exception(
                "settling failed checkout payment raised",
                extra={"transaction": attempt.transaction_id, "captured": attempt.captured},
            )
