"""
Checkout: turn a validated cart into a persisted order.

finalize() runs validate -> charge -> persist -> clear. Any failure before
persistence leaves no order behind and keeps the cart's lines; the only
change a failed attempt makes to the cart is re-pricing it from the
catalog. If the order insert fails after a successful charge, the cart is
cleared and OrderNotSavedError carries the payment reference.
"""
import logging
from datetime import date
from decimal import Decimal
from typing import Optional

from storefront.cart import AppliedCoupon, Cart
from storefront.discounts import ZERO, money
from storefront.errors import (
    EmptyCartError,
    NotFoundError,
    OrderNotSavedError,
    PaymentFailedError,
    PriceMismatchError,
)
from storefront.models import Order
from storefront.pricing import check_coupon

logger = logging.getLogger(__name__)


class CheckoutFinalizer:
    def __init__(self, catalog, coupons, orders, gateway, currency: str = "usd"):
        self.catalog = catalog
        self.coupons = coupons
        self.orders = orders
        self.gateway = gateway
        self.currency = currency

    async def validate(self, cart: Cart, today: Optional[date] = None) -> Cart:
        """Re-price every line and re-check the coupon against the stores."""
        if cart.is_empty:
            raise EmptyCartError()

        for product_id in list(cart.items):
            product = await self.catalog.get_product(product_id)
            if not product:
                raise NotFoundError(f"Product {product_id} is no longer available")
            if cart.reprice_line(product):
                logger.info("Cart line re-priced at checkout", extra={"product_id": product_id, "amount": product.price})

        if cart.coupon:
            coupon = await self.coupons.get_coupon_by_code(cart.coupon.code)
            check_coupon(coupon, cart.coupon.code, today)
            cart.coupon = AppliedCoupon(
                code=coupon.code,
                discount_type=coupon.discount_type,
                discount_value=coupon.discount_value,
            )

        cart.recompute_totals()
        return cart

    async def finalize(
        self,
        cart: Cart,
        customer: dict,
        expected_total: Optional[Decimal] = None,
        request_id: Optional[str] = None,
        today: Optional[date] = None,
    ) -> Order:
        await self.validate(cart, today)

        if expected_total is not None and money(expected_total) != cart.final_price:
            logger.warning(
                "Checkout total mismatch",
                extra={"amount": cart.final_price, "reason": f"expected {money(expected_total)}"},
            )
            raise PriceMismatchError(
                f"Order total is now {cart.final_price}, not {money(expected_total)}"
            )

        payment_reference = None
        if cart.final_price > ZERO:
            metadata = {"customer_email": customer["email"], "item_count": cart.total_quantity}
            if request_id:
                metadata["request_id"] = request_id
            result = await self.gateway.charge(cart.final_price, self.currency, metadata)
            if not result.success:
                logger.warning("Payment failed", extra={"amount": cart.final_price, "reason": result.reason})
                raise PaymentFailedError(result.reason or "Payment failed")
            payment_reference = result.reference

        snapshot = {
            "customer_email": customer["email"],
            "customer_name": customer.get("name"),
            "items": [
                {
                    "product_id": line.product_id,
                    "name": line.name,
                    "quantity": line.quantity,
                    "unit_price": str(line.unit_price),
                    "is_digital": line.is_digital,
                }
                for line in cart.items.values()
            ],
            "subtotal": cart.subtotal,
            "coupon_code": cart.coupon.code if cart.coupon else None,
            "discount_amount": cart.discount,
            "total_amount": cart.final_price,
            "payment_reference": payment_reference,
        }
        try:
            order = await self.orders.create_order(snapshot)
        except Exception as exc:
            # Money has moved; never leave a cart that would charge again
            logger.error(
                "Order not saved after payment",
                extra={"payment_reference": payment_reference, "amount": cart.final_price},
                exc_info=True,
            )
            cart.clear()
            detail = OrderNotSavedError.default_detail
            if payment_reference:
                detail = f"{detail} (payment reference {payment_reference})"
            raise OrderNotSavedError(detail) from exc
        logger.info("Order created", extra={"order_id": order.id, "amount": order.total_amount})

        cart.clear()
        return order
