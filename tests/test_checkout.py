"""
Tests for storefront/checkout.py -- CheckoutFinalizer.

Uses in-memory SQLite stores and a scripted payment gateway.
"""

import json
import logging
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from storefront.cart import Cart
from storefront.checkout import CheckoutFinalizer
from storefront.discounts import DiscountType
from storefront.errors import (
    EmptyCartError,
    InvalidCouponError,
    NotFoundError,
    OrderNotSavedError,
    PaymentFailedError,
    PriceMismatchError,
)
from storefront.models import Order, OrderStatus
from storefront.pricing import apply_coupon
from storefront.stores import CatalogStore, CouponStore, OrderStore

CUSTOMER = {"email": "shopper@example.com", "name": "Sam Shopper"}


def finalizer_for(db, gateway):
    return CheckoutFinalizer(CatalogStore(db), CouponStore(db), OrderStore(db), gateway)


async def order_count(db) -> int:
    return await db.scalar(select(func.count()).select_from(Order))


class TestSuccessfulCheckout:
    @pytest.mark.asyncio
    async def test_fixed_coupon_scenario(self, db, make_product, make_coupon, gateway):
        widget = await make_product(price="10.00")
        await make_coupon(code="SAVE5", discount_type=DiscountType.FIXED, value="5")
        cart = Cart()
        cart.add_item(widget, 3)
        await apply_coupon(cart, CouponStore(db), "SAVE5")
        assert cart.final_price == Decimal("25.00")

        order = await finalizer_for(db, gateway).finalize(cart, CUSTOMER)

        assert order.total_amount == Decimal("25.00")
        assert order.subtotal == Decimal("30.00")
        assert order.discount_amount == Decimal("5.00")
        assert order.coupon_code == "SAVE5"
        assert order.status == OrderStatus.PENDING
        assert order.customer_email == "shopper@example.com"
        assert order.payment_reference == "ch_1"
        assert cart.is_empty
        assert cart.coupon is None
        assert gateway.charges[0]["amount"] == Decimal("25.00")
        assert gateway.charges[0]["currency"] == "usd"

    @pytest.mark.asyncio
    async def test_line_items_snapshot(self, db, make_product, gateway):
        widget = await make_product(name="Widget", price="10.00")
        ebook = await make_product(name="Ebook", price="4.50", is_digital=True)
        cart = Cart()
        cart.add_item(widget, 2)
        cart.add_item(ebook)

        order = await finalizer_for(db, gateway).finalize(cart, CUSTOMER)

        items = json.loads(order.products_ordered)
        assert items == [
            {"product_id": widget.id, "name": "Widget", "quantity": 2, "unit_price": "10.00", "is_digital": False},
            {"product_id": ebook.id, "name": "Ebook", "quantity": 1, "unit_price": "4.50", "is_digital": True},
        ]
        assert order.total_amount == Decimal("24.50")

    @pytest.mark.asyncio
    async def test_uses_current_catalog_price(self, db, make_product, gateway):
        widget = await make_product(price="20.00")
        cart = Cart()
        cart.add_item(widget)

        widget.price = Decimal("25.00")
        await db.commit()

        order = await finalizer_for(db, gateway).finalize(cart, CUSTOMER)

        assert order.total_amount == Decimal("25.00")
        assert json.loads(order.products_ordered)[0]["unit_price"] == "25.00"
        assert gateway.charges[0]["amount"] == Decimal("25.00")

    @pytest.mark.asyncio
    async def test_percentage_coupon_recomputed_on_new_price(self, db, make_product, make_coupon, gateway):
        widget = await make_product(price="20.00")
        await make_coupon(code="TENPCT", discount_type=DiscountType.PERCENTAGE, value="10")
        cart = Cart()
        cart.add_item(widget)
        await apply_coupon(cart, CouponStore(db), "TENPCT")

        widget.price = Decimal("30.00")
        await db.commit()

        order = await finalizer_for(db, gateway).finalize(cart, CUSTOMER)
        assert order.discount_amount == Decimal("3.00")
        assert order.total_amount == Decimal("27.00")

    @pytest.mark.asyncio
    async def test_zero_total_skips_gateway(self, db, make_product, make_coupon, gateway):
        widget = await make_product(price="8.00")
        await make_coupon(code="FREE", discount_type=DiscountType.PERCENTAGE, value="100")
        cart = Cart()
        cart.add_item(widget)
        await apply_coupon(cart, CouponStore(db), "FREE")

        order = await finalizer_for(db, gateway).finalize(cart, CUSTOMER)

        assert order.total_amount == Decimal("0.00")
        assert order.payment_reference is None
        assert gateway.charges == []

    @pytest.mark.asyncio
    async def test_matching_expected_total(self, db, make_product, gateway):
        widget = await make_product(price="10.00")
        cart = Cart()
        cart.add_item(widget, 3)

        order = await finalizer_for(db, gateway).finalize(cart, CUSTOMER, expected_total=Decimal("30"))
        assert order.total_amount == Decimal("30.00")


class TestFailedCheckout:
    @pytest.mark.asyncio
    async def test_empty_cart(self, db, gateway):
        with pytest.raises(EmptyCartError):
            await finalizer_for(db, gateway).finalize(Cart(), CUSTOMER)
        assert await order_count(db) == 0
        assert gateway.charges == []

    @pytest.mark.asyncio
    async def test_payment_failure_keeps_cart(self, db, make_product, declined_gateway):
        widget = await make_product(price="10.00")
        cart = Cart()
        cart.add_item(widget, 2)

        with pytest.raises(PaymentFailedError) as exc_info:
            await finalizer_for(db, declined_gateway).finalize(cart, CUSTOMER)

        assert exc_info.value.detail == "Insufficient funds"
        assert exc_info.value.status_code == 402
        assert await order_count(db) == 0
        assert cart.items[widget.id].quantity == 2
        assert cart.final_price == Decimal("20.00")

    @pytest.mark.asyncio
    async def test_price_mismatch(self, db, make_product, gateway):
        widget = await make_product(price="20.00")
        cart = Cart()
        cart.add_item(widget)
        confirmed = cart.final_price

        widget.price = Decimal("25.00")
        await db.commit()

        with pytest.raises(PriceMismatchError):
            await finalizer_for(db, gateway).finalize(cart, CUSTOMER, expected_total=confirmed)

        assert await order_count(db) == 0
        assert gateway.charges == []
        # Cart now shows the current price
        assert cart.final_price == Decimal("25.00")

    @pytest.mark.asyncio
    async def test_product_removed_from_catalog(self, db, make_product, gateway):
        widget = await make_product(price="10.00")
        cart = Cart()
        cart.add_item(widget)
        await db.delete(widget)
        await db.commit()

        with pytest.raises(NotFoundError):
            await finalizer_for(db, gateway).finalize(cart, CUSTOMER)
        assert await order_count(db) == 0

    @pytest.mark.asyncio
    async def test_coupon_deactivated_before_checkout(self, db, make_product, make_coupon, gateway):
        widget = await make_product(price="10.00")
        coupon = await make_coupon(code="SAVE5")
        cart = Cart()
        cart.add_item(widget)
        await apply_coupon(cart, CouponStore(db), "SAVE5")

        coupon.is_active = False
        await db.commit()

        with pytest.raises(InvalidCouponError):
            await finalizer_for(db, gateway).finalize(cart, CUSTOMER)
        assert await order_count(db) == 0
        assert not cart.is_empty

    @pytest.mark.asyncio
    async def test_coupon_expired_before_checkout(self, db, make_product, make_coupon, gateway):
        widget = await make_product(price="10.00")
        await make_coupon(code="SOON", expiry_date=date.today() + timedelta(days=1))
        cart = Cart()
        cart.add_item(widget)
        await apply_coupon(cart, CouponStore(db), "SOON")

        with pytest.raises(InvalidCouponError):
            await finalizer_for(db, gateway).finalize(
                cart, CUSTOMER, today=date.today() + timedelta(days=2)
            )
        assert gateway.charges == []


class BrokenOrderStore:
    """Order store whose insert always fails."""

    async def create_order(self, snapshot):
        raise SQLAlchemyError("disk I/O error")


class TestOrderNotSaved:
    @pytest.mark.asyncio
    async def test_retry_does_not_charge_twice(self, db, make_product, gateway):
        widget = await make_product(price="10.00")
        cart = Cart()
        cart.add_item(widget)
        finalizer = CheckoutFinalizer(CatalogStore(db), CouponStore(db), BrokenOrderStore(), gateway)

        with pytest.raises(OrderNotSavedError) as exc_info:
            await finalizer.finalize(cart, CUSTOMER)

        assert exc_info.value.status_code == 500
        assert "ch_1" in exc_info.value.detail
        assert cart.is_empty

        with pytest.raises(EmptyCartError):
            await finalizer.finalize(cart, CUSTOMER)
        assert [c["amount"] for c in gateway.charges] == [Decimal("10.00")]

    @pytest.mark.asyncio
    async def test_payment_reference_logged(self, db, make_product, gateway, caplog):
        widget = await make_product(price="10.00")
        cart = Cart()
        cart.add_item(widget)
        finalizer = CheckoutFinalizer(CatalogStore(db), CouponStore(db), BrokenOrderStore(), gateway)

        with caplog.at_level(logging.ERROR, logger="storefront.checkout"):
            with pytest.raises(OrderNotSavedError):
                await finalizer.finalize(cart, CUSTOMER)

        record = next(r for r in caplog.records if r.levelno == logging.ERROR)
        assert record.payment_reference == "ch_1"
        assert record.amount == Decimal("10.00")


class TestCouponRefresh:
    @pytest.mark.asyncio
    async def test_uses_stored_coupon_value(self, db, make_product, make_coupon, gateway):
        widget = await make_product(price="20.00")
        coupon = await make_coupon(code="SAVE5", discount_type=DiscountType.FIXED, value="5")
        cart = Cart()
        cart.add_item(widget)
        await apply_coupon(cart, CouponStore(db), "SAVE5")

        coupon.discount_type = DiscountType.PERCENTAGE
        coupon.discount_value = Decimal("50")
        await db.commit()

        order = await finalizer_for(db, gateway).finalize(cart, CUSTOMER)
        assert order.discount_amount == Decimal("10.00")
        assert order.total_amount == Decimal("10.00")
