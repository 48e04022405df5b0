"""
Session shopping cart.

The cart is plain state: route handlers load it with load_cart(), mutate
it through the methods below and write it back with save_cart(). The
session cookie only carries an opaque token; the cart itself lives in a
CartStore, never in the orders tables. Every mutation ends in
recompute_totals(), so the derived fields always agree with the lines and
the applied coupon.
"""
import logging
import secrets
from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from storefront.discounts import DiscountType, ZERO, compute_discount, money
from storefront.errors import InvalidQuantityError, NotFoundError

logger = logging.getLogger(__name__)

SESSION_KEY = "cart"


class CartLine(BaseModel):
    product_id: int
    name: str
    unit_price: Decimal
    quantity: int = Field(..., gt=0)
    is_digital: bool = False

    @property
    def line_total(self) -> Decimal:
        return money(self.unit_price * self.quantity)


class AppliedCoupon(BaseModel):
    code: str
    discount_type: DiscountType
    discount_value: Decimal


class Cart(BaseModel):
    items: Dict[int, CartLine] = {}
    total_quantity: int = 0
    subtotal: Decimal = ZERO
    coupon: Optional[AppliedCoupon] = None
    discount: Decimal = ZERO
    final_price: Decimal = ZERO

    @property
    def is_empty(self) -> bool:
        return not self.items

    def add_item(self, product, quantity: int = 1) -> None:
        """Add `quantity` units of `product`, merging with an existing line."""
        if quantity <= 0:
            raise InvalidQuantityError()

        line = self.items.get(product.id)
        if line:
            line.quantity += quantity
            # Refresh the display snapshot; checkout re-prices from the catalog anyway
            line.unit_price = money(product.price)
            line.name = product.name
        else:
            self.items[product.id] = CartLine(
                product_id=product.id,
                name=product.name,
                unit_price=money(product.price),
                quantity=quantity,
                is_digital=bool(product.is_digital),
            )
        self.recompute_totals()

    def update_quantity(self, product_id: int, quantity: int) -> None:
        if quantity <= 0:
            self.remove_item(product_id)
            return

        line = self.items.get(product_id)
        if not line:
            raise NotFoundError(f"Product {product_id} is not in the cart")
        line.quantity = quantity
        self.recompute_totals()

    def remove_item(self, product_id: int) -> None:
        self.items.pop(product_id, None)
        self.recompute_totals()

    def clear(self) -> None:
        self.items = {}
        self.coupon = None
        self.recompute_totals()

    def reprice_line(self, product) -> bool:
        """Overwrite a line's snapshot from the catalog. Returns True if the price moved."""
        line = self.items[product.id]
        current = money(product.price)
        changed = line.unit_price != current
        line.unit_price = current
        line.name = product.name
        line.is_digital = bool(product.is_digital)
        return changed

    def recompute_totals(self) -> None:
        self.total_quantity = sum(line.quantity for line in self.items.values())
        self.subtotal = money(sum((line.line_total for line in self.items.values()), ZERO))
        if self.coupon:
            self.discount = compute_discount(
                self.coupon.discount_type, self.coupon.discount_value, self.subtotal
            )
        else:
            self.discount = ZERO
        self.final_price = max(self.subtotal - self.discount, ZERO)


async def add_product(cart: Cart, catalog, product_id: int, quantity: int = 1) -> Cart:
    product = await catalog.get_product(product_id)
    if not product:
        raise NotFoundError(f"Product {product_id} not found")
    cart.add_item(product, quantity)
    logger.info("Cart item added", extra={"product_id": product_id, "quantity": quantity})
    return cart


async def load_cart(session: dict, carts) -> Cart:
    token = session.get(SESSION_KEY)
    if not isinstance(token, str):
        return Cart()
    data = await carts.get(token)
    if not data:
        return Cart()
    try:
        cart = Cart.model_validate(data)
    except ValidationError:
        logger.warning("Discarding unreadable cart")
        return Cart()
    cart.recompute_totals()
    return cart


async def save_cart(session: dict, carts, cart: Cart) -> None:
    token = session.get(SESSION_KEY)
    if not isinstance(token, str):
        token = None

    if cart.is_empty and not cart.coupon:
        if token:
            await carts.delete(token)
        session.pop(SESSION_KEY, None)
        return

    if not token:
        token = secrets.token_urlsafe(32)
        session[SESSION_KEY] = token
    await carts.put(token, cart.model_dump(mode="json"))
