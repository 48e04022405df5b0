import logging
from datetime import date
from typing import Optional

from storefront.cart import AppliedCoupon, Cart
from storefront.errors import InvalidCouponError

logger = logging.getLogger(__name__)


def check_coupon(coupon, code: str, today: Optional[date] = None):
    """Raise InvalidCouponError unless `coupon` exists, is active and unexpired."""
    today = today or date.today()
    if coupon is None:
        raise InvalidCouponError(f"Coupon {code} does not exist")
    if not coupon.is_active:
        raise InvalidCouponError(f"Coupon {coupon.code} is no longer active")
    if today > coupon.expiry_date:
        raise InvalidCouponError(f"Coupon {coupon.code} expired on {coupon.expiry_date.isoformat()}")
    return coupon


async def apply_coupon(cart: Cart, coupons, code: str, today: Optional[date] = None) -> Cart:
    """Look up `code` and make it the cart's only coupon."""
    coupon = await coupons.get_coupon_by_code(code)
    try:
        check_coupon(coupon, code, today)
    except InvalidCouponError:
        logger.info("Coupon rejected", extra={"coupon_code": code})
        raise

    cart.coupon = AppliedCoupon(
        code=coupon.code,
        discount_type=coupon.discount_type,
        discount_value=coupon.discount_value,
    )
    cart.recompute_totals()
    logger.info("Coupon applied", extra={"coupon_code": coupon.code, "amount": cart.discount})
    return cart


def remove_coupon(cart: Cart) -> Cart:
    cart.coupon = None
    cart.recompute_totals()
    return cart
