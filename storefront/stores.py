"""
Relational stores behind the cart and checkout pipeline.

Each store wraps one AsyncSession for the duration of a request. Reads
return ORM rows. CartStore keeps session carts server-side; OrderStore
commits each order in a single transaction.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.errors import InvalidStatusTransitionError, NotFoundError
from storefront.models import ORDER_TRANSITIONS, CartSession, Coupon, Order, OrderStatus, Product

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return code.strip().upper()


class CatalogStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_product(self, product_id: int) -> Optional[Product]:
        return await self.db.get(Product, product_id)

    async def list_products(self, skip: int = 0, limit: int = 20, search: Optional[str] = None) -> List[Product]:
        query = select(Product).order_by(Product.id)
        if search:
            query = query.where(Product.name.ilike(f"%{search}%"))
        result = await self.db.execute(query.offset(skip).limit(limit))
        return list(result.scalars().all())


class CouponStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_coupon_by_code(self, code: str) -> Optional[Coupon]:
        result = await self.db.execute(select(Coupon).where(Coupon.code == normalize_code(code)))
        return result.scalar_one_or_none()

    async def list_coupons(self) -> List[Coupon]:
        result = await self.db.execute(select(Coupon).order_by(Coupon.code))
        return list(result.scalars().all())


class CartStore:
    """Key-value cart persistence keyed by the opaque token held in the session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, token: str) -> Optional[dict]:
        row = await self.db.get(CartSession, token)
        if not row:
            return None
        try:
            return json.loads(row.data)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable cart row")
            return None

    async def put(self, token: str, data: dict) -> None:
        row = await self.db.get(CartSession, token)
        if row:
            row.data = json.dumps(data)
            row.updated_at = datetime.utcnow()
        else:
            self.db.add(CartSession(token=token, data=json.dumps(data)))
        await self.db.commit()

    async def delete(self, token: str) -> None:
        await self.db.execute(delete(CartSession).where(CartSession.token == token))
        await self.db.commit()

    async def purge_expired(self, max_age_seconds: int) -> int:
        cutoff = datetime.utcnow() - timedelta(seconds=max_age_seconds)
        result = await self.db.execute(delete(CartSession).where(CartSession.updated_at < cutoff))
        await self.db.commit()
        return result.rowcount


class OrderStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_order(self, snapshot: dict) -> Order:
        """Insert one order atomically. `snapshot["items"]` is stored as JSON."""
        order = Order(
            customer_email=snapshot["customer_email"],
            customer_name=snapshot.get("customer_name"),
            products_ordered=json.dumps(snapshot["items"]),
            subtotal=snapshot["subtotal"],
            coupon_code=snapshot.get("coupon_code"),
            discount_amount=snapshot["discount_amount"],
            total_amount=snapshot["total_amount"],
            payment_reference=snapshot.get("payment_reference"),
            status=OrderStatus.PENDING,
        )
        self.db.add(order)
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        await self.db.refresh(order)
        return order

    async def get_order(self, order_id: int) -> Optional[Order]:
        return await self.db.get(Order, order_id)

    async def list_orders(self, skip: int = 0, limit: int = 20, status: Optional[OrderStatus] = None) -> List[Order]:
        query = select(Order).order_by(Order.ordered_at.desc(), Order.id.desc())
        if status:
            query = query.where(Order.status == status)
        result = await self.db.execute(query.offset(skip).limit(limit))
        return list(result.scalars().all())

    async def update_status(self, order_id: int, new_status: OrderStatus) -> Order:
        order = await self.get_order(order_id)
        if not order:
            raise NotFoundError("Order not found")

        if ORDER_TRANSITIONS.get(order.status) != new_status:
            raise InvalidStatusTransitionError(
                f"Cannot move order from {order.status.value} to {new_status.value}"
            )

        order.status = new_status
        order.updated_at = datetime.utcnow()
        await self.db.commit()
        await self.db.refresh(order)
        logger.info("Order status updated", extra={"order_id": order_id, "reason": new_status.value})
        return order
