from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from ..catalog.model import Category, Product
from .model import Order, OrderItem


class OrderAccessor:
    async def create(self, session: AsyncSession, placed_at: datetime, total: Decimal = Decimal("0")) -> Order:
        order = Order(placed_at=placed_at, total=total)
        session.add(order)
        await session.flush()  # assign PK
        return order

    async def get(self, session: AsyncSession, order_id: int) -> Optional[Order]:
        return await session.get(Order, order_id)

    async def list(self, session: AsyncSession) -> List[Order]:
        res = await session.execute(sa.select(Order).order_by(Order.id))
        return list(res.scalars().all())

    async def update_total(self, session: AsyncSession, order_id: int, total: Decimal) -> int:
        stmt = (
            sa.update(Order)
            .where(Order.id == order_id)
            .values(total=total)
            .execution_options(synchronize_session=False)
        )
        res = await session.execute(stmt)
        return res.rowcount or 0


class OrderItemAccessor:
    async def create(
        self, session: AsyncSession, order_id: int, product_id: int, quantity: int, subtotal: Decimal
    ) -> OrderItem:
        item = OrderItem(order_id=order_id, product_id=product_id, quantity=quantity, subtotal=subtotal)
        session.add(item)
        await session.flush()
        return item

    async def list_detail_for_order(
        self, session: AsyncSession, order_id: int
    ) -> List[Tuple[OrderItem, str, Optional[str]]]:
        """Lines of an order with the product name and, when it has one, the category name."""
        stmt = (
            sa.select(OrderItem, Product.name, Category.name)
            .join(Product, Product.id == OrderItem.product_id)
            .outerjoin(Category, Category.id == Product.category_id)
            .where(OrderItem.order_id == order_id)
            .order_by(OrderItem.id)
        )
        res = await session.execute(stmt)
        return [(item, product_name, category_name) for item, product_name, category_name in res.all()]
