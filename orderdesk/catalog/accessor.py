"""Row access for categories and products.

Every method takes an already-open ``AsyncSession`` and runs inside the
caller's transaction. Writes return the number of affected rows; reads
return ``None`` when the row does not exist.
"""
from decimal import Decimal
from typing import Any, List, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from .model import Category, Product


class CategoryAccessor:
    async def get(self, session: AsyncSession, category_id: int) -> Optional[Category]:
        return await session.get(Category, category_id)

    async def list(self, session: AsyncSession) -> List[Category]:
        res = await session.execute(sa.select(Category).order_by(Category.id))
        return list(res.scalars().all())

    async def create(self, session: AsyncSession, name: str, description: Optional[str] = None) -> Category:
        category = Category(name=name, description=description)
        session.add(category)
        await session.flush()  # assign PK
        return category

    async def update(self, session: AsyncSession, category_id: int, **values: Any) -> int:
        stmt = sa.update(Category).where(Category.id == category_id).values(**values)
        res = await session.execute(stmt)
        return res.rowcount or 0

    async def delete(self, session: AsyncSession, category_id: int) -> int:
        res = await session.execute(sa.delete(Category).where(Category.id == category_id))
        return res.rowcount or 0

    async def exists(self, session: AsyncSession, category_id: int) -> bool:
        stmt = sa.select(sa.func.count(Category.id)).where(Category.id == category_id)
        return int((await session.execute(stmt)).scalar() or 0) > 0

    async def name_taken(self, session: AsyncSession, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = sa.select(sa.func.count(Category.id)).where(Category.name == name)
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return int((await session.execute(stmt)).scalar() or 0) > 0


class ProductAccessor:
    async def get(self, session: AsyncSession, product_id: int, for_update: bool = False) -> Optional[Product]:
        """Fetch a product row.

        With ``for_update`` the row is locked until the transaction ends on
        backends that support ``SELECT ... FOR UPDATE``; SQLite ignores it.
        """
        stmt = sa.select(Product).where(Product.id == product_id)
        if for_update:
            stmt = stmt.with_for_update()
        # populate_existing: never hand back a stale identity-map copy
        stmt = stmt.execution_options(populate_existing=True)
        res = await session.execute(stmt)
        return res.scalar_one_or_none()

    async def get_stock(self, session: AsyncSession, product_id: int) -> Optional[int]:
        stmt = sa.select(Product.stock).where(Product.id == product_id)
        row = (await session.execute(stmt)).first()
        return int(row[0]) if row else None

    async def list(self, session: AsyncSession, category_id: Optional[int] = None) -> List[Product]:
        stmt = sa.select(Product).order_by(Product.id)
        if category_id is not None:
            stmt = stmt.where(Product.category_id == category_id)
        res = await session.execute(stmt)
        return list(res.scalars().all())

    async def create(
        self,
        session: AsyncSession,
        name: str,
        price: Decimal,
        stock: int,
        description: Optional[str] = None,
        category_id: Optional[int] = None,
    ) -> Product:
        product = Product(
            name=name, description=description, price=price, stock=stock, category_id=category_id
        )
        session.add(product)
        await session.flush()  # assign PK
        return product

    async def update(self, session: AsyncSession, product_id: int, **values: Any) -> int:
        stmt = sa.update(Product).where(Product.id == product_id).values(**values)
        res = await session.execute(stmt)
        return res.rowcount or 0

    async def set_stock(self, session: AsyncSession, product_id: int, stock: int) -> int:
        return await self.update(session, product_id, stock=stock)

    async def decrement_stock(self, session: AsyncSession, product_id: int, quantity: int) -> int:
        """Take ``quantity`` units in one conditional write.

        Returns 1 when applied, 0 when the product is missing or holds fewer
        than ``quantity`` units at write time.
        """
        stmt = (
            sa.update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        res = await session.execute(stmt)
        return res.rowcount or 0

    async def delete(self, session: AsyncSession, product_id: int) -> int:
        res = await session.execute(sa.delete(Product).where(Product.id == product_id))
        return res.rowcount or 0
