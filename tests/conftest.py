"""
Shared fixtures: a fresh SQLite database file per test and a small catalog.
"""
from decimal import Decimal

import pytest
import pytest_asyncio
import sqlalchemy as sa

from orderdesk.catalog.events import StockPublisher
from orderdesk.catalog.model import Category, Product
from orderdesk.common.database import Database
from orderdesk.orders.model import Order, OrderItem


class RecordingPublisher(StockPublisher):
    """Publisher that remembers what it would have sent instead of using Redis."""

    def __init__(self):
        super().__init__(channel="test-stock", enabled=True)
        self.sent = []

    async def publish(self, product_id, stock):
        self.sent.append((product_id, stock))
        return True


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'orderdesk.db'}", lock_timeout=5.0)
    await db.init_db()
    yield db
    await db.dispose()


@pytest_asyncio.fixture
async def catalog(database):
    """Two products in one category: widget (9.99, 10 units) and gadget (14.50, 6 units)."""
    async with database.unit_of_work() as session:
        category = Category(name="Hardware", description="Tools and parts")
        session.add(category)
        await session.flush()
        widget = Product(name="Widget", price=Decimal("9.99"), stock=10, category_id=category.id)
        gadget = Product(name="Gadget", price=Decimal("14.50"), stock=6, category_id=category.id)
        session.add_all([widget, gadget])
        await session.flush()
        ids = {"category": category.id, "widget": widget.id, "gadget": gadget.id}
    return ids


@pytest.fixture
def publisher():
    return RecordingPublisher()


async def stock_of(database, product_id):
    async with database.unit_of_work() as session:
        res = await session.execute(sa.select(Product.stock).where(Product.id == product_id))
        return res.scalar_one()


async def row_counts(database):
    async with database.unit_of_work() as session:
        orders = (await session.execute(sa.select(sa.func.count(Order.id)))).scalar_one()
        items = (await session.execute(sa.select(sa.func.count(OrderItem.id)))).scalar_one()
    return orders, items
