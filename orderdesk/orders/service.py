import logging
from datetime import datetime
from typing import Iterable, List, Optional

from prometheus_client import Counter
from sqlalchemy.exc import SQLAlchemyError

from ..catalog.accessor import ProductAccessor
from ..catalog.events import StockPublisher
from ..common.database import Database
from ..common.errors import OrderDeskError, OrderNotFound, translate_storage_error
from .accessor import OrderAccessor, OrderItemAccessor
from .engine import OrderPlacementEngine
from .model import Order
from .schemas import LineRequest, OrderShell, PlacedLine, PlacedOrder, as_utc

_logger = logging.getLogger(__name__)

ORDER_PLACEMENTS = Counter(
    "order_placements_total", "Order placement attempts by outcome", ["outcome"]
)


class OrderService:
    def __init__(
        self,
        database: Database,
        publisher: Optional[StockPublisher] = None,
        engine: Optional[OrderPlacementEngine] = None,
    ) -> None:
        self._database = database
        self._publisher = publisher or StockPublisher()
        self._engine = engine or OrderPlacementEngine(database)
        self._orders = OrderAccessor()
        self._order_items = OrderItemAccessor()
        self._products = ProductAccessor()

    async def place_order(self, lines: Iterable[LineRequest], placed_at: Optional[datetime] = None) -> PlacedOrder:
        shell = OrderShell() if placed_at is None else OrderShell(placed_at=placed_at)
        try:
            placed = await self._engine.place_order(shell, list(lines))
        except OrderDeskError as exc:
            ORDER_PLACEMENTS.labels(outcome=exc.code).inc()
            raise
        ORDER_PLACEMENTS.labels(outcome="placed").inc()
        await self._announce_stock({line.product_id for line in placed.lines})
        return placed

    async def _announce_stock(self, product_ids: Iterable[int]) -> None:
        if not self._publisher.enabled:
            return
        # committed levels, re-read after the placement transaction closed
        try:
            async with self._database.unit_of_work() as session:
                levels = {pid: await self._products.get_stock(session, pid) for pid in sorted(product_ids)}
        except SQLAlchemyError as e:
            _logger.warning("Could not read stock for notification | err=%s", e)
            return
        for product_id, stock in levels.items():
            if stock is not None:
                await self._publisher.publish(product_id, stock)

    async def get_order(self, order_id: int) -> PlacedOrder:
        try:
            async with self._database.unit_of_work() as session:
                order = await self._orders.get(session, order_id)
                if order is None:
                    raise OrderNotFound(order_id)
                items = await self._order_items.list_detail_for_order(session, order_id)
        except SQLAlchemyError as exc:
            raise translate_storage_error(exc) from exc
        lines = tuple(
            PlacedLine(item.id, item.product_id, item.quantity, item.subtotal, product_name, category_name)
            for item, product_name, category_name in items
        )
        # SQLite hands DateTime columns back naive
        return PlacedOrder(order.id, as_utc(order.placed_at), order.total, lines)

    async def list_orders(self) -> List[Order]:
        try:
            async with self._database.unit_of_work() as session:
                return await self._orders.list(session)
        except SQLAlchemyError as exc:
            raise translate_storage_error(exc) from exc
