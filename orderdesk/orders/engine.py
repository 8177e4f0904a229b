"""Order placement: stock check, decrement and order persistence in one transaction.

Concurrent placements against the same product are serialized by the
conditional decrement in ``ProductAccessor.decrement_stock``; on backends with
row locks the product rows are additionally locked when first read. A
placement either commits the order, its lines and every stock decrement, or
leaves the store untouched.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..catalog.accessor import ProductAccessor
from ..catalog.model import Product
from ..common.database import Database
from ..common.errors import (
    Contention,
    InsufficientStock,
    InvalidOrder,
    OrderDeskError,
    ProductNotFound,
    StorageFailure,
    translate_storage_error,
)
from .accessor import OrderAccessor, OrderItemAccessor
from .model import Order, OrderItem
from .schemas import LineRequest, OrderShell, PlacedLine, PlacedOrder, as_utc

_logger = logging.getLogger(__name__)


class StockLedger(Protocol):
    async def get(self, session: AsyncSession, product_id: int, for_update: bool = False) -> Optional[Product]:
        ...

    async def get_stock(self, session: AsyncSession, product_id: int) -> Optional[int]:
        ...

    async def decrement_stock(self, session: AsyncSession, product_id: int, quantity: int) -> int:
        ...


class OrderHeaders(Protocol):
    async def create(self, session: AsyncSession, placed_at: datetime, total: Decimal = ...) -> Order:
        ...

    async def update_total(self, session: AsyncSession, order_id: int, total: Decimal) -> int:
        ...


class OrderLines(Protocol):
    async def create(
        self, session: AsyncSession, order_id: int, product_id: int, quantity: int, subtotal: Decimal
    ) -> OrderItem:
        ...


def validate_request(shell: OrderShell, lines: Sequence[LineRequest]) -> List[LineRequest]:
    if shell.total != 0:
        raise InvalidOrder("order total is derived from its lines and must start at 0")
    if not lines:
        raise InvalidOrder("an order needs at least one line")
    for line in lines:
        if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity <= 0:
            raise InvalidOrder(
                f"quantity must be a positive integer, got {line.quantity!r}",
                product_id=line.product_id,
            )
        if isinstance(line.product_id, bool) or not isinstance(line.product_id, int):
            raise InvalidOrder(f"product id must be an integer, got {line.product_id!r}")
    return list(lines)


def aggregate_demand(lines: Sequence[LineRequest]) -> Dict[int, int]:
    """Total requested quantity per product, in first-appearance order."""
    demand: Dict[int, int] = {}
    for line in lines:
        demand[line.product_id] = demand.get(line.product_id, 0) + line.quantity
    return demand


class OrderPlacementEngine:
    def __init__(
        self,
        database: Database,
        inventory: Optional[StockLedger] = None,
        orders: Optional[OrderHeaders] = None,
        order_lines: Optional[OrderLines] = None,
    ) -> None:
        self._database = database
        self._inventory = inventory or ProductAccessor()
        self._orders = orders or OrderAccessor()
        self._order_lines = order_lines or OrderItemAccessor()

    async def place_order(self, shell: OrderShell, lines: Sequence[LineRequest]) -> PlacedOrder:
        """Place an order atomically.

        Raises InvalidOrder, ProductNotFound or InsufficientStock when the
        request cannot be honoured, Contention when a lock could not be taken
        in time or a concurrent placement took the stock first, and
        StorageFailure for any other database error. Nothing is written in
        any of those cases.
        """
        requests = validate_request(shell, lines)
        demand = aggregate_demand(requests)
        placed_at = as_utc(shell.placed_at)

        try:
            async with self._database.unit_of_work() as session:
                prices = await self._reserve(session, demand)

                order = await self._orders.create(session, placed_at)
                placed: List[PlacedLine] = []
                total = Decimal("0")
                for line in requests:
                    subtotal = prices[line.product_id] * line.quantity
                    item = await self._order_lines.create(
                        session, order.id, line.product_id, line.quantity, subtotal
                    )
                    placed.append(PlacedLine(item.id, line.product_id, line.quantity, subtotal))
                    total += subtotal

                if await self._orders.update_total(session, order.id, total) != 1:
                    raise StorageFailure(f"order {order.id} disappeared before its total was written")
        except SQLAlchemyError as exc:
            raise translate_storage_error(exc) from exc
        except OrderDeskError as exc:
            _logger.warning("Order rejected | error=%s detail=%s", exc.code, exc.message)
            raise

        _logger.info(
            "Order placed | order_id=%s lines=%s total=%s products=%s",
            order.id, len(placed), total, list(demand),
        )
        return PlacedOrder(order.id, placed_at, total, tuple(placed))

    async def _reserve(self, session: AsyncSession, demand: Dict[int, int]) -> Dict[int, Decimal]:
        """Validate and take stock for every product; return the unit price seen for each."""
        products: Dict[int, Optional[Product]] = {}
        # ascending id so concurrent placements lock rows in the same order
        for product_id in sorted(demand):
            products[product_id] = await self._inventory.get(session, product_id, for_update=True)

        prices: Dict[int, Decimal] = {}
        for product_id in demand:
            product = products[product_id]
            if product is None:
                raise ProductNotFound(product_id)
            prices[product_id] = Decimal(product.price)

        for product_id, requested in demand.items():
            available = products[product_id].stock
            if requested > available:
                raise InsufficientStock(product_id, requested, available)

        for product_id in sorted(demand):
            requested = demand[product_id]
            if await self._inventory.decrement_stock(session, product_id, requested) == 0:
                await self._reject_lost_race(session, product_id, requested)
        return prices

    async def _reject_lost_race(self, session: AsyncSession, product_id: int, requested: int) -> None:
        # The row changed between our read and the conditional write.
        current = await self._inventory.get_stock(session, product_id)
        if current is None:
            raise ProductNotFound(product_id)
        if current < requested:
            raise InsufficientStock(product_id, requested, current)
        raise Contention(f"stock of product {product_id} changed concurrently")
