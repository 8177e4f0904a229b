"""
Tests for the order placement engine.

Covers totals and stock bookkeeping on success, the all-or-nothing guarantee
on every failure path (business rejection, lost race, storage error,
cancellation) and two placements racing for the same stock.
"""
import asyncio
from decimal import Decimal

import pytest
import sqlalchemy as sa

from conftest import row_counts, stock_of
from orderdesk.catalog.accessor import ProductAccessor
from orderdesk.common.errors import (
    Contention,
    InsufficientStock,
    InvalidOrder,
    ProductNotFound,
    StorageFailure,
)
from orderdesk.orders.accessor import OrderItemAccessor
from orderdesk.orders.engine import OrderPlacementEngine, aggregate_demand
from orderdesk.orders.schemas import LineRequest, OrderShell, PlacedOrder
from orderdesk.orders.service import OrderService


async def test_successful_placement_totals_and_stock(database, catalog):
    engine = OrderPlacementEngine(database)
    widget, gadget = catalog["widget"], catalog["gadget"]

    placed = await engine.place_order(
        OrderShell(), [LineRequest(widget, 3), LineRequest(gadget, 2)]
    )

    assert [(l.product_id, l.quantity, l.subtotal) for l in placed.lines] == [
        (widget, 3, Decimal("29.97")),
        (gadget, 2, Decimal("29.00")),
    ]
    assert placed.total == Decimal("58.97")
    assert placed.total == sum(l.subtotal for l in placed.lines)
    assert await stock_of(database, widget) == 7
    assert await stock_of(database, gadget) == 4
    assert await row_counts(database) == (1, 2)


async def test_repeated_product_lines_decrement_combined_demand(database, catalog):
    engine = OrderPlacementEngine(database)
    widget = catalog["widget"]

    placed = await engine.place_order(OrderShell(), [LineRequest(widget, 4), LineRequest(widget, 5)])

    assert len(placed.lines) == 2
    assert placed.total == Decimal("89.91")
    assert await stock_of(database, widget) == 1


async def test_repeated_lines_checked_against_combined_demand(database, catalog):
    engine = OrderPlacementEngine(database)
    gadget = catalog["gadget"]  # 6 in stock

    with pytest.raises(InsufficientStock) as excinfo:
        await engine.place_order(OrderShell(), [LineRequest(gadget, 3), LineRequest(gadget, 4)])

    assert (excinfo.value.product_id, excinfo.value.requested, excinfo.value.available) == (gadget, 7, 6)
    assert await stock_of(database, gadget) == 6
    assert await row_counts(database) == (0, 0)


async def test_insufficient_stock_leaves_store_unchanged(database, catalog):
    engine = OrderPlacementEngine(database)
    widget, gadget = catalog["widget"], catalog["gadget"]

    with pytest.raises(InsufficientStock):
        await engine.place_order(OrderShell(), [LineRequest(widget, 1), LineRequest(gadget, 50)])

    assert await stock_of(database, widget) == 10
    assert await stock_of(database, gadget) == 6
    assert await row_counts(database) == (0, 0)


async def test_unknown_product_fails_even_after_valid_lines(database, catalog):
    engine = OrderPlacementEngine(database)
    widget = catalog["widget"]

    with pytest.raises(ProductNotFound) as excinfo:
        await engine.place_order(OrderShell(), [LineRequest(widget, 2), LineRequest(9999, 1)])

    assert excinfo.value.product_id == 9999
    assert await stock_of(database, widget) == 10
    assert await row_counts(database) == (0, 0)


async def test_unknown_product_reported_before_stock_shortage(database, catalog):
    engine = OrderPlacementEngine(database)

    with pytest.raises(ProductNotFound):
        await engine.place_order(OrderShell(), [LineRequest(catalog["gadget"], 100), LineRequest(424242, 1)])


@pytest.mark.parametrize(
    "shell, lines",
    [
        (OrderShell(), []),
        (OrderShell(), [LineRequest(1, 0)]),
        (OrderShell(), [LineRequest(1, -2)]),
        (OrderShell(), [LineRequest(1, True)]),
        (OrderShell(total=Decimal("5")), [LineRequest(1, 1)]),
    ],
)
async def test_malformed_requests_are_rejected(database, catalog, shell, lines):
    engine = OrderPlacementEngine(database)

    with pytest.raises(InvalidOrder):
        await engine.place_order(shell, lines)

    assert await row_counts(database) == (0, 0)


async def test_price_captured_at_placement(database, catalog):
    service = OrderService(database)
    widget = catalog["widget"]
    placed = await OrderPlacementEngine(database).place_order(OrderShell(), [LineRequest(widget, 2)])

    async with database.unit_of_work() as session:
        await ProductAccessor().update(session, widget, price=Decimal("100.00"))

    stored = await service.get_order(placed.id)
    assert stored.lines[0].subtotal == Decimal("19.98")
    assert stored.total == Decimal("19.98")


class _StockTakenMeanwhile(ProductAccessor):
    """Another caller empties most of the stock right after our read."""

    def __init__(self, database, product_id, left):
        self._database = database
        self._product_id = product_id
        self._left = left
        self.fired = False

    async def get(self, session, product_id, for_update=False):
        product = await super().get(session, product_id, for_update=for_update)
        if product_id == self._product_id and not self.fired:
            self.fired = True
            async with self._database.unit_of_work() as other:
                await ProductAccessor().set_stock(other, product_id, self._left)
        return product


async def test_conditional_decrement_rejects_stale_read(database, catalog):
    gadget = catalog["gadget"]
    inventory = _StockTakenMeanwhile(database, gadget, left=1)
    engine = OrderPlacementEngine(database, inventory=inventory)

    with pytest.raises(InsufficientStock) as excinfo:
        await engine.place_order(OrderShell(), [LineRequest(gadget, 3)])

    assert inventory.fired
    assert excinfo.value.available == 1
    assert await stock_of(database, gadget) == 1
    assert await row_counts(database) == (0, 0)


class _RejectingDecrement(ProductAccessor):
    async def decrement_stock(self, session, product_id, quantity):
        return 0


async def test_rejected_write_with_enough_stock_is_contention(database, catalog):
    engine = OrderPlacementEngine(database, inventory=_RejectingDecrement())

    with pytest.raises(Contention) as excinfo:
        await engine.place_order(OrderShell(), [LineRequest(catalog["widget"], 1)])

    assert excinfo.value.retryable
    assert await row_counts(database) == (0, 0)


class _FailingSecondLine(OrderItemAccessor):
    def __init__(self):
        self.calls = 0

    async def create(self, session, order_id, product_id, quantity, subtotal):
        self.calls += 1
        if self.calls == 2:
            raise sa.exc.OperationalError("INSERT INTO order_items", {}, Exception("disk I/O error"))
        return await super().create(session, order_id, product_id, quantity, subtotal)


async def test_storage_error_mid_sequence_rolls_everything_back(database, catalog):
    widget, gadget = catalog["widget"], catalog["gadget"]
    engine = OrderPlacementEngine(database, order_lines=_FailingSecondLine())

    with pytest.raises(StorageFailure) as excinfo:
        await engine.place_order(OrderShell(), [LineRequest(widget, 1), LineRequest(gadget, 1)])

    assert isinstance(excinfo.value.__cause__, sa.exc.OperationalError)
    assert not excinfo.value.retryable
    assert await stock_of(database, widget) == 10
    assert await stock_of(database, gadget) == 6
    assert await row_counts(database) == (0, 0)


class _StallingLines(OrderItemAccessor):
    def __init__(self):
        self.reached = asyncio.Event()

    async def create(self, session, order_id, product_id, quantity, subtotal):
        self.reached.set()
        await asyncio.Event().wait()


async def test_cancellation_before_commit_leaves_no_writes(database, catalog):
    widget = catalog["widget"]
    lines = _StallingLines()
    engine = OrderPlacementEngine(database, order_lines=lines)

    task = asyncio.create_task(engine.place_order(OrderShell(), [LineRequest(widget, 4)]))
    await asyncio.wait_for(lines.reached.wait(), timeout=5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert await stock_of(database, widget) == 10
    assert await row_counts(database) == (0, 0)


async def test_concurrent_placements_never_oversell(database, catalog):
    gadget = catalog["gadget"]
    async with database.unit_of_work() as session:
        await ProductAccessor().set_stock(session, gadget, 5)
    engine = OrderPlacementEngine(database)

    results = await asyncio.gather(
        engine.place_order(OrderShell(), [LineRequest(gadget, 3)]),
        engine.place_order(OrderShell(), [LineRequest(gadget, 3)]),
        return_exceptions=True,
    )

    placed = [r for r in results if isinstance(r, PlacedOrder)]
    failed = [r for r in results if not isinstance(r, PlacedOrder)]
    assert len(placed) == 1
    assert len(failed) == 1
    assert isinstance(failed[0], (InsufficientStock, Contention))
    assert await stock_of(database, gadget) == 2
    assert await row_counts(database) == (1, 1)


def test_aggregate_demand_keeps_first_appearance_order():
    lines = [LineRequest(5, 1), LineRequest(2, 3), LineRequest(5, 4)]
    assert list(aggregate_demand(lines).items()) == [(5, 5), (2, 3)]
