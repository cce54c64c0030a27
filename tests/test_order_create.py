"""Tests for order creation through the transaction engine."""

import asyncio
from decimal import Decimal
from uuid import uuid4

import pytest

from app.errors import ErrorKind, StorageError
from app.memory_store import InMemoryOrderStore
from app.models import OrderLine
from tests.conftest import FIXED_NOW


class TestCreateOrder:
    async def test_line_totals_and_total_use_half_away_from_zero(
        self, db, order_engine, customer, make_product
    ):
        p1 = make_product("Laptop", price="10.00", stock=10)
        p2 = make_product("Cable", price="5.005", stock=10)

        outcome = await order_engine.create_order(customer.id, [(p1.id, 2), (p2.id, 1)])

        assert outcome.success
        order = outcome.value
        assert [item.line_total for item in order.items] == [
            Decimal("20.00"),
            Decimal("5.01"),
        ]
        assert order.total_amount == Decimal("25.01")
        assert db.orders[order.id].total_amount == Decimal("25.01")

    async def test_decrements_stock_and_stamps_updated_at(
        self, db, order_engine, customer, make_product
    ):
        p1 = make_product(stock=5)
        p2 = make_product(stock=3)

        outcome = await order_engine.create_order(customer.id, [(p1.id, 2), (p2.id, 3)])

        assert outcome.success
        assert db.products[p1.id].stock == 3
        assert db.products[p2.id].stock == 0
        assert db.products[p1.id].updated_at == FIXED_NOW

    async def test_items_keep_caller_order_and_snapshot_price(
        self, db, order_engine, customer, make_product
    ):
        first = make_product("First", price="3.00")
        second = make_product("Second", price="4.50")

        outcome = await order_engine.create_order(
            customer.id, [OrderLine(second.id, 1), OrderLine(first.id, 2)]
        )

        stored = db.orders[outcome.value.id]
        assert [item.product_id for item in stored.items] == [second.id, first.id]
        assert [item.unit_price for item in stored.items] == [
            Decimal("4.50"),
            Decimal("3.00"),
        ]
        assert all(item.order_id == stored.id for item in stored.items)

    @pytest.mark.parametrize(
        "prices, quantities",
        [
            (["0.333", "0.333", "0.334"], [1, 1, 1]),
            (["1.005", "2.675"], [3, 7]),
            (["19.99"], [13]),
        ],
    )
    async def test_total_equals_sum_of_line_totals(
        self, order_engine, customer, make_product, prices, quantities
    ):
        lines = [
            (make_product(price=price, stock=100).id, quantity)
            for price, quantity in zip(prices, quantities)
        ]

        order = (await order_engine.create_order(customer.id, lines)).value

        assert order.total_amount == sum(item.line_total for item in order.items)
        assert order.total_amount.as_tuple().exponent == -2

    async def test_later_price_change_does_not_alter_items(
        self, db, order_engine, customer, make_product
    ):
        product = make_product(price="10.00")
        order = (await order_engine.create_order(customer.id, [(product.id, 1)])).value

        db.products[product.id].price = Decimal("99.99")

        assert db.orders[order.id].items[0].unit_price == Decimal("10.00")
        assert db.orders[order.id].total_amount == Decimal("10.00")

    async def test_publishes_order_created_after_commit(
        self, order_engine, customer, make_product, publisher
    ):
        product = make_product()

        outcome = await order_engine.create_order(customer.id, [(product.id, 1)])

        assert publisher.event_types == ["OrderCreated"]
        assert publisher.events[0].order_id == outcome.value.id


class TestCreateOrderValidation:
    async def test_empty_items(self, db, order_engine, customer):
        outcome = await order_engine.create_order(customer.id, [])

        assert not outcome.success
        assert outcome.kind is ErrorKind.VALIDATION
        assert outcome.error.rule == "no items"
        assert db.orders == {}

    async def test_missing_customer(self, db, order_engine, make_product):
        product = make_product()
        missing = uuid4()

        outcome = await order_engine.create_order(missing, [(product.id, 1)])

        assert outcome.kind is ErrorKind.NOT_FOUND
        assert outcome.error.entity == "customer"
        assert outcome.error.entity_id == missing
        assert db.products[product.id].stock == 10

    async def test_unknown_product_aborts_whole_order(
        self, db, order_engine, customer, make_product
    ):
        known = make_product(stock=4)
        unknown = uuid4()

        outcome = await order_engine.create_order(customer.id, [(known.id, 1), (unknown, 1)])

        assert outcome.kind is ErrorKind.VALIDATION
        assert outcome.error.rule == "unknown product(s)"
        assert str(unknown) in outcome.error.message
        assert db.orders == {}
        assert db.products[known.id].stock == 4

    @pytest.mark.parametrize("quantity", [0, -2])
    async def test_non_positive_quantity(
        self, db, order_engine, customer, make_product, quantity
    ):
        product = make_product()

        outcome = await order_engine.create_order(customer.id, [(product.id, quantity)])

        assert outcome.kind is ErrorKind.VALIDATION
        assert outcome.error.rule == "quantity"
        assert db.products[product.id].stock == 10

    async def test_insufficient_stock_leaves_stock_untouched(
        self, db, order_engine, customer, make_product
    ):
        product = make_product("Phone", stock=3)

        outcome = await order_engine.create_order(customer.id, [(product.id, 4)])

        assert outcome.kind is ErrorKind.VALIDATION
        assert outcome.error.message == "insufficient stock for Phone"
        assert db.products[product.id].stock == 3
        assert db.orders == {}

    async def test_repeated_product_lines_are_checked_together(
        self, db, order_engine, customer, make_product
    ):
        product = make_product(stock=3)

        outcome = await order_engine.create_order(customer.id, [(product.id, 2), (product.id, 2)])

        assert outcome.kind is ErrorKind.VALIDATION
        assert db.products[product.id].stock == 3

    async def test_failure_does_not_publish(self, order_engine, customer, publisher):
        await order_engine.create_order(customer.id, [])

        assert publisher.events == []


class FailingSaveStore(InMemoryOrderStore):
    async def save_order(self, order):
        raise StorageError("connection lost", entity="order", entity_id=order.id)


class BlockingSaveStore(InMemoryOrderStore):
    def __init__(self, db):
        super().__init__(db)
        self.entered = asyncio.Event()

    async def save_order(self, order):
        self.entered.set()
        await asyncio.Event().wait()


class BrokenPublisher:
    async def publish(self, event):
        raise ConnectionError("redis down")


class TestCreateOrderRollback:
    async def test_storage_failure_rolls_back_stock(
        self, db, make_engine, customer, make_product
    ):
        product = make_product(stock=5)
        order_engine = make_engine(FailingSaveStore(db))

        outcome = await order_engine.create_order(customer.id, [(product.id, 2)])

        assert outcome.kind is ErrorKind.STORAGE
        assert db.products[product.id].stock == 5
        assert db.orders == {}
        assert not db.lock.locked()

    async def test_cancellation_before_commit_rolls_back(
        self, db, make_engine, customer, make_product
    ):
        product = make_product(stock=5)
        store = BlockingSaveStore(db)
        order_engine = make_engine(store)

        task = asyncio.create_task(order_engine.create_order(customer.id, [(product.id, 2)]))
        await store.entered.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert db.products[product.id].stock == 5
        assert db.orders == {}
        assert not db.lock.locked()

    async def test_publish_failure_keeps_committed_order(
        self, db, customer, make_product, clock
    ):
        from app.engine import OrderEngine

        product = make_product(stock=5)
        order_engine = OrderEngine(InMemoryOrderStore(db), clock=clock, publisher=BrokenPublisher())

        outcome = await order_engine.create_order(customer.id, [(product.id, 1)])

        assert outcome.success
        assert outcome.value.id in db.orders
        assert db.products[product.id].stock == 4


class TestConcurrentCreate:
    async def test_last_unit_is_sold_once(self, db, make_engine, customer, make_product):
        product = make_product(stock=1)
        first, second = make_engine(), make_engine()

        outcomes = await asyncio.gather(
            first.create_order(customer.id, [(product.id, 1)]),
            second.create_order(customer.id, [(product.id, 1)]),
        )

        succeeded = [o for o in outcomes if o.success]
        failed = [o for o in outcomes if not o.success]
        assert len(succeeded) == 1
        assert len(failed) == 1
        assert failed[0].kind in (ErrorKind.VALIDATION, ErrorKind.CONFLICT)
        assert db.products[product.id].stock == 0
        assert len(db.orders) == 1
