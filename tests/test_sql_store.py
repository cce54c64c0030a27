"""Tests for the SQLAlchemy store against SQLite."""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import OperationalError

from app import commands, queries
from app.engine import OrderEngine
from app.errors import ConflictError, ErrorKind, StorageError
from app.sql_store import SqlOrderStore
from app.tables import customers, order_items, orders, products
from tests.conftest import FIXED_NOW


@pytest.fixture
async def seeded(session):
    customer_id, laptop_id, cable_id = uuid4(), uuid4(), uuid4()
    await session.execute(
        insert(customers).values(
            id=customer_id, full_name="Ada", email="ada@example.com", created_at=FIXED_NOW
        )
    )
    await session.execute(
        insert(products).values(
            [
                {
                    "id": laptop_id,
                    "name": "Laptop",
                    "price": Decimal("10.00"),
                    "stock": 5,
                    "created_at": FIXED_NOW,
                },
                {
                    "id": cable_id,
                    "name": "Cable",
                    "price": Decimal("2.50"),
                    "stock": 3,
                    "created_at": FIXED_NOW,
                },
            ]
        )
    )
    await session.commit()
    return customer_id, laptop_id, cable_id


async def stock_of(session, product_id):
    return await session.scalar(select(products.c.stock).where(products.c.id == product_id))


async def count(session, table):
    return await session.scalar(select(func.count()).select_from(table))


@pytest.fixture
def sql_order_engine(session, clock):
    return OrderEngine(SqlOrderStore(session), clock=clock)


class TestSqlOrderStore:
    async def test_create_persists_order_items_and_stock(self, session, seeded, sql_order_engine):
        customer_id, laptop_id, cable_id = seeded

        outcome = await sql_order_engine.create_order(customer_id, [(cable_id, 3), (laptop_id, 2)])

        assert outcome.success
        assert await stock_of(session, laptop_id) == 3
        assert await stock_of(session, cable_id) == 0
        detail = await queries.get_order(session, outcome.value.id)
        assert detail["customer_email"] == "ada@example.com"
        assert detail["total_amount"] == Decimal("27.50")
        assert [i["product_name"] for i in detail["items"]] == ["Cable", "Laptop"]
        assert [i["line_total"] for i in detail["items"]] == [Decimal("7.50"), Decimal("20.00")]

    async def test_failed_create_leaves_no_rows(self, session, seeded, sql_order_engine):
        customer_id, laptop_id, cable_id = seeded

        outcome = await sql_order_engine.create_order(customer_id, [(laptop_id, 1), (cable_id, 4)])

        assert outcome.kind is ErrorKind.VALIDATION
        assert await stock_of(session, laptop_id) == 5
        assert await count(session, orders) == 0
        assert await count(session, order_items) == 0

    async def test_update_with_same_items_is_stock_neutral(
        self, session, seeded, sql_order_engine
    ):
        customer_id, laptop_id, cable_id = seeded
        order = (await sql_order_engine.create_order(customer_id, [(laptop_id, 5)])).value

        outcome = await sql_order_engine.update_order(order.id, customer_id, [(laptop_id, 5)])

        assert outcome.success
        assert await stock_of(session, laptop_id) == 0
        assert await count(session, order_items) == 1

    async def test_update_replaces_rows(self, session, seeded, sql_order_engine):
        customer_id, laptop_id, cable_id = seeded
        order = (await sql_order_engine.create_order(customer_id, [(laptop_id, 2)])).value

        outcome = await sql_order_engine.update_order(order.id, customer_id, [(cable_id, 1)])

        assert outcome.success
        assert await stock_of(session, laptop_id) == 5
        assert await stock_of(session, cable_id) == 2
        detail = await queries.get_order(session, order.id)
        assert [i["product_id"] for i in detail["items"]] == [cable_id]
        assert detail["total_amount"] == Decimal("2.50")

    async def test_failed_update_keeps_original_rows(self, session, seeded, sql_order_engine):
        customer_id, laptop_id, cable_id = seeded
        order = (await sql_order_engine.create_order(customer_id, [(laptop_id, 2)])).value

        outcome = await sql_order_engine.update_order(order.id, customer_id, [(cable_id, 9)])

        assert outcome.kind is ErrorKind.VALIDATION
        assert await stock_of(session, laptop_id) == 3
        assert await stock_of(session, cable_id) == 3
        detail = await queries.get_order(session, order.id)
        assert [(i["product_id"], i["quantity"]) for i in detail["items"]] == [(laptop_id, 2)]

    async def test_delete_restores_stock(self, session, seeded, sql_order_engine):
        customer_id, laptop_id, cable_id = seeded
        order = (await sql_order_engine.create_order(customer_id, [(laptop_id, 4)])).value

        outcome = await sql_order_engine.delete_order(order.id)

        assert outcome.success
        assert await stock_of(session, laptop_id) == 5
        assert await count(session, orders) == 0
        assert await count(session, order_items) == 0

    async def test_stale_stock_write_is_a_conflict(self, session, seeded):
        customer_id, laptop_id, cable_id = seeded
        store = SqlOrderStore(session)
        await store.begin()
        product = (await store.find_products_by_ids({laptop_id}))[laptop_id]

        # another writer takes stock between read and write
        await session.execute(
            update(products).where(products.c.id == laptop_id).values(stock=1)
        )
        product.stock -= 1

        with pytest.raises(ConflictError):
            await store.save_products([product])
        await store.rollback()
        assert await stock_of(session, laptop_id) == 5

    async def test_find_products_returns_only_existing(self, session, seeded):
        customer_id, laptop_id, cable_id = seeded
        store = SqlOrderStore(session)
        await store.begin()

        found = await store.find_products_by_ids({laptop_id, uuid4()})

        assert set(found) == {laptop_id}
        assert found[laptop_id].price == Decimal("10.00")
        await store.rollback()


async def test_seed_demo_data_only_fills_empty_tables(session, clock):
    await commands.seed_demo_data(session, clock)
    await commands.seed_demo_data(session, clock)

    assert await count(session, products) == 2
    assert await count(session, customers) == 1
    customer = await queries.find_customer_by_email(session, "CUSTOMER@sales.local")
    assert customer["full_name"] == "Demo Customer"


class ResetOnRollbackSession:
    async def rollback(self):
        raise OperationalError("ROLLBACK", {}, ConnectionResetError("connection reset"))


async def test_rollback_failure_is_a_storage_error():
    store = SqlOrderStore(ResetOnRollbackSession())

    with pytest.raises(StorageError):
        await store.rollback()
