"""
Sales Service — SQL ストア

OrderStore の SQLAlchemy (AsyncSession) 実装。

同時実行制御:
  商品行は SELECT ... FOR UPDATE で読み込む（対応する DB のみ）。
  在庫の書き戻しは読み込み時の在庫値を条件にした UPDATE で行い、
  更新件数が 0 件なら他のトランザクションに先を越されたとみなして
  ConflictError を送出する → 注文全体がロールバックされる。
  注文行も FOR UPDATE で読み込み、注文・明細の UPDATE / DELETE は
  対象件数を確認する。同じ注文への更新・削除が並行した場合、
  後から来た側は競合として失敗する（在庫の二重戻しを防ぐ）。
"""

import logging
from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ConflictError, StorageError
from .models import Customer, Order, OrderItem, Product
from .store import OrderStore
from .tables import customers, order_items, orders, products

logger = logging.getLogger(__name__)


class SqlOrderStore(OrderStore):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self._loaded_stock: dict[UUID, int] = {}
        self._loaded_orders: set[UUID] = set()
        self._persisted_items: set[UUID] = set()

    async def _execute(self, statement):
        try:
            return await self.session.execute(statement)
        except IntegrityError as e:
            raise ConflictError(f"constraint violation: {e.orig}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"store failure: {e}") from e

    # ── トランザクション ─────────────────────────────

    async def begin(self) -> None:
        self._loaded_stock.clear()
        self._loaded_orders.clear()
        self._persisted_items.clear()
        try:
            if not self.session.in_transaction():
                await self.session.begin()
        except SQLAlchemyError as e:
            raise StorageError(f"could not begin transaction: {e}") from e

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except IntegrityError as e:
            raise ConflictError(f"constraint violation: {e.orig}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"commit failed: {e}") from e

    async def rollback(self) -> None:
        try:
            await self.session.rollback()
        except SQLAlchemyError as e:
            raise StorageError(f"rollback failed: {e}") from e

    # ── 参照 ────────────────────────────────────────

    async def find_customer(self, customer_id: UUID) -> Customer | None:
        result = await self._execute(
            select(customers).where(customers.c.id == customer_id)
        )
        row = result.fetchone()
        if not row:
            return None
        return Customer(**row._mapping)

    async def find_products_by_ids(self, product_ids: set[UUID]) -> dict[UUID, Product]:
        if not product_ids:
            return {}
        result = await self._execute(
            select(products)
            .where(products.c.id.in_(sorted(product_ids, key=str)))
            .order_by(products.c.id)
            .with_for_update()
        )
        found = {}
        for row in result.fetchall():
            product = Product(**row._mapping)
            self._loaded_stock[product.id] = product.stock
            found[product.id] = product
        return found

    async def find_order(self, order_id: UUID) -> Order | None:
        result = await self._execute(
            select(orders).where(orders.c.id == order_id).with_for_update()
        )
        row = result.fetchone()
        if not row:
            return None
        items_result = await self._execute(
            select(order_items)
            .where(order_items.c.order_id == order_id)
            .order_by(order_items.c.position)
        )
        items = [
            OrderItem(
                id=r.id,
                order_id=r.order_id,
                product_id=r.product_id,
                quantity=r.quantity,
                unit_price=r.unit_price,
                line_total=r.line_total,
            )
            for r in items_result.fetchall()
        ]
        self._loaded_orders.add(row.id)
        self._persisted_items.update(item.id for item in items)
        return Order(
            id=row.id,
            customer_id=row.customer_id,
            created_at=row.created_at,
            total_amount=row.total_amount,
            items=items,
        )

    # ── 更新 ────────────────────────────────────────

    async def save_order(self, order: Order) -> None:
        if order.id in self._loaded_orders:
            result = await self._execute(
                update(orders)
                .where(orders.c.id == order.id)
                .values(customer_id=order.customer_id, total_amount=order.total_amount)
            )
            _expect_rows(result, 1, "order", order.id)
        else:
            await self._execute(
                insert(orders).values(
                    id=order.id,
                    customer_id=order.customer_id,
                    created_at=order.created_at,
                    total_amount=order.total_amount,
                )
            )
            self._loaded_orders.add(order.id)

        new_items = [
            {
                "id": item.id,
                "order_id": order.id,
                "product_id": item.product_id,
                "position": position,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "line_total": item.line_total,
            }
            for position, item in enumerate(order.items)
            if item.id not in self._persisted_items
        ]
        if new_items:
            await self._execute(insert(order_items).values(new_items))
        for item in order.items:
            item.order_id = order.id
            self._persisted_items.add(item.id)

    async def save_products(self, products_to_save: Iterable[Product]) -> None:
        for product in products_to_save:
            statement = update(products).where(products.c.id == product.id)
            expected = self._loaded_stock.get(product.id)
            if expected is not None:
                statement = statement.where(products.c.stock == expected)
            result = await self._execute(
                statement.values(stock=product.stock, updated_at=product.updated_at)
            )
            _expect_rows(result, 1, "product", product.id)
            self._loaded_stock[product.id] = product.stock

    async def delete_order_items(self, items: Iterable[OrderItem]) -> None:
        items = list(items)
        item_ids = [item.id for item in items]
        if not item_ids:
            return
        result = await self._execute(
            delete(order_items).where(order_items.c.id.in_(item_ids))
        )
        _expect_rows(result, len(item_ids), "order", items[0].order_id)
        self._persisted_items.difference_update(item_ids)

    async def delete_order(self, order: Order) -> None:
        result = await self._execute(delete(orders).where(orders.c.id == order.id))
        _expect_rows(result, 1, "order", order.id)
        self._loaded_orders.discard(order.id)


def _expect_rows(result, expected: int, entity: str, entity_id: UUID | None) -> None:
    # 読み込んだ行が別トランザクションで変更・削除されていれば件数が合わない
    if result.rowcount != expected:
        logger.info(
            "Write lost a race: %s=%s rows=%s expected=%s",
            entity,
            entity_id,
            result.rowcount,
            expected,
        )
        raise ConflictError(
            f"{entity} was changed by another transaction",
            entity=entity,
            entity_id=entity_id,
        )
