"""
Sales Service — 注文トランザクションエンジン

注文の作成・更新(明細の全置換)・削除と、注文外の在庫調整を行う。

  ┌──────────────────────────────────────────────────────┐
  │  begin                                               │
  │   1. 顧客と商品を読み込む（同一トランザクション内）      │
  │   2. 在庫を増減し、明細と合計金額を計算する             │
  │   3. 商品行と注文を保存する                            │
  │  commit  ── 途中で失敗・キャンセルされたら rollback      │
  └──────────────────────────────────────────────────────┘

更新は「いったん既存明細の在庫を戻してから、新しい明細で引き直す」。
これにより、数量を変えずに注文を編集したときに、自分自身が確保している
在庫のせいで在庫不足になることがない。

ストア・時計・イベント発行者はコンストラクタで受け取る（グローバル状態を持たない）。
"""

import logging
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable, Set
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import TypeVar
from uuid import UUID

from pydantic import BaseModel

from .errors import ConflictError, NotFoundError, Outcome, SalesError, ValidationError
from .events import EventPublisher, OrderCreated, OrderDeleted, OrderLineSnapshot, OrderUpdated
from .models import Order, OrderItem, OrderLine, Product
from .money import line_total, round_money
from .store import OrderStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_lines(items: Iterable[OrderLine | tuple[UUID, int]]) -> list[OrderLine]:
    return [item if isinstance(item, OrderLine) else OrderLine(*item) for item in items]


class OrderEngine:
    def __init__(
        self,
        store: OrderStore,
        clock: Clock = utcnow,
        publisher: EventPublisher | None = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.publisher = publisher

    # ── 公開 API（Outcome を返す） ────────────────────

    async def create_order(
        self, customer_id: UUID, items: Iterable[OrderLine | tuple[UUID, int]]
    ) -> Outcome[Order]:
        """注文作成"""
        lines = as_lines(items)
        return await self._guard(
            f"create order for customer {customer_id}",
            lambda: self._create_order(customer_id, lines),
        )

    async def update_order(
        self,
        order_id: UUID,
        customer_id: UUID,
        items: Iterable[OrderLine | tuple[UUID, int]],
    ) -> Outcome[Order]:
        """注文更新（明細の全置換）"""
        lines = as_lines(items)
        return await self._guard(
            f"update order {order_id}",
            lambda: self._update_order(order_id, customer_id, lines),
        )

    async def delete_order(self, order_id: UUID) -> Outcome[None]:
        """注文削除（在庫を戻す）"""
        return await self._guard(
            f"delete order {order_id}", lambda: self._delete_order(order_id)
        )

    async def adjust_stock(self, product_id: UUID, delta: int) -> Outcome[Product]:
        """注文を介さない在庫の手動補正"""
        return await self._guard(
            f"adjust stock of product {product_id}",
            lambda: self._adjust_stock(product_id, delta),
        )

    # ── ユニットオブワーク ───────────────────────────

    @asynccontextmanager
    async def _unit_of_work(self):
        """
        begin → 本体 → commit。本体・commit のどこで例外やキャンセルが
        起きても rollback してから例外を再送出する。
        """
        await self.store.begin()
        try:
            yield self.store
            await self.store.commit()
        except BaseException:
            try:
                await self.store.rollback()
            except Exception:
                logger.exception("Rollback failed")
            raise

    async def _guard(self, action: str, work: Callable[[], Awaitable[T]]) -> Outcome[T]:
        try:
            value = await work()
        except SalesError as e:
            logger.info("Failed to %s: [%s] %s", action, e.kind.value, e.message)
            return Outcome.failed(e)
        except Exception:
            logger.exception("Failed to %s", action)
            raise
        return Outcome.ok(value)

    # ── コマンド本体 ────────────────────────────────

    async def _create_order(self, customer_id: UUID, lines: list[OrderLine]) -> Order:
        if not lines:
            raise ValidationError("no items", entity="order", rule="no items")

        async with self._unit_of_work() as store:
            customer = await store.find_customer(customer_id)
            if customer is None:
                raise NotFoundError(
                    "customer not found",
                    entity="customer",
                    entity_id=customer_id,
                    rule="customer",
                )

            products = await self._resolve_products(store, lines)
            _check_quantities(lines)
            _check_stock(lines, products)

            now = self.clock()
            order = Order(customer_id=customer.id, created_at=now)
            _apply_lines(order, lines, products, now)

            touched = {line.product_id for line in lines}
            await store.save_products(products[pid] for pid in sorted(touched))
            await store.save_order(order)

        logger.info(
            "Order created: id=%s customer=%s total=%s", order.id, order.customer_id, order.total_amount
        )
        await self._publish(
            OrderCreated(
                order_id=order.id,
                customer_id=order.customer_id,
                total_amount=order.total_amount,
                items=_snapshot(order),
                timestamp=now,
            )
        )
        return order

    async def _update_order(
        self, order_id: UUID, customer_id: UUID, lines: list[OrderLine]
    ) -> Order:
        if not lines:
            raise ValidationError("no items", entity="order", entity_id=order_id, rule="no items")

        async with self._unit_of_work() as store:
            order = await store.find_order(order_id)
            if order is None:
                raise NotFoundError(
                    "order not found", entity="order", entity_id=order_id, rule="order"
                )
            customer = await store.find_customer(customer_id)
            if customer is None:
                raise ValidationError(
                    "customer not found",
                    entity="customer",
                    entity_id=customer_id,
                    rule="customer",
                )

            previous_ids = {item.product_id for item in order.items}
            products = await self._resolve_products(store, lines, previous_ids)
            _check_quantities(lines)

            now = self.clock()

            # (a) 既存明細の在庫を戻して明細を削除
            for item in order.items:
                product = products[item.product_id]
                product.stock += item.quantity
                product.updated_at = now
            await store.delete_order_items(order.items)
            order.items = []

            # (b)(c) 戻した在庫に対して検証し、引き直す
            _check_stock(lines, products)
            _apply_lines(order, lines, products, now)

            # (d) 顧客の付け替え（制限しない）
            previous_customer_id = order.customer_id
            order.customer_id = customer.id

            touched = previous_ids | {line.product_id for line in lines}
            await store.save_products(products[pid] for pid in sorted(touched))
            await store.save_order(order)

        logger.info("Order updated: id=%s total=%s", order.id, order.total_amount)
        await self._publish(
            OrderUpdated(
                order_id=order.id,
                customer_id=order.customer_id,
                previous_customer_id=previous_customer_id,
                total_amount=order.total_amount,
                items=_snapshot(order),
                timestamp=now,
            )
        )
        return order

    async def _delete_order(self, order_id: UUID) -> None:
        async with self._unit_of_work() as store:
            order = await store.find_order(order_id)
            if order is None:
                raise NotFoundError(
                    "order not found", entity="order", entity_id=order_id, rule="order"
                )

            restored: Counter[UUID] = Counter()
            for item in order.items:
                restored[item.product_id] += item.quantity
            products = await store.find_products_by_ids(set(restored))
            _require_all(products, set(restored))

            now = self.clock()
            for product_id, quantity in restored.items():
                product = products[product_id]
                product.stock += quantity
                product.updated_at = now

            await store.delete_order_items(order.items)
            await store.delete_order(order)
            await store.save_products(products[pid] for pid in sorted(restored))

        logger.info("Order deleted: id=%s", order_id)
        await self._publish(
            OrderDeleted(
                order_id=order.id,
                customer_id=order.customer_id,
                restored=dict(restored),
                timestamp=now,
            )
        )

    async def _adjust_stock(self, product_id: UUID, delta: int) -> Product:
        if delta == 0:
            raise ValidationError(
                "amount must be non-zero",
                entity="product",
                entity_id=product_id,
                rule="zero delta",
            )

        async with self._unit_of_work() as store:
            found = await store.find_products_by_ids({product_id})
            product = found.get(product_id)
            if product is None:
                raise NotFoundError(
                    "product not found", entity="product", entity_id=product_id, rule="product"
                )
            if product.stock + delta < 0:
                raise ValidationError(
                    "stock cannot drop below zero",
                    entity="product",
                    entity_id=product_id,
                    rule="negative stock",
                )
            product.stock += delta
            product.updated_at = self.clock()
            await store.save_products([product])

        return product

    # ── 補助 ────────────────────────────────────────

    async def _resolve_products(
        self,
        store: OrderStore,
        lines: list[OrderLine],
        held_ids: Set[UUID] = frozenset(),
    ) -> dict[UUID, Product]:
        """
        新しい明細の商品と、既存明細が持っている商品 (held_ids) を一度に読み込む。
        新しい明細の商品が欠けていれば入力エラー、既存明細の商品が欠けていれば
        途中で削除されたとみなして競合エラー。
        """
        wanted = {line.product_id for line in lines}
        products = await store.find_products_by_ids(wanted | set(held_ids))
        missing = sorted(wanted - products.keys(), key=str)
        if missing:
            raise ValidationError(
                "unknown product(s): " + ", ".join(str(pid) for pid in missing),
                entity="product",
                entity_id=missing[0],
                rule="unknown product(s)",
            )
        _require_all(products, set(held_ids))
        return products

    async def _publish(self, event: BaseModel) -> None:
        # コミット済みの注文は発行失敗で取り消さない
        if self.publisher is None:
            return
        try:
            await self.publisher.publish(event)
        except Exception:
            logger.exception("Failed to publish %s", type(event).__name__)


def _require_all(products: dict[UUID, Product], product_ids: set[UUID]) -> None:
    for product_id in sorted(product_ids, key=str):
        if product_id not in products:
            raise ConflictError(
                "product referenced by the order no longer exists",
                entity="product",
                entity_id=product_id,
            )


def _check_quantities(lines: list[OrderLine]) -> None:
    for line in lines:
        if line.quantity <= 0:
            raise ValidationError(
                "quantity must be greater than zero",
                entity="product",
                entity_id=line.product_id,
                rule="quantity",
            )


def _check_stock(lines: list[OrderLine], products: dict[UUID, Product]) -> None:
    # 同じ商品が複数行にあれば合算して判定する
    required: Counter[UUID] = Counter()
    for line in lines:
        required[line.product_id] += line.quantity
    for product_id, quantity in required.items():
        product = products[product_id]
        if quantity > product.stock:
            raise ValidationError(
                f"insufficient stock for {product.name}",
                entity="product",
                entity_id=product_id,
                rule="insufficient stock",
            )


def _apply_lines(
    order: Order, lines: list[OrderLine], products: dict[UUID, Product], now: datetime
) -> None:
    for line in lines:
        product = products[line.product_id]
        product.stock -= line.quantity
        product.updated_at = now
        order.items.append(
            OrderItem(
                order_id=order.id,
                product_id=product.id,
                quantity=line.quantity,
                unit_price=product.price,
                line_total=line_total(product.price, line.quantity),
            )
        )
    order.total_amount = round_money(sum((item.line_total for item in order.items), 0))


def _snapshot(order: Order) -> list[OrderLineSnapshot]:
    return [
        OrderLineSnapshot(
            product_id=item.product_id,
            quantity=item.quantity,
            unit_price=item.unit_price,
            line_total=item.line_total,
        )
        for item in order.items
    ]
