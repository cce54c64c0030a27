"""
Sales Service — インメモリストア

OrderStore のインメモリ実装。テストやローカル検証で使う。

InMemoryDatabase が共有状態を持ち、InMemoryOrderStore はその上の
1ユニットオブワークを表す。トランザクションは asyncio.Lock で直列化し、
作業コピー(staging)に対して変更を行い、commit で一括反映する。
"""

import asyncio
import copy
from collections.abc import Iterable
from uuid import UUID

from .errors import ConflictError
from .models import Customer, Order, OrderItem, Product
from .store import OrderStore


class InMemoryDatabase:
    def __init__(self) -> None:
        self.customers: dict[UUID, Customer] = {}
        self.products: dict[UUID, Product] = {}
        self.orders: dict[UUID, Order] = {}
        self.lock = asyncio.Lock()

    def add_customer(self, customer: Customer) -> Customer:
        self.customers[customer.id] = copy.deepcopy(customer)
        return customer

    def add_product(self, product: Product) -> Product:
        self.products[product.id] = copy.deepcopy(product)
        return product

    def add_order(self, order: Order) -> Order:
        self.orders[order.id] = copy.deepcopy(order)
        return order


class InMemoryOrderStore(OrderStore):
    def __init__(self, db: InMemoryDatabase) -> None:
        self.db = db
        self._staged: dict[str, dict] | None = None

    def _stage(self) -> dict[str, dict]:
        if self._staged is None:
            raise RuntimeError("transaction has not begun")
        return self._staged

    # ── トランザクション ─────────────────────────────

    async def begin(self) -> None:
        await self.db.lock.acquire()
        self._staged = {
            "customers": copy.deepcopy(self.db.customers),
            "products": copy.deepcopy(self.db.products),
            "orders": copy.deepcopy(self.db.orders),
        }

    async def commit(self) -> None:
        staged = self._stage()
        self.db.customers = staged["customers"]
        self.db.products = staged["products"]
        self.db.orders = staged["orders"]
        self._release()

    async def rollback(self) -> None:
        if self._staged is not None:
            self._release()

    def _release(self) -> None:
        self._staged = None
        self.db.lock.release()

    # ── 参照 ────────────────────────────────────────

    async def find_customer(self, customer_id: UUID) -> Customer | None:
        customer = self._stage()["customers"].get(customer_id)
        return copy.deepcopy(customer)

    async def find_products_by_ids(self, product_ids: set[UUID]) -> dict[UUID, Product]:
        products = self._stage()["products"]
        return {
            pid: copy.deepcopy(products[pid]) for pid in product_ids if pid in products
        }

    async def find_order(self, order_id: UUID) -> Order | None:
        return copy.deepcopy(self._stage()["orders"].get(order_id))

    # ── 更新 ────────────────────────────────────────

    async def save_order(self, order: Order) -> None:
        staged = self._stage()
        if order.customer_id not in staged["customers"]:
            raise ConflictError(
                "customer no longer exists",
                entity="customer",
                entity_id=order.customer_id,
            )
        for item in order.items:
            if item.product_id not in staged["products"]:
                raise ConflictError(
                    "product no longer exists",
                    entity="product",
                    entity_id=item.product_id,
                )
            item.order_id = order.id
        staged["orders"][order.id] = copy.deepcopy(order)

    async def save_products(self, products: Iterable[Product]) -> None:
        staged = self._stage()
        for product in products:
            # products.stock の CHECK 制約に相当
            if product.stock < 0:
                raise ConflictError(
                    "stock constraint violated",
                    entity="product",
                    entity_id=product.id,
                )
            staged["products"][product.id] = copy.deepcopy(product)

    async def delete_order_items(self, items: Iterable[OrderItem]) -> None:
        item_ids = {item.id for item in items}
        for order in self._stage()["orders"].values():
            order.items = [i for i in order.items if i.id not in item_ids]

    async def delete_order(self, order: Order) -> None:
        self._stage()["orders"].pop(order.id, None)
