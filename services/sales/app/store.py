"""
Sales Service — ストアの抽象インターフェース

注文エンジンが永続化層に求める操作だけを定義する。
本番は SqlOrderStore (SQLAlchemy)、テストは InMemoryOrderStore を使う。

ストアのインスタンスは1リクエスト(1ユニットオブワーク)ごとに作る。
begin() から commit() / rollback() までの間に行った変更だけが対象になる。
"""

import abc
from collections.abc import Iterable
from uuid import UUID

from .models import Customer, Order, OrderItem, Product


class OrderStore(abc.ABC):
    # ── トランザクション ─────────────────────────────

    @abc.abstractmethod
    async def begin(self) -> None: ...

    @abc.abstractmethod
    async def commit(self) -> None: ...

    @abc.abstractmethod
    async def rollback(self) -> None:
        """未コミットの変更をすべて破棄する。何度呼んでもよい。"""

    # ── 参照 ────────────────────────────────────────

    @abc.abstractmethod
    async def find_customer(self, customer_id: UUID) -> Customer | None: ...

    @abc.abstractmethod
    async def find_products_by_ids(self, product_ids: set[UUID]) -> dict[UUID, Product]:
        """
        見つかった商品だけを返す。要求したキーと件数が合わなければ
        呼び出し側で「存在しない商品がある」と判断する。
        """

    @abc.abstractmethod
    async def find_order(self, order_id: UUID) -> Order | None: ...

    # ── 更新 ────────────────────────────────────────

    @abc.abstractmethod
    async def save_order(self, order: Order) -> None: ...

    @abc.abstractmethod
    async def save_products(self, products: Iterable[Product]) -> None: ...

    @abc.abstractmethod
    async def delete_order_items(self, items: Iterable[OrderItem]) -> None: ...

    @abc.abstractmethod
    async def delete_order(self, order: Order) -> None: ...
