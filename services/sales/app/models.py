"""
Sales Service — ドメインモデル

ストア実装（SQL / インメモリ）とエンジンの間で受け渡すエンティティ。
永続化の詳細は持たず、値の入れ物に徹する。
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4


@dataclass
class Customer:
    id: UUID
    full_name: str
    email: str
    phone_number: str | None = None
    created_at: datetime | None = None


@dataclass
class Product:
    id: UUID
    name: str
    price: Decimal
    stock: int
    description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class OrderItem:
    """
    注文明細

    unit_price は注文時点の商品価格のスナップショット。
    後から商品価格が変わっても既存の明細は変わらない。
    """

    product_id: UUID
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    id: UUID = field(default_factory=uuid4)
    order_id: UUID | None = None


@dataclass
class Order:
    customer_id: UUID
    created_at: datetime
    total_amount: Decimal = Decimal("0.00")
    items: list[OrderItem] = field(default_factory=list)
    id: UUID = field(default_factory=uuid4)


@dataclass(frozen=True)
class OrderLine:
    """呼び出し側から渡される (商品, 数量) の組"""

    product_id: UUID
    quantity: int
