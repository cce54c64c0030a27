"""
Sales Service — テーブル定義

SQLAlchemy Core の Table で4テーブルを定義する。
金額は NUMERIC(18, 2)、在庫は CHECK 制約で 0 以上を保証する。
注文履歴のある商品・顧客は外部キー(RESTRICT)で削除できない。
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    Uuid,
)

metadata = MetaData()

Money = Numeric(18, 2, asdecimal=True)

customers = Table(
    "customers",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("full_name", String(200), nullable=False),
    Column("email", String(256), nullable=False, unique=True),
    Column("phone_number", String(50)),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

products = Table(
    "products",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("name", String(200), nullable=False),
    Column("description", Text),
    Column("price", Money, nullable=False),
    Column("stock", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True)),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column(
        "customer_id",
        Uuid,
        ForeignKey("customers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    ),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("total_amount", Money, nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column(
        "order_id",
        Uuid,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column(
        "product_id",
        Uuid,
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    ),
    Column("position", Integer, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Money, nullable=False),
    Column("line_total", Money, nullable=False),
    CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
)
