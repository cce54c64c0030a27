"""
Sales Service — クエリハンドラ (CQRS の Read 側)

画面表示用に、注文には顧客名・メールアドレス、明細には商品名を付けて返す。
書き込みは行わない。
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .commands import normalize_email
from .tables import customers, order_items, orders, products


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _customer_dict(row) -> dict:
    return {
        "id": row.id,
        "full_name": row.full_name,
        "email": row.email,
        "phone_number": row.phone_number,
        "created_at": _iso(row.created_at),
    }


def _product_dict(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "description": row.description,
        "price": row.price,
        "stock": row.stock,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


# ── 顧客 ────────────────────────────────────────


async def get_customer(session: AsyncSession, customer_id: UUID) -> dict | None:
    result = await session.execute(select(customers).where(customers.c.id == customer_id))
    row = result.fetchone()
    return _customer_dict(row) if row else None


async def find_customer_by_email(session: AsyncSession, email: str) -> dict | None:
    result = await session.execute(
        select(customers).where(customers.c.email == normalize_email(email))
    )
    row = result.fetchone()
    return _customer_dict(row) if row else None


async def list_customers(session: AsyncSession) -> list[dict]:
    """顧客一覧（氏名順）"""
    result = await session.execute(select(customers).order_by(customers.c.full_name))
    return [_customer_dict(row) for row in result.fetchall()]


# ── 商品 ────────────────────────────────────────


async def get_product(session: AsyncSession, product_id: UUID) -> dict | None:
    result = await session.execute(select(products).where(products.c.id == product_id))
    row = result.fetchone()
    return _product_dict(row) if row else None


async def list_products(session: AsyncSession) -> list[dict]:
    """商品一覧（新しい順）"""
    result = await session.execute(select(products).order_by(products.c.created_at.desc()))
    return [_product_dict(row) for row in result.fetchall()]


# ── 注文 ────────────────────────────────────────


def _order_query():
    return select(
        orders.c.id,
        orders.c.customer_id,
        orders.c.created_at,
        orders.c.total_amount,
        customers.c.full_name.label("customer_name"),
        customers.c.email.label("customer_email"),
    ).join(customers, customers.c.id == orders.c.customer_id)


async def _load_items(session: AsyncSession, order_ids: list[UUID]) -> dict[UUID, list[dict]]:
    if not order_ids:
        return {}
    result = await session.execute(
        select(
            order_items.c.id,
            order_items.c.order_id,
            order_items.c.product_id,
            order_items.c.quantity,
            order_items.c.unit_price,
            order_items.c.line_total,
            products.c.name.label("product_name"),
        )
        .join(products, products.c.id == order_items.c.product_id)
        .where(order_items.c.order_id.in_(order_ids))
        .order_by(order_items.c.order_id, order_items.c.position)
    )
    items: dict[UUID, list[dict]] = {order_id: [] for order_id in order_ids}
    for row in result.fetchall():
        items[row.order_id].append(
            {
                "id": row.id,
                "product_id": row.product_id,
                "product_name": row.product_name,
                "quantity": row.quantity,
                "unit_price": row.unit_price,
                "line_total": row.line_total,
            }
        )
    return items


def _order_dict(row, items: list[dict]) -> dict:
    return {
        "id": row.id,
        "customer_id": row.customer_id,
        "customer_name": row.customer_name,
        "customer_email": row.customer_email,
        "created_at": _iso(row.created_at),
        "total_amount": row.total_amount,
        "items": items,
    }


async def get_order(session: AsyncSession, order_id: UUID) -> dict | None:
    """顧客・商品名付きで注文を1件取得する。"""
    result = await session.execute(_order_query().where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    items = await _load_items(session, [row.id])
    return _order_dict(row, items[row.id])


async def list_orders(session: AsyncSession, customer_email: str | None = None) -> list[dict]:
    """注文一覧（新しい順）。customer_email を指定するとその顧客の注文だけ返す。"""
    query = _order_query()
    if customer_email and customer_email.strip():
        query = query.where(customers.c.email == normalize_email(customer_email))
    result = await session.execute(query.order_by(orders.c.created_at.desc()))
    rows = result.fetchall()
    items = await _load_items(session, [row.id for row in rows])
    return [_order_dict(row, items[row.id]) for row in rows]
