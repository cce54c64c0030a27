"""
Sales Service — コマンドハンドラ (CQRS の Write 側)

顧客・商品のマスタ管理。注文と在庫の整合性が絡む操作は
engine.OrderEngine が担当し、ここでは単一行の登録・更新・削除だけを扱う。

結果は engine と同じく Outcome で返す。
"""

import logging
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import delete, exists, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .engine import Clock, utcnow
from .errors import ConflictError, NotFoundError, Outcome, StorageError, ValidationError
from .models import Customer, Product
from .money import round_money
from .tables import customers, order_items, products

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _clean(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


async def _write(session: AsyncSession, statement, conflict_message: str) -> None:
    try:
        await session.execute(statement)
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise ConflictError(conflict_message) from e
    except SQLAlchemyError as e:
        await session.rollback()
        raise StorageError(f"store failure: {e}") from e


async def _email_taken(session: AsyncSession, email: str, exclude_id: UUID | None = None) -> bool:
    condition = customers.c.email == email
    if exclude_id is not None:
        condition = condition & (customers.c.id != exclude_id)
    result = await session.execute(select(exists().where(condition)))
    return bool(result.scalar())


# ── 顧客 ────────────────────────────────────────


async def create_customer(
    session: AsyncSession,
    full_name: str,
    email: str,
    phone_number: str | None = None,
    clock: Clock = utcnow,
) -> Outcome[Customer]:
    """
    顧客登録

    メールアドレスは前後の空白を除いて小文字化し、一意であること。
    """
    normalized = normalize_email(email)
    if await _email_taken(session, normalized):
        return Outcome.failed(
            ConflictError("Email already exists.", entity="customer", rule="unique email")
        )

    customer = Customer(
        id=uuid4(),
        full_name=full_name.strip(),
        email=normalized,
        phone_number=_clean(phone_number),
        created_at=clock(),
    )
    try:
        await _write(session, insert(customers).values(**customer.__dict__), "Email already exists.")
    except (ConflictError, StorageError) as e:
        return Outcome.failed(e)

    logger.info("Customer created: id=%s", customer.id)
    return Outcome.ok(customer)


async def update_customer(
    session: AsyncSession,
    customer_id: UUID,
    full_name: str,
    email: str,
    phone_number: str | None = None,
) -> Outcome[Customer]:
    """顧客更新。メールアドレスを変える場合は他の顧客と重複しないこと。"""
    result = await session.execute(select(customers).where(customers.c.id == customer_id))
    row = result.fetchone()
    if not row:
        return Outcome.failed(
            NotFoundError("Customer not found.", entity="customer", entity_id=customer_id)
        )

    customer = Customer(**row._mapping)
    normalized = normalize_email(email)
    if normalized != customer.email:
        if await _email_taken(session, normalized, exclude_id=customer_id):
            return Outcome.failed(
                ConflictError(
                    "Email already exists.",
                    entity="customer",
                    entity_id=customer_id,
                    rule="unique email",
                )
            )
        customer.email = normalized

    customer.full_name = full_name.strip()
    customer.phone_number = _clean(phone_number)

    statement = (
        update(customers)
        .where(customers.c.id == customer_id)
        .values(
            full_name=customer.full_name,
            email=customer.email,
            phone_number=customer.phone_number,
        )
    )
    try:
        await _write(session, statement, "Email already exists.")
    except (ConflictError, StorageError) as e:
        return Outcome.failed(e)
    return Outcome.ok(customer)


# ── 商品 ────────────────────────────────────────


async def create_product(
    session: AsyncSession,
    name: str,
    description: str | None,
    price: Decimal,
    stock: int,
    clock: Clock = utcnow,
) -> Outcome[Product]:
    """商品登録。在庫は 0 以上、価格は 0 より大きく、小数2桁に丸めて保存する。"""
    if stock < 0:
        return Outcome.failed(
            ValidationError("Stock cannot be negative.", entity="product", rule="negative stock")
        )
    if price <= 0:
        return Outcome.failed(
            ValidationError(
                "Price must be greater than zero.", entity="product", rule="price"
            )
        )

    product = Product(
        id=uuid4(),
        name=name.strip(),
        description=_clean(description),
        price=round_money(price),
        stock=stock,
        created_at=clock(),
    )
    try:
        await _write(
            session, insert(products).values(**product.__dict__), "Product could not be created."
        )
    except (ConflictError, StorageError) as e:
        return Outcome.failed(e)

    logger.info("Product created: id=%s stock=%s", product.id, product.stock)
    return Outcome.ok(product)


async def update_product(
    session: AsyncSession,
    product_id: UUID,
    name: str,
    description: str | None,
    price: Decimal,
    clock: Clock = utcnow,
) -> Outcome[Product]:
    """
    商品の名前・説明・価格を更新する。在庫は変えない（在庫は adjust_stock で）。
    既存の注文明細の単価はスナップショットなので影響を受けない。
    """
    if price <= 0:
        return Outcome.failed(
            ValidationError(
                "Price must be greater than zero.",
                entity="product",
                entity_id=product_id,
                rule="price",
            )
        )

    result = await session.execute(select(products).where(products.c.id == product_id))
    row = result.fetchone()
    if not row:
        return Outcome.failed(
            NotFoundError("Product not found.", entity="product", entity_id=product_id)
        )

    product = Product(**row._mapping)
    product.name = name.strip()
    product.description = _clean(description)
    product.price = round_money(price)
    product.updated_at = clock()

    statement = (
        update(products)
        .where(products.c.id == product_id)
        .values(
            name=product.name,
            description=product.description,
            price=product.price,
            updated_at=product.updated_at,
        )
    )
    try:
        await _write(session, statement, "Product could not be updated.")
    except (ConflictError, StorageError) as e:
        return Outcome.failed(e)
    return Outcome.ok(product)


async def delete_product(session: AsyncSession, product_id: UUID) -> Outcome[None]:
    """商品削除。注文履歴がある商品は削除できない。"""
    result = await session.execute(select(products.c.id).where(products.c.id == product_id))
    if result.fetchone() is None:
        return Outcome.failed(
            NotFoundError("Product not found.", entity="product", entity_id=product_id)
        )

    result = await session.execute(
        select(exists().where(order_items.c.product_id == product_id))
    )
    if result.scalar():
        return Outcome.failed(
            ConflictError(
                "Cannot delete a product that has order history.",
                entity="product",
                entity_id=product_id,
                rule="order history",
            )
        )

    try:
        await _write(
            session,
            delete(products).where(products.c.id == product_id),
            "Cannot delete a product that has order history.",
        )
    except (ConflictError, StorageError) as e:
        return Outcome.failed(e)

    logger.info("Product deleted: id=%s", product_id)
    return Outcome.ok(None)


# ── デモデータ ──────────────────────────────────


async def seed_demo_data(session: AsyncSession, clock: Clock = utcnow) -> None:
    """商品・顧客が空のときだけデモデータを投入する。"""
    now = clock()

    product_count = await session.scalar(select(func.count()).select_from(products))
    if not product_count:
        await session.execute(
            insert(products).values(
                [
                    {
                        "id": uuid4(),
                        "name": "Sample Laptop",
                        "description": "Demo product",
                        "price": Decimal("1200.00"),
                        "stock": 5,
                        "created_at": now,
                    },
                    {
                        "id": uuid4(),
                        "name": "Sample Phone",
                        "description": "Demo product",
                        "price": Decimal("650.00"),
                        "stock": 10,
                        "created_at": now,
                    },
                ]
            )
        )
        logger.info("Seeded demo products")

    customer_count = await session.scalar(select(func.count()).select_from(customers))
    if not customer_count:
        await session.execute(
            insert(customers).values(
                id=uuid4(),
                full_name="Demo Customer",
                email="customer@sales.local",
                created_at=now,
            )
        )
        logger.info("Seeded demo customer")

    await session.commit()
