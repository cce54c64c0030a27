"""
Sales Service — FastAPI エントリーポイント

顧客・商品・注文を管理する販売管理 API。
注文の作成・更新・削除と在庫調整は OrderEngine に委譲し、
在庫の増減と注文の保存を1トランザクションで行う。
コミット後の注文イベントは Redis Pub/Sub (order_events) に発行する。
更新系は Admin ロールの Bearer トークンを要求する（auth.py）。
"""

import logging
import os
from contextlib import asynccontextmanager
from decimal import Decimal
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .auth import get_current_user, require_admin
from .engine import OrderEngine
from .errors import ErrorKind, SalesError
from .events import EventPublisher, NullEventPublisher, RedisEventPublisher
from .models import OrderLine
from .sql_store import SqlOrderStore
from .tables import metadata


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./sales.db")
REDIS_URL = os.environ.get("REDIS_URL", "")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get(
        "CORS_ORIGINS", "http://localhost:3000,http://localhost:5173"
    ).split(",")
    if origin.strip()
]
DB_CREATE_SCHEMA = _flag("DB_CREATE_SCHEMA", "true")
SEED_DEMO_DATA = _flag("SEED_DEMO_DATA", "false")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    if DB_CREATE_SCHEMA:
        async with engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        logger.info("Database schema ensured")
    if SEED_DEMO_DATA:
        async with async_session() as session:
            await commands.seed_demo_data(session)
    if REDIS_URL:
        redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    if redis_pool is not None:
        await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Sales Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Dependencies ────────────────────────────────


async def get_session():
    async with async_session() as session:
        yield session


def get_publisher() -> EventPublisher:
    if redis_pool is None:
        return NullEventPublisher()
    return RedisEventPublisher(redis_pool)


def get_order_engine(
    session: AsyncSession = Depends(get_session),
    publisher: EventPublisher = Depends(get_publisher),
) -> OrderEngine:
    return OrderEngine(SqlOrderStore(session), publisher=publisher)


STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.STORAGE: 503,
}


def fail(error: SalesError) -> HTTPException:
    return HTTPException(status_code=STATUS_BY_KIND[error.kind], detail=error.to_dict())


# ── Request / Response Models ────────────────────


class CustomerRequest(BaseModel):
    full_name: str
    email: str
    phone_number: str | None = None


class CreateProductRequest(BaseModel):
    name: str
    description: str | None = None
    price: Decimal
    stock: int


class UpdateProductRequest(BaseModel):
    name: str
    description: str | None = None
    price: Decimal


class UpdateStockRequest(BaseModel):
    amount: int


class OrderItemRequest(BaseModel):
    product_id: UUID
    quantity: int


class OrderRequest(BaseModel):
    customer_id: UUID
    items: list[OrderItemRequest]

    def lines(self) -> list[OrderLine]:
        return [OrderLine(item.product_id, item.quantity) for item in self.items]


class ProductOut(BaseModel):
    id: UUID
    name: str
    description: str | None
    price: Decimal
    stock: int
    created_at: str | None
    updated_at: str | None


class OrderItemOut(BaseModel):
    id: UUID
    product_id: UUID
    product_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class OrderOut(BaseModel):
    id: UUID
    customer_id: UUID
    customer_name: str
    customer_email: str
    created_at: str | None
    total_amount: Decimal
    items: list[OrderItemOut]


# ── Customers ───────────────────────────────────


@app.get("/api/customers", dependencies=[Depends(require_admin)])
async def list_customers(email: str | None = None, session: AsyncSession = Depends(get_session)):
    """顧客一覧。email を指定した場合はその顧客1件を返す。"""
    if email and email.strip():
        customer = await queries.find_customer_by_email(session, email)
        if not customer:
            raise HTTPException(404, "Customer not found")
        return customer
    return await queries.list_customers(session)


@app.get("/api/customers/{customer_id}", dependencies=[Depends(require_admin)])
async def get_customer(customer_id: UUID, session: AsyncSession = Depends(get_session)):
    customer = await queries.get_customer(session, customer_id)
    if not customer:
        raise HTTPException(404, "Customer not found")
    return customer


@app.post("/api/customers", status_code=201, dependencies=[Depends(require_admin)])
async def create_customer(req: CustomerRequest, session: AsyncSession = Depends(get_session)):
    outcome = await commands.create_customer(
        session, req.full_name, req.email, req.phone_number
    )
    if not outcome.success:
        raise fail(outcome.error)
    return await queries.get_customer(session, outcome.value.id)


@app.put("/api/customers/{customer_id}", dependencies=[Depends(require_admin)])
async def update_customer(
    customer_id: UUID, req: CustomerRequest, session: AsyncSession = Depends(get_session)
):
    outcome = await commands.update_customer(
        session, customer_id, req.full_name, req.email, req.phone_number
    )
    if not outcome.success:
        raise fail(outcome.error)
    return await queries.get_customer(session, customer_id)


# ── Products ────────────────────────────────────


@app.get("/api/products", response_model=list[ProductOut])
async def list_products(session: AsyncSession = Depends(get_session)):
    return await queries.list_products(session)


@app.get("/api/products/{product_id}", response_model=ProductOut)
async def get_product(product_id: UUID, session: AsyncSession = Depends(get_session)):
    product = await queries.get_product(session, product_id)
    if not product:
        raise HTTPException(404, "Product not found")
    return product


@app.post(
    "/api/products",
    status_code=201,
    response_model=ProductOut,
    dependencies=[Depends(require_admin)],
)
async def create_product(req: CreateProductRequest, session: AsyncSession = Depends(get_session)):
    outcome = await commands.create_product(
        session, req.name, req.description, req.price, req.stock
    )
    if not outcome.success:
        raise fail(outcome.error)
    return await queries.get_product(session, outcome.value.id)


@app.put(
    "/api/products/{product_id}",
    response_model=ProductOut,
    dependencies=[Depends(require_admin)],
)
async def update_product(
    product_id: UUID, req: UpdateProductRequest, session: AsyncSession = Depends(get_session)
):
    outcome = await commands.update_product(
        session, product_id, req.name, req.description, req.price
    )
    if not outcome.success:
        raise fail(outcome.error)
    return await queries.get_product(session, product_id)


@app.put(
    "/api/products/{product_id}/stock",
    response_model=ProductOut,
    dependencies=[Depends(require_admin)],
)
async def update_stock(
    product_id: UUID,
    req: UpdateStockRequest,
    session: AsyncSession = Depends(get_session),
    order_engine: OrderEngine = Depends(get_order_engine),
):
    """在庫の手動補正（amount は正負どちらも可、0 は不可）"""
    outcome = await order_engine.adjust_stock(product_id, req.amount)
    if not outcome.success:
        raise fail(outcome.error)
    return await queries.get_product(session, product_id)


@app.delete(
    "/api/products/{product_id}",
    status_code=204,
    dependencies=[Depends(require_admin)],
)
async def delete_product(product_id: UUID, session: AsyncSession = Depends(get_session)):
    outcome = await commands.delete_product(session, product_id)
    if not outcome.success:
        raise fail(outcome.error)
    return Response(status_code=204)


# ── Orders ──────────────────────────────────────


@app.get(
    "/api/orders",
    response_model=list[OrderOut],
    dependencies=[Depends(get_current_user)],
)
async def list_orders(
    customer_email: str | None = None, session: AsyncSession = Depends(get_session)
):
    return await queries.list_orders(session, customer_email)


@app.get(
    "/api/orders/{order_id}",
    response_model=OrderOut,
    dependencies=[Depends(get_current_user)],
)
async def get_order(order_id: UUID, session: AsyncSession = Depends(get_session)):
    order = await queries.get_order(session, order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    return order


@app.post(
    "/api/orders",
    status_code=201,
    response_model=OrderOut,
    dependencies=[Depends(require_admin)],
)
async def create_order(
    req: OrderRequest,
    session: AsyncSession = Depends(get_session),
    order_engine: OrderEngine = Depends(get_order_engine),
):
    """注文作成（在庫引き当てと注文保存を1トランザクションで）"""
    outcome = await order_engine.create_order(req.customer_id, req.lines())
    if not outcome.success:
        raise fail(outcome.error)
    return await queries.get_order(session, outcome.value.id)


@app.put(
    "/api/orders/{order_id}",
    response_model=OrderOut,
    dependencies=[Depends(require_admin)],
)
async def update_order(
    order_id: UUID,
    req: OrderRequest,
    session: AsyncSession = Depends(get_session),
    order_engine: OrderEngine = Depends(get_order_engine),
):
    """注文更新（既存明細の在庫を戻してから新しい明細で引き直す）"""
    outcome = await order_engine.update_order(order_id, req.customer_id, req.lines())
    if not outcome.success:
        raise fail(outcome.error)
    return await queries.get_order(session, order_id)


@app.delete(
    "/api/orders/{order_id}",
    status_code=204,
    dependencies=[Depends(require_admin)],
)
async def delete_order(
    order_id: UUID, order_engine: OrderEngine = Depends(get_order_engine)
):
    outcome = await order_engine.delete_order(order_id)
    if not outcome.success:
        raise fail(outcome.error)
    return Response(status_code=204)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "sales-service"}
