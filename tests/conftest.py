"""
Pytest configuration and fixtures for the sales service.

Engine tests run against the in-memory store; SQL store and API tests run
against an in-memory SQLite database through aiosqlite.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import jwt
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app import auth, main
from app.engine import OrderEngine
from app.memory_store import InMemoryDatabase, InMemoryOrderStore
from app.models import Customer, Product
from app.tables import metadata

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_token(role="Admin", expires_in=timedelta(hours=1), key=None, **claims):
    """Sign a bearer token the way the identity provider does."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(uuid4()),
        "email": "admin@sales.local",
        "iat": now,
        "exp": now + expires_in,
        **claims,
    }
    if role is not None:
        payload["role"] = role
    return jwt.encode(payload, key or auth.JWT_SIGNING_KEY, algorithm=auth.JWT_ALGORITHM)


class RecordingPublisher:
    def __init__(self) -> None:
        self.events = []

    async def publish(self, event) -> None:
        self.events.append(event)

    @property
    def event_types(self) -> list[str]:
        return [type(e).__name__ for e in self.events]


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def make_engine(db, clock, publisher):
    """Build an engine with its own unit of work over the shared database."""

    def factory(store=None):
        return OrderEngine(store or InMemoryOrderStore(db), clock=clock, publisher=publisher)

    return factory


@pytest.fixture
def order_engine(make_engine):
    return make_engine()


@pytest.fixture
def customer(db):
    return db.add_customer(
        Customer(
            id=uuid4(),
            full_name="Ada Lovelace",
            email="ada@example.com",
            created_at=FIXED_NOW,
        )
    )


@pytest.fixture
def make_product(db):
    def factory(name="Widget", price="10.00", stock=10):
        return db.add_product(
            Product(
                id=uuid4(),
                name=name,
                price=Decimal(price),
                stock=stock,
                created_at=FIXED_NOW,
            )
        )

    return factory


# ── SQL ─────────────────────────────────────────


@pytest.fixture
async def sql_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(sql_engine):
    return sessionmaker(sql_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(session_factory, publisher):
    async def override_session():
        async with session_factory() as session:
            yield session

    main.app.dependency_overrides[main.get_session] = override_session
    main.app.dependency_overrides[main.get_publisher] = lambda: publisher
    transport = ASGITransport(app=main.app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"Authorization": f"Bearer {make_token()}"},
    ) as client:
        yield client
    main.app.dependency_overrides.clear()
