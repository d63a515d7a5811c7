import os

# must be set before any service module is imported
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ["OBSERVABILITY_ENABLED"] = "false"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from decimal import Decimal

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from shared.config.database import Base, get_db, get_session_factory
from shared.security import create_access_token, limiter
from shared.security.dependencies import Actor

import main
from services.mileage_service.main import mileage_app
from services.order_service.main import order_app
from services.order_service.schemas import OrderCreate, OrderItemCreate
from services.order_service.service import OrderService
from services.payment_service.main import payment_app

INTERNAL_KEY = os.environ["INTERNAL_API_KEY"]
INTERNAL_HEADERS = {"X-Internal-API-Key": INTERNAL_KEY}

# SQLite has no schemas; map every service schema onto the default one
SCHEMA_MAP = {"order_schema": None, "payment_schema": None, "mileage_schema": None}

limiter.enabled = False


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        execution_options={"schema_translate_map": SCHEMA_MAP},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    apps = (order_app, payment_app, mileage_app)
    for app in apps:
        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    for app in apps:
        app.dependency_overrides.clear()


def bearer(sub: str, role: str = "customer") -> dict:
    token = create_access_token({"sub": sub, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer():
    return Actor(actor_id="cust-1", role="customer")


@pytest.fixture
def other_customer():
    return Actor(actor_id="cust-2", role="customer")


@pytest.fixture
def admin():
    return Actor(actor_id="admin-1", role="admin")


def order_data(**overrides) -> OrderCreate:
    fields = {
        "channel_id": "web",
        "currency": "KRW",
        "items": [
            OrderItemCreate(
                product_variant_id="variant-1",
                seller_id="seller-a",
                quantity=2,
                unit_price=Decimal("5000"),
                total_price=Decimal("10000"),
            )
        ],
    }
    fields.update(overrides)
    return OrderCreate(**fields)


@pytest.fixture
async def pending_order(db, customer):
    return await OrderService.create_order(db, customer, order_data())
