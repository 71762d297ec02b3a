"""Pytest configuration and fixtures for MicroFarm tests.

Every test gets a fresh in-memory SQLite database (aiosqlite, StaticPool so
all sessions share the one connection).  Batch jobs that open their own
sessions get ``session_factory``; service tests use ``db_session``.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("JOB_LOCK_BACKEND", "local")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("NOTIFICATION_BACKEND", "log")

from datetime import date, datetime
from typing import AsyncGenerator, Sequence

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import microfarm.models  # noqa: F401
from microfarm.database import Base, get_db
from microfarm.main import app
from microfarm.models.order import Frequency, Order, OrderItem, OrderStatus, OrderType
from microfarm.models.product import Product, ProductMixComponent, ProductVariation
from microfarm.models.recipe import Recipe
from microfarm.services.notifications import DeliveryResult


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(db_session) -> AsyncGenerator[AsyncClient, None]:
    """Test client with the database dependency pointed at ``db_session``."""

    async def override_get_db():
        yield db_session
        await db_session.flush()

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ── Notifiers ────────────────────────────────────────────────────

class RecordingNotifier:
    """Keeps every message; recipients listed in ``failing`` fail."""

    def __init__(self, failing: Sequence[str] = ()):
        self.failing = set(failing)
        self.sent: list[tuple[str, str]] = []

    async def send(self, recipients, message):
        results = []
        for recipient in recipients:
            if recipient in self.failing:
                results.append(DeliveryResult(recipient=recipient, ok=False, error="unreachable"))
            else:
                self.sent.append((recipient, message))
                results.append(DeliveryResult(recipient=recipient, ok=True))
        return results


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


# ── Test Data Fixtures ───────────────────────────────────────────

@pytest_asyncio.fixture
async def pea_recipe(db_session: AsyncSession) -> Recipe:
    """Soaked, with blackout: 12h soak + 2 germ + 3 blackout + 6 light."""
    recipe = Recipe(
        name="Pea Shoots",
        variety="Speckled Pea",
        seed_soak_hours=12,
        germination_days=2,
        blackout_days=3,
        light_days=6,
        expected_yield_grams=300,
    )
    db_session.add(recipe)
    await db_session.flush()
    return recipe


@pytest_asyncio.fixture
async def radish_recipe(db_session: AsyncSession) -> Recipe:
    """No soak, no blackout: 2 germ + 6 light."""
    recipe = Recipe(
        name="Radish",
        variety="Rambo",
        seed_soak_hours=0,
        germination_days=2,
        blackout_days=0,
        light_days=6,
        expected_yield_grams=200,
    )
    db_session.add(recipe)
    await db_session.flush()
    return recipe


@pytest_asyncio.fixture
async def pea_product(db_session: AsyncSession, pea_recipe: Recipe) -> Product:
    product = Product(name="Pea Shoots", recipe_id=pea_recipe.id)
    product.variations = [ProductVariation(name="Clamshell 100g", fill_weight_grams=100, price=5.0)]
    db_session.add(product)
    await db_session.flush()
    return product


@pytest_asyncio.fixture
async def salad_mix(
    db_session: AsyncSession, pea_recipe: Recipe, radish_recipe: Recipe
) -> Product:
    """60% pea / 40% radish."""
    product = Product(name="Salad Mix")
    product.mix_components = [
        ProductMixComponent(recipe_id=pea_recipe.id, percentage=60),
        ProductMixComponent(recipe_id=radish_recipe.id, percentage=40),
    ]
    product.variations = [ProductVariation(name="Bag 500g", fill_weight_grams=500, price=18.0)]
    db_session.add(product)
    await db_session.flush()
    return product


async def make_template(
    db: AsyncSession,
    product: Product,
    *,
    order_type: OrderType = OrderType.B2B,
    frequency: Frequency = Frequency.WEEKLY,
    start: date = date(2024, 1, 1),
    end: date | None = None,
    interval: int | None = None,
    quantity: float = 10,
) -> Order:
    template = Order(
        customer_name="Green Bistro",
        order_type=order_type,
        status=OrderStatus.PENDING,
        is_recurring=True,
        is_recurring_active=True,
        recurring_frequency=frequency,
        recurring_interval=interval,
        recurring_start_date=start,
        recurring_end_date=end,
        created_at=datetime(2023, 12, 1),
    )
    template.items = [
        OrderItem(
            position=0,
            product_id=product.id,
            price_variation_id=product.variations[0].id,
            quantity=quantity,
            price=product.variations[0].price,
        )
    ]
    template.packaging = []
    db.add(template)
    await db.flush()
    return template


async def make_order(
    db: AsyncSession,
    items: list[tuple[Product, float]],
    *,
    delivery: date,
    harvest: date | None = None,
    order_type: OrderType = OrderType.WEBSITE,
    status: OrderStatus = OrderStatus.PENDING,
) -> Order:
    order = Order(
        customer_name="Corner Cafe",
        order_type=order_type,
        status=status,
        delivery_date=delivery,
        harvest_date=harvest,
    )
    order.items = [
        OrderItem(
            position=idx,
            product_id=product.id,
            price_variation_id=product.variations[0].id if product.variations else None,
            quantity=quantity,
        )
        for idx, (product, quantity) in enumerate(items)
    ]
    db.add(order)
    await db.flush()
    return order


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: API endpoint tests")
