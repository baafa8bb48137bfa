"""Pytest fixtures for order service tests."""

from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from order_service import models  # noqa: F401  registers the tables
from order_service.database import Base
from order_service.errors import PublishError
from order_service.logic import PricingRules
from order_service.messaging.publishers import EventPublisher
from order_service.schemas import Address, CreateOrderItemRequest, CreateOrderRequest
from order_service.service import OrderService
from order_service.store import InMemoryOrderStore


class RecordingPublisher(EventPublisher):
    """Keeps every published event; raises PublishError while ``fail`` is set."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events = []
        self.closed = False

    async def publish_event(self, exchange, routing_key, payload):
        if self.fail:
            raise PublishError(exchange, routing_key, "broker unavailable")
        self.events.append((exchange, routing_key, payload))

    @property
    def routing_keys(self):
        return [routing_key for _, routing_key, _ in self.events]

    async def close(self):
        self.closed = True


@pytest.fixture
def rules():
    return PricingRules(
        tax_rate=Decimal("0.08"),
        free_shipping_threshold=Decimal("100.00"),
        default_shipping_cost=Decimal("10.00"),
        currency="USD",
        order_number_prefix="ORD",
    )


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def service(store, publisher, rules):
    return OrderService(store, publisher, rules=rules, enforce_transitions=True, exchange="orders.exchange")


@pytest.fixture
def make_request():
    """Builds a CreateOrderRequest from (unit_price, quantity) pairs."""

    def _make(*lines, customer_id="cust-1"):
        address = Address(address_line1="1 Main St", city="Springfield", state="IL", zip_code="62701", country="US")
        return CreateOrderRequest(
            customer_id=customer_id,
            customer_name="Jane Doe",
            customer_email="jane@example.com",
            items=[
                CreateOrderItemRequest(
                    product_id=f"prod-{i}",
                    product_name=f"Product {i}",
                    unit_price=Decimal(price),
                    quantity=quantity,
                )
                for i, (price, quantity) in enumerate(lines)
            ],
            shipping_address=address,
            billing_address=address,
        )

    return _make


@pytest.fixture
async def session_factory(tmp_path):
    """File-backed SQLite database with the order tables; each session gets its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
