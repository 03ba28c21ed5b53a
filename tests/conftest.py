"""
Pytest configuration and shared test fixtures.

Every test gets its own file-backed SQLite database so transactions, row
counts and concurrent sessions behave like they do in production. Event
sinks and route providers are replaced by in-memory fakes.
"""

import os

os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("APP_REAPER_ENABLED", "false")
os.environ.setdefault("APP_EVENT_SINK_BACKEND", "logging")
os.environ.setdefault("APP_ROUTE_PROVIDER", "nearest_neighbour")

from contextlib import asynccontextmanager  # noqa: E402
from dataclasses import dataclass, field  # noqa: E402
from datetime import date, timedelta  # noqa: E402
from typing import Any, AsyncIterator, Optional, Sequence  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import select, update  # noqa: E402

from fulfillment_engine.core.actor import Actor, ActorRole  # noqa: E402
from fulfillment_engine.core.config import Settings, get_settings  # noqa: E402
from fulfillment_engine.database.base import utc_now  # noqa: E402
from fulfillment_engine.database.connection import (  # noqa: E402
    close_database_connections,
    configure_database,
    create_all,
)
from fulfillment_engine.database.models import (  # noqa: E402
    Customer,
    InventoryTransaction,
    Order,
    Product,
)
from fulfillment_engine.services.notifications.sinks import EventPublisher  # noqa: E402
from fulfillment_engine.services.orders.enums import OrderStatus  # noqa: E402
from fulfillment_engine.services.orders.service import (  # noqa: E402
    FulfillmentService,
    OrderLineRequest,
    OrderResult,
)
from fulfillment_engine.services.orders.validation import business_today  # noqa: E402
from fulfillment_engine.services.routing import service as routing_service  # noqa: E402
from fulfillment_engine.services.routing.provider import (  # noqa: E402
    NearestNeighbourProvider,
    RouteOptimizationProvider,
)

ADMIN = Actor(actor_id="admin-1", role=ActorRole.ADMIN)
MANAGER = Actor(actor_id="manager-1", role=ActorRole.MANAGER)
SALES = Actor(actor_id="sales-1", role=ActorRole.SALES)
PACKER = Actor(actor_id="packer-1", role=ActorRole.PACKER)
DRIVER = Actor(actor_id="driver-1", role=ActorRole.DRIVER)

# Depot defaults to Sydney CBD; these sit a few kilometres out in each direction
AREA_COORDINATES = {
    "north": (-33.80, 151.20),
    "east": (-33.88, 151.27),
    "south": (-33.94, 151.20),
    "west": (-33.87, 151.12),
}


def next_delivery_date(settings: Settings, days_ahead: int = 2) -> date:
    """
    First serviceable delivery date at least ``days_ahead`` days from today.

    Two days ahead is open whatever the time of day, before or after the
    order cutoff.
    """
    candidate = business_today(settings) + timedelta(days=days_ahead)
    while candidate.weekday() in settings.non_delivery_weekdays:
        candidate += timedelta(days=1)
    return candidate


@dataclass
class RecordingSink:
    """Event sink that keeps every handed-off event in memory."""

    notifications: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    accounting: list[tuple[str, str]] = field(default_factory=list)

    async def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        self.notifications.append((event_type, payload))

    async def sync_accounting(self, order_id: str, idempotency_key: str) -> None:
        self.accounting.append((order_id, idempotency_key))

    def event_types(self) -> list[str]:
        return [event_type for event_type, _ in self.notifications]


class FulfillmentHarness:
    """
    Runs service calls in fresh sessions, the way separate requests would.

    Attributes:
        session_factory: Factory bound to the test database
        sink: Recording sink behind the publisher
        settings: Settings passed to every service
        provider: Route provider passed to every service
    """

    def __init__(self, session_factory, sink: RecordingSink, settings: Settings):
        self.session_factory = session_factory
        self.sink = sink
        self.publisher = EventPublisher(sink=sink)
        self.settings = settings
        self.provider: RouteOptimizationProvider = NearestNeighbourProvider()

    @asynccontextmanager
    async def service(self) -> AsyncIterator[FulfillmentService]:
        async with self.session_factory() as session:
            yield FulfillmentService(
                session,
                publisher=self.publisher,
                route_provider=self.provider,
                settings=self.settings,
            )

    async def call(self, method: str, *args, **kwargs):
        try:
            async with self.service() as service:
                return await getattr(service, method)(*args, **kwargs)
        finally:
            # Events go out in the background; tests read them synchronously
            await self.publisher.drain()

    # ------------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------------

    async def add_customer(
        self,
        name: str = "Harbour Bistro",
        credit_limit: Optional[int] = None,
        is_active: bool = True,
    ) -> Customer:
        async with self.session_factory() as session:
            customer = Customer(name=name, credit_limit=credit_limit, is_active=is_active)
            session.add(customer)
            await session.commit()
            return customer

    async def add_product(
        self,
        sku: str,
        stock: int,
        unit_price: int = 500,
        low_stock_threshold: int = 0,
        cost_per_unit: Optional[int] = None,
        expiry_date: Optional[date] = None,
    ) -> Product:
        return await self.call(
            "register_product",
            ADMIN,
            sku=sku,
            name=f"Product {sku}",
            unit_of_measure="box",
            unit_price=unit_price,
            low_stock_threshold=low_stock_threshold,
            opening_stock=stock,
            cost_per_unit=cost_per_unit,
            expiry_date=expiry_date,
        )

    async def create_order(
        self,
        customer: Customer,
        lines: Sequence[tuple[Product, int]],
        area: Optional[str] = "north",
        coordinates: Optional[tuple[float, float]] = None,
        delivery_date: Optional[date] = None,
        actor: Actor = SALES,
    ) -> OrderResult:
        address: dict[str, Any] = {"street": "12 Wharf Rd", "city": "Sydney"}
        if area is not None:
            latitude, longitude = coordinates or AREA_COORDINATES[area]
            address.update(area_tag=area, latitude=latitude, longitude=longitude)
        return await self.call(
            "create_order",
            actor,
            customer.id,
            [OrderLineRequest(product_id=p.id, quantity=q) for p, q in lines],
            address,
            delivery_date or next_delivery_date(self.settings),
            None,
        )

    async def transition(
        self,
        order: Order,
        target: OrderStatus,
        actor: Actor = MANAGER,
        version: Optional[int] = None,
        **extras,
    ) -> Order:
        return await self.call(
            "transition",
            order.id,
            target,
            actor,
            order.version if version is None else version,
            extras=extras,
        )

    async def confirmed_order(
        self, customer: Customer, lines: Sequence[tuple[Product, int]], **kwargs
    ) -> Order:
        result = await self.create_order(customer, lines, **kwargs)
        return await self.transition(result.order, OrderStatus.CONFIRMED)

    async def packing_order(
        self, customer: Customer, lines: Sequence[tuple[Product, int]], **kwargs
    ) -> Order:
        order = await self.confirmed_order(customer, lines, **kwargs)
        return await self.transition(order, OrderStatus.PACKING, actor=PACKER)

    # ------------------------------------------------------------------
    # Reads and direct writes
    # ------------------------------------------------------------------

    async def reload(self, order_id) -> Order:
        return await self.call("get_order", order_id)

    async def stock(self, product_id) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Product.current_stock).where(Product.id == product_id)
            )
            return result.scalar_one()

    async def transactions(self, product_id) -> list[InventoryTransaction]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(InventoryTransaction)
                .where(InventoryTransaction.product_id == product_id)
                .order_by(InventoryTransaction.created_at)
            )
            return list(result.scalars().all())

    async def backdate_packing_activity(self, order_id, minutes: int) -> None:
        """Pretend the last packing activity happened ``minutes`` ago."""
        async with self.session_factory() as session:
            await session.execute(
                update(Order)
                .where(Order.id == order_id)
                .values(last_packing_activity_at=utc_now() - timedelta(minutes=minutes))
            )
            await session.commit()


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    """Settings shared by the harness; timeouts kept short for tests."""
    return get_settings().model_copy(update={"route_provider_timeout_seconds": 1.0})


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database with the full schema."""
    factory = configure_database(f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}")
    await create_all()
    yield factory
    await close_database_connections()


@pytest.fixture(autouse=True)
def fresh_recompute_registry(monkeypatch):
    """Keep in-flight recompute locks from leaking between tests."""
    monkeypatch.setattr(
        routing_service, "recompute_registry", routing_service.RecomputeRegistry()
    )


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def harness(session_factory, sink, settings) -> FulfillmentHarness:
    return FulfillmentHarness(session_factory, sink, settings)


@pytest_asyncio.fixture
async def customer(harness) -> Customer:
    return await harness.add_customer()


@pytest.fixture
def delivery_date(settings) -> date:
    return next_delivery_date(settings)
