"""Shared fixtures: an in-memory SQLite database and a wired service graph."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("PAYMENT_SIMULATION_MODE", "true")

from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from gasmarket.common.auth import Principal
from gasmarket.common.db import Base
from gasmarket.services.api_gateway.main import build_marketplace
from gasmarket.services.inventory.models import CartItem, Listing
from gasmarket.services.notification import models as _notification_models  # noqa: F401
from gasmarket.services.orders.models import Order
from gasmarket.services.orders.schemas import PlaceOrderRequest
from gasmarket.services.payments import models as _payment_models  # noqa: F401
from gasmarket.services.wallet import models as _wallet_models  # noqa: F401

AGENT_ID = "agent-1"
CUSTOMER_ID = "customer-1"


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture()
def mp(session_factory):
    return build_marketplace(session_factory)


@pytest.fixture()
def customer():
    return Principal(user_id=CUSTOMER_ID, user_type="customer")


@pytest.fixture()
def other_customer():
    return Principal(user_id="customer-2", user_type="customer")


@pytest.fixture()
def agent():
    return Principal(user_id=AGENT_ID, user_type="agent")


@pytest.fixture()
def listing(session_factory):
    """13kg refill at KES 1200 with a KES 100 delivery fee and 5 units in stock."""

    with session_factory() as db:
        row = Listing(
            agent_id=AGENT_ID,
            brand_name="Total",
            size="13kg",
            cylinder_condition="refilled",
            selling_price=Decimal("1200.00"),
            delivery_available=True,
            delivery_fee=Decimal("100.00"),
            available_quantity=5,
            is_available=True,
            rating=Decimal("0"),
            total_orders=0,
        )
        db.add(row)
        db.flush()
        db.add(CartItem(customer_id=CUSTOMER_ID, listing_id=row.id, agent_id=AGENT_ID, quantity=2))
        db.commit()
        return row


@pytest.fixture()
def read_listing(session_factory):
    def _read(listing_id: str) -> Listing:
        with session_factory() as db:
            return db.get(Listing, listing_id)

    return _read


@pytest.fixture()
def read_order(session_factory):
    def _read(order_id: str) -> Order:
        with session_factory() as db:
            return db.get(Order, order_id)

    return _read


@pytest.fixture()
def cart_rows(session_factory):
    def _count(customer_id: str = CUSTOMER_ID) -> int:
        with session_factory() as db:
            return len(db.execute(select(CartItem).where(CartItem.customer_id == customer_id)).scalars().all())

    return _count


@pytest.fixture()
def place(mp, customer, listing):
    """Place an order for the seeded listing; defaults to 2 units paid in cash."""

    def _place(quantity: int = 2, payment_method: str = "cash", principal: Principal | None = None):
        req = PlaceOrderRequest(
            listing_id=listing.id,
            quantity=quantity,
            delivery_address="Kilimani, Nairobi",
            payment_method=payment_method,
        )
        return mp.orchestrator.place_order(principal or customer, req)

    return _place
