"""Pytest fixtures for order service tests."""

import json
import os
from decimal import Decimal

# main.py reads DATABASE_URL at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest
from sqlalchemy import select

from order_service.auth import Principal, Role
from order_service.database import create_schema, make_engine, make_session_factory
from order_service.models import Address, Customer, Order, Product

SHIPPING = {
    "first_name": "Hanako",
    "last_name": "Yamada",
    "address_line1": "1-2-3 Chiyoda",
    "city": "Tokyo",
    "state": "Tokyo",
    "postal_code": "100-0001",
    "country": "JP",
}
BILLING = {**SHIPPING, "address_line1": "4-5-6 Minato"}


class RecordingRedis:
    """Stands in for the Redis client and records everything published."""

    def __init__(self):
        self.published = []

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        return 1

    @property
    def event_types(self):
        return [message["event_type"] for _, message in self.published]


@pytest.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
async def seed(session_factory):
    """Two customers, one address, and a small catalogue."""
    async with session_factory() as s:
        s.add_all([
            Customer(id=1, username="hanako", email="hanako@example.com",
                     first_name="Hanako", last_name="Yamada"),
            Customer(id=2, username="taro", email="taro@example.com",
                     first_name="Taro", last_name="Suzuki"),
            Address(id=10, customer_id=1, first_name="Hanako", last_name="Yamada",
                    address_line1="1-2-3 Chiyoda", city="Tokyo", state="Tokyo",
                    postal_code="100-0001", country="JP"),
            Product(id=1, supplier_id=100, name="Keyboard", sku="KB-1",
                    price=Decimal("50.00"), quantity=10),
            Product(id=2, supplier_id=100, name="Mouse", sku="MS-1",
                    price=Decimal("20.00"), quantity=3),
            Product(id=3, supplier_id=200, name="E-book", sku="EB-1",
                    price=Decimal("12.50"), quantity=0, is_digital=True),
            Product(id=4, supplier_id=200, name="Prototype", sku="PR-1",
                    price=Decimal("99.00"), quantity=5, is_published=False),
        ])
        await s.commit()


@pytest.fixture
def customer():
    return Principal.for_role(1, Role.CUSTOMER)


@pytest.fixture
def other_customer():
    return Principal.for_role(2, Role.CUSTOMER)


@pytest.fixture
def admin():
    return Principal.for_role(900, Role.ADMIN)


@pytest.fixture
def supplier():
    return Principal.for_role(100, Role.SUPPLIER)


@pytest.fixture
def stock(session_factory):
    """Read a product's current quantity through a fresh session."""

    async def read(product_id):
        async with session_factory() as s:
            return await s.scalar(select(Product.quantity).where(Product.id == product_id))

    return read


@pytest.fixture
def fetch_order(session_factory):
    """Reload an order (with items) through a fresh session."""

    async def read(order_id):
        async with session_factory() as s:
            return await s.get(Order, order_id)

    return read


@pytest.fixture
def supplier_with_customer_id():
    """A supplier whose user id happens to equal customer 1's id."""
    return Principal.for_role(1, Role.SUPPLIER)
