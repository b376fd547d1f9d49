import os
from decimal import Decimal
from pathlib import Path

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import select

from order_intake.db import build_engine, build_session_factory, init_db
from order_intake.models import Product, User
from order_intake.notifications import FakeMessageSender, NotificationDispatcher
from order_intake.pipeline import OrderIntakeService

DEFAULT_USERS = [
    {"id": 1, "name": "Ana Quispe", "email": "ana@example.pe"},
    {"id": 2, "name": "Luis Rojas", "email": "luis@example.pe"},
]

DEFAULT_PRODUCTS = [
    {"id": 3, "name": "Casaca", "price": Decimal("120.00"), "stock": 4},
    {"id": 5, "name": "Polo Basico", "price": Decimal("35.00"), "stock": 10},
    {"id": 7, "name": "Gorra", "price": Decimal("25.00"), "stock": 1},
    {"id": 9, "name": "Zapatillas", "price": Decimal("199.90"), "stock": 6},
]


def pytest_collection_modifyitems(config, items):
    """Mark tests based on their directory location."""
    for item in items:
        test_path = str(Path(item.fspath))
        if "/unit/" in test_path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in test_path:
            item.add_marker(pytest.mark.integration)


@pytest.fixture()
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'shop.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture()
def seed(session_factory):
    def _seed(users=DEFAULT_USERS, products=DEFAULT_PRODUCTS):
        with session_factory.begin() as s:
            s.add_all(User(**u) for u in users)
            s.add_all(Product(**p) for p in products)

    return _seed


@pytest.fixture()
def catalog(seed):
    seed()


@pytest.fixture()
def stock_of(session_factory):
    def _stock_of(product_id):
        with session_factory() as s:
            return s.execute(select(Product.stock).where(Product.id == product_id)).scalar_one()

    return _stock_of


@pytest.fixture()
def set_stock(session_factory):
    def _set_stock(product_id, stock):
        with session_factory.begin() as s:
            s.get(Product, product_id).stock = stock

    return _set_stock


@pytest.fixture()
def service(session_factory):
    return OrderIntakeService(session_factory)


@pytest.fixture()
def sender():
    return FakeMessageSender()


@pytest.fixture()
def dispatcher(sender):
    return NotificationDispatcher(sender=sender)


def _make_body(**overrides):
    defaults = {
        "customer_details": {
            "name": "Ana Quispe",
            "email": "ana@example.pe",
            "address": "Av. Arequipa 123, Lima",
        },
        "items": [{"productId": 5, "quantity": 2, "price": 35.0, "title": "Polo Basico"}],
        "total": 70.0,
        "type_payment": "card",
    }
    defaults.update(overrides)
    return defaults


@pytest.fixture()
def make_body():
    return _make_body
