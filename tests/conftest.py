"""Shared fixtures: in-memory SQLite session, fake gateway / lock / notification dispatcher."""
import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("PUBLIC_BASE_URL", "https://shop.example.com")

from datetime import timedelta  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from checkout.db.base import Base  # noqa: E402
from checkout.models import PaymentSession, Product  # noqa: E402
from checkout.utils.dates import utcnow  # noqa: E402


class FakeGateway:
    """Scripted create_order responses; an Exception instance in the script is raised."""

    def __init__(self, responses=None, default=None, status_response=None):
        self.responses = list(responses or [])
        self.default = default if default is not None else {"status": "success", "data": {"order_id": "ZP-1"}}
        self.status_response = status_response or {}
        self.calls = []
        self.status_calls = []

    def create_order(self, **kwargs):
        self.calls.append(kwargs)
        resp = self.responses.pop(0) if self.responses else self.default
        if isinstance(resp, Exception):
            raise resp
        return resp

    def get_order_status(self, order_id):
        self.status_calls.append(order_id)
        if isinstance(self.status_response, Exception):
            raise self.status_response
        return self.status_response


class FakeLock:
    def __init__(self, held=None):
        self.held = set(held or [])
        self.released = []

    def check_and_set(self, key, ttl_seconds=None):
        if key in self.held:
            return False
        self.held.add(key)
        return True

    def release(self, key):
        self.held.discard(key)
        self.released.append(key)


class FakeDispatcher:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def __call__(self, order_id):
        self.calls.append(order_id)
        if self.error is not None:
            raise self.error


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def lock():
    return FakeLock()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def products(db):
    rows = [
        Product(id="p-shirt", name="Shirt", price=15000, is_active=True),
        Product(id="p-cap", name="Cap", price=5000, is_active=True),
        Product(id="p-old", name="Retired", price=1000, is_active=False),
    ]
    db.add_all(rows)
    db.commit()
    return {p.id: p for p in rows}


def _make_session(db, **kwargs):
    """Persist a PaymentSession; age_minutes backdates created_at."""
    age = kwargs.pop("age_minutes", 0)
    defaults = {
        "transaction_reference": "TX" + "A" * 24,
        "user_id": "user-1",
        "amount": 35000,
        "currency": "TZS",
        "provider": "M-Pesa",
        "channel": "vodacom",
        "phone_number": "0712345678",
        "order_data": {
            "items": [
                {"product_id": "p-shirt", "quantity": 2, "price": 15000},
                {"product_id": "p-cap", "quantity": 1, "price": None},
            ],
            "shipping_address": "Plot 12, Dar es Salaam",
            "notes": "",
        },
        "status": "processing",
        "gateway_transaction_id": "ZP-1",
    }
    defaults.update(kwargs)
    session = PaymentSession(**defaults)
    if age:
        session.created_at = utcnow() - timedelta(minutes=age)
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


@pytest.fixture
def make_session(db):
    def factory(**kwargs):
        return _make_session(db, **kwargs)

    return factory
