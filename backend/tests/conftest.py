"""Pytest configuration and fixtures for FarmBid tests.

Provides an in-memory SQLite database, fake gateway / dispatcher
collaborators, an in-process Redis stand-in for sweep locks, and a
factory for seeding users, contracts and payments.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from redis.exceptions import LockNotOwnedError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import farmbid.models  # noqa: F401  register every table
from farmbid.database import Base, get_db
from farmbid.main import app
from farmbid.models.contract import Contract, Fulfillment
from farmbid.models.payment_method import PaymentMethod
from farmbid.models.recurring_settings import RecurringPaymentSettings
from farmbid.models.transaction import Transaction
from farmbid.models.user import FarmerProduct, User, UserRole
from farmbid.routers.jobs import get_sweeps
from farmbid.services.gateway import ChargeResult, PaymentGateway
from farmbid.services.scheduler import build_sweeps
from farmbid.utils import sweep_lock


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine():
    """One in-memory SQLite database per test (single shared connection)."""
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


# ── Collaborator fakes ───────────────────────────────────────────

class FakeGateway(PaymentGateway):
    """Scripted gateway.  Queue ChargeResults or exceptions in `outcomes`."""

    def __init__(self):
        self.outcomes: list = []
        self.charges: list[dict] = []
        self.retrieved: dict[str, ChargeResult] = {}
        self._counter = 0

    def queue(self, *outcomes):
        self.outcomes.extend(outcomes)

    async def create_off_session_charge(
        self, customer_token, payment_method_token, amount, currency, metadata,
        idempotency_key=None,
    ) -> ChargeResult:
        self._counter += 1
        self.charges.append({
            "customer": customer_token,
            "payment_method": payment_method_token,
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        outcome = self.outcomes.pop(0) if self.outcomes else ChargeResult(
            id=f"pi_test_{self._counter}", status="succeeded"
        )
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def retrieve_charge(self, charge_id: str) -> ChargeResult:
        return self.retrieved.get(charge_id, ChargeResult(id=charge_id, status="processing"))


class FakeDispatcher:
    def __init__(self):
        self.sent: list[dict] = []

    async def notify(self, user_id, type, title, message, data=None, channels=None):
        self.sent.append({
            "user_id": user_id,
            "type": type,
            "title": title,
            "message": message,
            "data": data or {},
            "channels": channels or ["in_app"],
        })

    def of_type(self, type: str) -> list[dict]:
        return [n for n in self.sent if n["type"] == type]

    def for_user(self, user_id: str) -> list[dict]:
        return [n for n in self.sent if n["user_id"] == user_id]


class FakeLock:
    """Token-owned lock over FakeRedis.store, like redis.asyncio.lock.Lock."""

    def __init__(self, redis, name, timeout=None, blocking=True):
        self.redis = redis
        self.name = name
        self.timeout = timeout
        self.token = None

    async def acquire(self):
        token = uuid.uuid4().hex
        if await self.redis.set(self.name, token, nx=True, ex=self.timeout):
            self.token = token
            return True
        return False

    async def release(self):
        if self.token is None or self.redis.store.get(self.name) != self.token:
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        del self.redis.store[self.name]
        self.token = None


class FakeRedis:
    """Just enough of redis.asyncio.Redis for sweep locks and health checks."""

    def __init__(self):
        self.store: dict[str, str] = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def get(self, key):
        return self.store.get(key)

    def lock(self, name, timeout=None, blocking=True):
        return FakeLock(self, name, timeout=timeout, blocking=blocking)

    async def ping(self):
        return True

    async def close(self):
        pass


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch) -> FakeRedis:
    client = FakeRedis()
    monkeypatch.setattr(sweep_lock, "_redis_client", client)
    return client


@pytest.fixture
def sweeps(session_factory, gateway, dispatcher) -> dict:
    return build_sweeps(session_factory, gateway=gateway, dispatcher=dispatcher)


@pytest_asyncio.fixture
async def client(sweeps, session_factory) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client whose requests and job triggers use the test database and fakes."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sweeps] = lambda: sweeps

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ── Test Data Factory ────────────────────────────────────────────

class Factory:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory
        self._seq = 0

    async def _save(self, obj):
        async with self.session_factory() as db:
            db.add(obj)
            await db.commit()
        return obj

    async def get(self, model, id):
        async with self.session_factory() as db:
            return await db.get(model, id)

    async def user(self, role=UserRole.BUYER, **kw) -> User:
        self._seq += 1
        kw.setdefault("email", f"user{self._seq}@example.com")
        kw.setdefault("full_name", f"Test User {self._seq}")
        kw.setdefault("phone", f"+1555000{self._seq:04d}")
        return await self._save(User(role=role, **kw))

    async def buyer(self, **kw) -> User:
        kw.setdefault("stripe_customer_id", "cus_test")
        return await self.user(UserRole.BUYER, **kw)

    async def farmer(self, products=("tomatoes",), **kw) -> User:
        farmer = await self.user(UserRole.FARMER, **kw)
        for name in products:
            await self._save(FarmerProduct(farmer_id=farmer.id, name=name, category="vegetables"))
        return farmer

    async def payment_method(self, user, **kw) -> PaymentMethod:
        kw.setdefault("gateway_token", f"pm_test_{self._seq}")
        kw.setdefault("brand", "visa")
        kw.setdefault("last4", "4242")
        kw.setdefault("exp_month", 12)
        kw.setdefault("exp_year", 2030)
        kw.setdefault("is_default", False)
        return await self._save(PaymentMethod(user_id=user.id, **kw))

    async def settings(self, user, **kw) -> RecurringPaymentSettings:
        return await self._save(RecurringPaymentSettings(user_id=user.id, **kw))

    async def contract(self, buyer, **kw) -> Contract:
        kw.setdefault("product_type", "tomatoes")
        kw.setdefault("product_category", "vegetables")
        kw.setdefault("quantity", Decimal("10"))
        kw.setdefault("max_price", Decimal("12.00"))
        kw.setdefault("delivery_method", "farmer_delivery")
        kw.setdefault("end_time", datetime(2024, 1, 1))
        kw.setdefault("status", "open")
        return await self._save(Contract(buyer_id=buyer.id, **kw))

    async def recurring_contract(self, buyer, **kw) -> Contract:
        kw.setdefault("is_recurring", True)
        kw.setdefault("recurring_frequency", "monthly")
        kw.setdefault("next_delivery_date", datetime(2024, 1, 1))
        kw.setdefault("recurring_end_date", datetime(2024, 12, 31))
        kw.setdefault("status", "active")
        return await self.contract(buyer, **kw)

    async def fulfillment(self, contract, farmer, winning=True, **kw) -> Fulfillment:
        kw.setdefault("price", Decimal("10.00"))
        kw.setdefault("quantity", Decimal("10"))
        kw.setdefault("delivery_fee", Decimal("10.00"))
        if winning:
            kw.setdefault("status", "accepted")
        return await self._save(
            Fulfillment(contract_id=contract.id, farmer_id=farmer.id, is_winning=winning, **kw)
        )

    async def transaction(self, contract, buyer, seller, **kw) -> Transaction:
        kw.setdefault("subtotal", Decimal("100.00"))
        kw.setdefault("platform_fee", Decimal("5.00"))
        kw.setdefault("delivery_fee", Decimal("10.00"))
        kw.setdefault("amount", Decimal("115.00"))
        kw.setdefault("type", "recurring_payment")
        kw.setdefault("status", "failed")
        kw.setdefault("cycle", 0)
        return await self._save(
            Transaction(contract_id=contract.id, buyer_id=buyer.id, seller_id=seller.id, **kw)
        )


@pytest.fixture
def make(session_factory) -> Factory:
    return Factory(session_factory)


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "payments: Recurring payment tests")
    config.addinivalue_line("markers", "scheduler: Sweep scheduling and locking")
