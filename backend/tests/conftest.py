"""
Pytest configuration and shared fixtures for Storefront Payments tests.

Provides an in-memory SQLite DB, an ASGI test client, a fake Paystack
gateway and sample users/products/orders.
"""
import asyncio
import json
from decimal import Decimal
from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import StaticPool

from main import app
from config import settings
from database import build_engine, build_session_factory, get_db, init_db
from deps import get_gateway
from middleware.auth import issue_access_token
from middleware.rate_limit import _limiter
from services.gateway_client import ChargeInit, ChargeStatus, PaystackClient, sign_payload

# ── Test Configuration ───────────────────────────────────────────────
# Set test-only values for settings that would normally come from .env
if not settings.jwt_secret:
    settings.jwt_secret = "test-jwt-secret-for-pytest-only"

TEST_PAYSTACK_SECRET = "sk_test_storefront_pytest_secret"


# ── Database Fixtures ────────────────────────────────────────────────


@pytest.fixture(scope="function")
async def db_engine():
    """
    In-memory SQLite engine for each test.

    Uses StaticPool to allow in-memory SQLite with async SQLAlchemy.
    """
    engine = build_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(engine)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    async with build_session_factory(db_engine)() as session:
        yield session


@pytest.fixture(scope="function")
async def session_factory(tmp_path):
    """
    Sessionmaker over a file-backed SQLite DB.

    Race tests open one session per concurrent caller; a file DB gives each
    of them its own connection.
    """
    engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}")
    await init_db(engine)

    yield build_session_factory(engine)

    await engine.dispose()


# ── Fake Gateway ─────────────────────────────────────────────────────


class FakeGateway(PaystackClient):
    """
    In-process stand-in for Paystack.

    start_charge/fetch_charge_status are scripted; webhook signature
    verification is the real implementation keyed by TEST_PAYSTACK_SECRET.
    """

    def __init__(self):
        super().__init__(secret_key=TEST_PAYSTACK_SECRET)
        self.start_calls: list[dict] = []
        self.fetch_calls: list[str] = []
        self.verdicts: dict[str, dict] = {}
        self.start_error: Exception | None = None
        self.fetch_error: Exception | None = None

    async def start_charge(self, *, email, amount, reference, currency, metadata=None, callback_url=None):
        self.start_calls.append({
            "email": email,
            "amount": amount,
            "reference": reference,
            "currency": currency,
            "metadata": metadata,
            "callback_url": callback_url,
        })
        # Yield so concurrent callers get a chance to interleave
        await asyncio.sleep(0)
        if self.start_error:
            raise self.start_error
        suffix = reference[-8:]
        return ChargeInit(
            authorization_url=f"https://checkout.paystack.com/{suffix}",
            access_code=f"AC_{suffix}",
            reference=reference,
            raw_payload=json.dumps({"status": True, "data": {"reference": reference}}),
        )

    def set_verdict(self, reference: str, status: str, **data):
        self.verdicts[reference] = {"status": status, **data}

    async def fetch_charge_status(self, reference):
        self.fetch_calls.append(reference)
        await asyncio.sleep(0)
        if self.fetch_error:
            raise self.fetch_error
        data = {"reference": reference, **self.verdicts.get(reference, {"status": "ongoing"})}
        return ChargeStatus.from_charge_data(data, raw_payload=json.dumps({"status": True, "data": data}))


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def make_verdict():
    """Build a ChargeStatus the way a gateway payload would produce it."""
    def _make(reference: str, status: str = "success", **data) -> ChargeStatus:
        payload = {"reference": reference, "status": status, **data}
        return ChargeStatus.from_charge_data(payload, raw_payload=json.dumps(payload))
    return _make


@pytest.fixture
def signed_webhook():
    """Build (raw_body, headers) for a webhook signed with the test secret."""
    def _build(event: str, data: dict, secret: str = TEST_PAYSTACK_SECRET):
        body = json.dumps({"event": event, "data": data}).encode()
        headers = {
            settings.webhook_signature_header: sign_payload(secret, body),
            "Content-Type": "application/json",
        }
        return body, headers
    return _build


# ── HTTP Client ──────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    _limiter.reset()
    yield
    _limiter.reset()


@pytest.fixture(scope="function")
async def client(db_session: AsyncSession, fake_gateway: FakeGateway) -> AsyncGenerator[AsyncClient, None]:
    """
    ASGI test client bound to the in-memory database and the fake gateway.

    Overrides get_db and get_gateway for the duration of the test.
    """
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: fake_gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Authorization header for a user row."""
    def _headers(user) -> dict:
        token = issue_access_token(user_id=user.id, role=user.role)
        return {"Authorization": f"Bearer {token}"}
    return _headers


# ── Test Data Fixtures ────────────────────────────────────────────────


@pytest.fixture
async def sample_user(db_session: AsyncSession):
    """Create a regular customer in test DB."""
    from db_models import User

    user = User(email="ada@example.com", name="Ada", role="user")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
async def other_user(db_session: AsyncSession):
    from db_models import User

    user = User(email="bola@example.com", name="Bola", role="user")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
async def admin_user(db_session: AsyncSession):
    from db_models import User

    user = User(email="admin@example.com", name="Admin", role="admin")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
async def sample_product(db_session: AsyncSession):
    """A product priced 2500.00 with 10 units in stock."""
    from db_models import Product

    product = Product(name="Ankara Tote", price=Decimal("2500.00"), stock=10, active=True)
    db_session.add(product)
    await db_session.commit()
    await db_session.refresh(product)
    return product


@pytest.fixture
async def sample_order(db_session: AsyncSession, sample_user, sample_product):
    """
    Unpaid order for sample_user: 2 x 2500.00 + 500.00 shipping = 5500.00.
    """
    from services import order_service

    return await order_service.create_order(
        db_session,
        user_id=sample_user.id,
        items=[{"product_id": sample_product.id, "quantity": 2}],
        shipping_address={"address": "12 Marina", "city": "Lagos", "country": "NG"},
        shipping_price=Decimal("500.00"),
    )
