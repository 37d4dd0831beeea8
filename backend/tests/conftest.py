"""
Pytest configuration and shared fixtures for the order platform tests.

Provides an in-memory SQLite database (shared StaticPool connection), an
HTTP client bound to the app, a mock payment gateway and sample rows.

Note on the shared connection: every session opened from session_factory
uses the same SQLite connection, so tests commit db_session before running
code that opens its own sessions (worker, best-effort producers).
"""
import pytest
from typing import AsyncGenerator
from unittest.mock import AsyncMock

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from config import settings
from database import Base, get_db

# ── Test Configuration ───────────────────────────────────────────────
# Test-only values for settings that would normally come from .env
settings.jwt_secret = settings.jwt_secret or "test-jwt-secret-for-pytest-only-0123456789"
settings.gateway_key_id = "rzp_test_key"
settings.gateway_key_secret = "test_key_secret"
settings.gateway_webhook_secret = "test_webhook_secret"
settings.worker_enabled = False
settings.redis_url = ""


# ── Database Fixtures ────────────────────────────────────────────────


@pytest.fixture(scope="function")
async def session_factory():
    """
    Session factory over a fresh in-memory SQLite database.

    Uses StaticPool to allow in-memory SQLite with async SQLAlchemy.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def analytics_buffer():
    """The buffer the analytics handler writes into during a test."""
    from services.analytics_service import AnalyticsBuffer
    return AnalyticsBuffer(batch_size=100)


@pytest.fixture(autouse=True)
def isolated_runtime(monkeypatch, session_factory, analytics_buffer):
    """Point best-effort producers at the test DB and reset in-process state."""
    from services import cache_service, job_worker, queue_service

    monkeypatch.setattr(queue_service, "async_session", session_factory)
    cache_service.cache.redis_url = ""
    cache_service.cache.clear_memory()
    job_worker.reset_limiter()
    job_worker.clear_handlers()
    job_worker.register_default_handlers(analytics_buffer)
    yield
    job_worker.clear_handlers()


@pytest.fixture(scope="function")
async def api_client(db_session: AsyncSession):
    """
    HTTP client bound to the app (lifespan not run, so no worker).

    Overrides get_db dependency to use the test DB session.
    """
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


# ── Mock Fixtures ────────────────────────────────────────────────────


@pytest.fixture
def mock_gateway():
    """Mock payment gateway; intent ids are order_test_<receipt>."""
    from services import payment_service

    gateway = AsyncMock()

    async def create_intent(*, amount, currency, receipt, metadata=None):
        return {"id": f"order_test_{receipt}", "amount": amount, "currency": currency, "status": "created"}

    async def refund(*, transaction_id, amount, notes=None):
        return {"id": f"rfnd_{transaction_id}", "amount": amount, "status": "processed"}

    gateway.create_intent.side_effect = create_intent
    gateway.refund.side_effect = refund

    original = payment_service.get_gateway()
    payment_service.set_gateway(gateway)
    yield gateway
    payment_service.set_gateway(original)


# ── Helpers ──────────────────────────────────────────────────────────


@pytest.fixture
def auth_headers():
    """Build a Bearer header for a User row."""
    from middleware.auth import issue_access_token

    def _headers(user) -> dict:
        return {"Authorization": f"Bearer {issue_access_token(user_id=user.id, role=user.role)}"}
    return _headers


@pytest.fixture
def sign_confirmation():
    """Client-confirmation signature as the gateway checkout would produce it."""
    from services.payment_service import compute_confirmation_signature
    return compute_confirmation_signature


# ── Test Data Fixtures ────────────────────────────────────────────────


async def _add(db_session: AsyncSession, row):
    db_session.add(row)
    await db_session.commit()
    await db_session.refresh(row)
    return row


@pytest.fixture
async def customer(db_session: AsyncSession):
    from db_models import User
    return await _add(db_session, User(email="buyer@example.com", name="Buyer", role="CUSTOMER"))


@pytest.fixture
async def referrer(db_session: AsyncSession):
    from db_models import User
    return await _add(db_session, User(email="friend@example.com", name="Friend", role="CUSTOMER"))


@pytest.fixture
async def referred_customer(db_session: AsyncSession, referrer):
    from db_models import User
    return await _add(
        db_session,
        User(email="invited@example.com", name="Invited", role="CUSTOMER", referred_by=referrer.id),
    )


@pytest.fixture
async def vendor(db_session: AsyncSession):
    from db_models import User
    return await _add(db_session, User(email="vendor@example.com", name="Vendor", role="VENDOR"))


@pytest.fixture
async def other_vendor(db_session: AsyncSession):
    from db_models import User
    return await _add(db_session, User(email="other@example.com", name="Other Vendor", role="VENDOR"))


@pytest.fixture
async def admin(db_session: AsyncSession):
    from db_models import User
    return await _add(db_session, User(email="admin@example.com", name="Admin", role="ADMIN"))


@pytest.fixture
async def product(db_session: AsyncSession, vendor):
    """A 1000-unit product with 10 in stock."""
    from db_models import Product
    return await _add(db_session, Product(vendor_id=vendor.id, name="Kurta", price=1000, stock=10))
