"""
Pytest configuration and fixtures for testing
"""
import hashlib
import hmac
import os

# Settings are read at import time, so the test environment goes in first
os.environ.setdefault("ENV", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("RATE_LIMIT_MAX_REQUESTS", "1000")
os.environ.setdefault("BILLING_STORE", "memory")
os.environ.setdefault("BILLING_PROVIDER", "mock")

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from config.settings import settings
from crud.billing_subscription import InMemoryBillingSubscriptionRepository
from database import Base
from services.billing_service import BillingService, memory_repository

# Create in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


def compute_signature(payload: str, secret: str, timestamp: int) -> str:
    """v1 signature a Stripe sender would compute for payload at timestamp."""
    return hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def build_signature_header(payload: str, secret: str, timestamp: int) -> str:
    return f"t={timestamp},v1={compute_signature(payload, secret, timestamp)}"


class FrozenClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta

    def set(self, moment: datetime) -> None:
        self.now = moment


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def repository():
    return InMemoryBillingSubscriptionRepository()


@pytest.fixture
def billing_service(repository, clock):
    return BillingService(repository, clock=clock)


@pytest.fixture(autouse=True)
def reset_billing_state(monkeypatch):
    """Clear the process-wide subscription map and pin billing settings per test."""
    memory_repository.clear()
    monkeypatch.setattr(settings, "billing_provider", "mock")
    monkeypatch.setattr(settings, "billing_store", "memory")
    monkeypatch.setattr(settings, "stripe_webhook_secret", None)
    monkeypatch.setattr(settings, "billing_mock_checkout_url", None)
    monkeypatch.setattr(settings, "billing_mock_portal_url", None)
    yield
    memory_repository.clear()

@pytest.fixture
async def test_db():
    """
    Fixture that provides an isolated, in-memory SQLite database connection for each test.

    This fixture:
    - Creates a fresh engine (one shared connection) and all tables
    - Yields a clean AsyncSession for the test
    - Drops all tables and disposes the engine after the test completes
    """
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    TestAsyncSessionLocal = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    # Create all tables
    async with test_engine.begin() as conn:
        # Import models to ensure they're registered with Base
        from database_models import BillingSubscription  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)

    # Create a session for the test
    async with TestAsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    # Drop all tables after test
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()
