"""Pytest configuration and shared fixtures"""

import pytest
import asyncio
import os
import sys
from typing import Any, AsyncGenerator, Callable, Dict, List
import httpx
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from billing.clients.invoicing_client import InvoicingClient
from billing.clients.legacy_client import LegacyBackendClient
from billing.models.database import Base
from billing.models.db_models import Invoice as InvoiceDB  # noqa: F401


INVOICING_BASE_URL = "https://invoicing.test/api"
LEGACY_BASE_URL = "https://legacy.test"
LEGACY_COOKIE = "PHPSESSID=test-session"


# Test database setup (SQLite in-memory)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False
)

TestingSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False
)


@pytest.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create a fresh database session for each test

    Yields:
        Async database session
    """
    # Create tables
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Create session
    async with TestingSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()

    # Drop tables after test
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it"""

    def __init__(self, now: float = 0.0):
        self.now = now
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def make_invoicing_client(handler: Callable[[httpx.Request], httpx.Response]) -> InvoicingClient:
    return InvoicingClient(
        base_url=INVOICING_BASE_URL,
        api_key="test-key",
        transport=httpx.MockTransport(handler),
    )


def make_legacy_client(
    handler: Callable[[httpx.Request], httpx.Response],
    **kwargs,
) -> LegacyBackendClient:
    options: Dict[str, Any] = {"session_cookie": LEGACY_COOKIE}
    options.update(kwargs)
    return LegacyBackendClient(
        base_url=LEGACY_BASE_URL,
        transport=httpx.MockTransport(handler),
        **options,
    )


@pytest.fixture
def sample_rows():
    """Primary-service search rows in their different shapes"""
    return [
        {
            "id": 101,
            "invoice_number": "1001",
            "invoice_status": 0,
            "total": "150.00",
            "maturity": "2024-05-10",
            "payment_form": 2,
            "created_at": "2024-04-10 09:30:00",
            "invoice_obs": "Frete abril",
            "owner_name": "Transportes Andrade",
        },
        {
            "invoice_id": 102,
            "invoice_number": "1002",
            "invoice_status": 3,
            "total": 99.9,
            "owner": {"id": 7, "name": "Logistica Sul", "cnpj": "12.345.678/0001-90"},
        },
        {
            "ID": "103",
            "invoice_number": "A-77",
            "invoice_status": 1,
        },
    ]


@pytest.fixture
def invoicing_client_factory():
    """Build an ``InvoicingClient`` served by a MockTransport handler"""
    return make_invoicing_client


@pytest.fixture
def legacy_client_factory():
    """Build a ``LegacyBackendClient`` served by a MockTransport handler"""
    return make_legacy_client


@pytest.fixture
def fake_clock():
    return FakeClock()
