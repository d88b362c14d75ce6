"""
Pytest configuration and fixtures.
"""
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from payment_lifecycle.config import Settings
from payment_lifecycle.core import (
    InProcessOrderLocks,
    OrderLifecycleService,
    OrderStore,
    TransactionLedger,
)
from payment_lifecycle.database import build_session_factory, init_db
from payment_lifecycle.integrations.gateway import GatewayAdapter, GatewayOutcome


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: pure logic, no database")
    config.addinivalue_line("markers", "integration: runs against a SQLite database")
    config.addinivalue_line("markers", "race: concurrent requests against one order")


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        stripe_secret_key="sk_test_fake_key_for_testing",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'payments_test.db'}",
        gateway_timeout_seconds=0.5,
        gateway_retry_max_attempts=1,
        gateway_retry_base_delay=0,
        app_name="payment-lifecycle-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a fresh SQLite database per test."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


@pytest.fixture
def order_store(session_factory: async_sessionmaker[AsyncSession]) -> OrderStore:
    return OrderStore(session_factory)


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> TransactionLedger:
    return TransactionLedger(session_factory)


@pytest.fixture
def gateway() -> AsyncMock:
    """Gateway that approves everything, with a distinct id per action."""
    gateway = AsyncMock(spec=GatewayAdapter)
    gateway.purchase.return_value = GatewayOutcome.approved("pi_purchase_1")
    gateway.authorize.return_value = GatewayOutcome.approved("pi_auth_1")
    gateway.capture.return_value = GatewayOutcome.approved("pi_capture_1")
    gateway.cancel.return_value = GatewayOutcome.approved("pi_cancel_1")
    gateway.refund.return_value = GatewayOutcome.approved("re_refund_1")
    return gateway


@pytest.fixture
def order_locks() -> InProcessOrderLocks:
    return InProcessOrderLocks()


@pytest.fixture
def service(
    order_store: OrderStore,
    ledger: TransactionLedger,
    gateway: AsyncMock,
    order_locks: InProcessOrderLocks,
    test_settings: Settings,
) -> OrderLifecycleService:
    return OrderLifecycleService(
        order_store=order_store,
        ledger=ledger,
        gateway=gateway,
        locks=order_locks,
        settings=test_settings,
    )
