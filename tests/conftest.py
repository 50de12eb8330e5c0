"""
Shared fixtures for the settlement sync test suites.

Database fixtures run the real models against an in-memory SQLite database
(aiosqlite, StaticPool so every session shares one connection); everything
else is in-process: ChannelHub stands in for the hosted pub/sub provider.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from database import create_engine_for_url, create_tables, make_session_factory
from services.channel_hub import ChannelHub
from utils.datetime_helpers import utc_now
from utils.order_events import OrderSnapshot

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory schema per test"""
    test_engine = create_engine_for_url(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def hub():
    return ChannelHub()


@pytest.fixture
def make_snapshot():
    """Factory for OrderSnapshot with sensible defaults"""

    def _make(order_id: str = "order-1", status: str = "pending", order_version: int = 1, **overrides):
        fields: Dict[str, Any] = {
            "id": order_id,
            "status": status,
            "order_version": order_version,
            "order_number": f"ORD-{order_id}",
            "type": "buy",
            "user_id": "user-1",
            "merchant_id": "merchant-1",
            "crypto_amount": 100.0,
            "fiat_amount": 367.0,
            "rate": 3.67,
            "payment_method": "bank",
            "created_at": utc_now(),
            "expires_at": utc_now() + timedelta(minutes=15),
        }
        fields.update(overrides)
        return OrderSnapshot(**fields)

    return _make


class RecordingSleep:
    """Awaitable sleep replacement that records requested delays"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()
