"""
Test configuration.

Environment MUST be set before any boxoffice module is imported: config and
the server read it at import time.
"""
import os
import tempfile
from pathlib import Path


def _early_setup_test_environment() -> None:
    test_dir = Path(tempfile.mkdtemp(prefix="boxoffice-test-"))
    os.environ["DATABASE_URL"] = f"sqlite:///{test_dir / 'server.db'}"
    os.environ["OUTBOX_WORKER_ENABLED"] = "0"
    os.environ["ADMIN_TOKEN"] = "test-admin-token"
    os.environ["WEBHOOK_SECRET"] = "test-webhook-secret"
    os.environ["LOG_LEVEL"] = "WARNING"
    os.environ.pop("REDIS_URL", None)
    os.environ.pop("DELIVERY_RELAY_URL", None)


_early_setup_test_environment()

import asyncio  # noqa: E402
from contextlib import asynccontextmanager  # noqa: E402
from typing import List, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import select  # noqa: E402

from boxoffice.delivery import DeliveryAdapter, LogDelivery, TicketDelivery  # noqa: E402
from boxoffice.infra.sql import make_async_engine, GatedAsyncSession  # noqa: E402
from boxoffice.model.catalog import TierSpec, create_event  # noqa: E402
from boxoffice.model.db import create_schema, DeliveryObligation, Tier  # noqa: E402
from boxoffice.model.orders import BuyerInfo  # noqa: E402


# =============================================================================
# Database
# =============================================================================


@pytest_asyncio.fixture
async def open_db(tmp_path):
    """Factory for a fresh gated session per unit of work."""
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'boxoffice.db'}"
    )
    async with engine.begin() as conn:
        await create_schema(conn)

    @asynccontextmanager
    async def _open():
        async with SessionAsync() as session:
            yield GatedAsyncSession(session=session, gated=gated)

    yield _open
    await engine.dispose()


@pytest_asyncio.fixture
async def db(open_db):
    async with open_db() as d:
        yield d


# =============================================================================
# Seed data
# =============================================================================


async def seed(open_db, *tiers: TierSpec, status: str = "active"):
    tiers = tiers or (TierSpec(name="GA", price=3500, capacity=10),)
    async with open_db() as d:
        event, rows = await create_event(
            d, "Launch Party", list(tiers), location="Hall 1",
            starts_at=1_900_000_000.0, status=status,
        )
    return event, rows


@pytest_asyncio.fixture
async def tier(open_db):
    _, rows = await seed(open_db)
    return rows[0]


@pytest.fixture
def buyer():
    return BuyerInfo(name="Ada Lovelace", email="ada@example.com")


async def load_tier(open_db, tier_id: str) -> Tier:
    async with open_db() as d:
        async with d.session.begin():
            return (await d.session.execute(
                select(Tier).where(Tier.id == tier_id)
            )).scalar_one()


async def load_obligation(open_db, order_id: str) -> Optional[DeliveryObligation]:
    async with open_db() as d:
        async with d.session.begin():
            return (await d.session.execute(
                select(DeliveryObligation)
                .where(DeliveryObligation.order_id == order_id)
            )).scalar_one_or_none()


# =============================================================================
# Delivery adapters
# =============================================================================


class FailingDelivery(DeliveryAdapter):
    def __init__(self, error: str = "relay down") -> None:
        self.error = error
        self.calls: List[str] = []

    async def deliver(self, job: TicketDelivery) -> None:
        self.calls.append(job.order_id)
        raise RuntimeError(self.error)


class SlowDelivery(LogDelivery):
    async def deliver(self, job: TicketDelivery) -> None:
        await asyncio.sleep(0.01)
        await super().deliver(job)


@pytest.fixture
def adapter():
    return LogDelivery()
