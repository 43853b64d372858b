"""
Shared pytest fixtures for the job lifecycle tests.

Provides:
- An async in-memory SQLite session with the schema created per test
- Stable party IDs (customer, provider, outsider, admin)
- A frozen server clock that tests can advance
- Helpers that drive a job into a given lifecycle state through the services
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from unittest.mock import patch

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.models.base import Base
from src.models.job import Job
from src.services import handshakeService, jobService, notificationService, quoteService

# ---------------------------------------------------------------------------
# Test IDs (stable across tests so cross-references work)
# ---------------------------------------------------------------------------

CUSTOMER_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
PROVIDER_ID = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")
OUTSIDER_ID = uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")
ADMIN_ID = uuid.UUID("dddddddd-dddd-dddd-dddd-dddddddddddd")

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Fresh in-memory database per test; rolled back and disposed afterwards."""
    engine = create_async_engine(
        TEST_DB_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_factory() as session:
        yield session
        await session.rollback()

    await engine.dispose()


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FrozenClock:
    """Server clock that only moves when a test says so."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def frozen_clock():
    clock = FrozenClock(T0)
    with patch("src.core.clock.utcnow", new=clock):
        yield clock


@pytest.fixture(autouse=True)
def _reset_notification_sinks():
    notificationService.clear_sinks()
    yield
    notificationService.clear_sinks()


@pytest.fixture
def captured_events():
    """Register a sink that records every delivered event payload."""
    events: list[dict] = []

    async def _sink(event: dict) -> None:
        events.append(event)

    notificationService.register_sink(_sink)
    return events


# ---------------------------------------------------------------------------
# Lifecycle helpers
# ---------------------------------------------------------------------------

async def make_pending_job(db: AsyncSession, **kwargs) -> Job:
    return await jobService.create_job(
        db, customer_id=CUSTOMER_ID, provider_id=PROVIDER_ID, **kwargs
    )


async def make_confirmed_job(db: AsyncSession, **kwargs) -> Job:
    job = await make_pending_job(db, **kwargs)
    return await jobService.accept_job(db, job.id, PROVIDER_ID)


async def make_quoted_job(
    db: AsyncSession,
    *,
    labor_cents: int = 4000,
    materials_cents: int = 1000,
    accept: bool = True,
    **kwargs,
) -> Job:
    job = await make_confirmed_job(db, **kwargs)
    job = await quoteService.submit_quote(
        db, job.id, PROVIDER_ID,
        labor_cents=labor_cents, materials_cents=materials_cents,
    )
    if accept:
        job = await quoteService.respond_to_quote(
            db, job.id, CUSTOMER_ID, accept=True, expected_version=job.quote_version
        )
    return job


async def make_in_progress_job(db: AsyncSession, **kwargs) -> Job:
    job = await make_quoted_job(db, **kwargs)
    issued = await handshakeService.issue_start_code(db, job.id, CUSTOMER_ID)
    return await handshakeService.verify_start_code(db, job.id, PROVIDER_ID, issued.code)


async def make_awaiting_payment_job(db: AsyncSession, **kwargs) -> Job:
    job = await make_in_progress_job(db, **kwargs)
    issued = await handshakeService.issue_end_code(db, job.id, PROVIDER_ID)
    return await handshakeService.verify_end_code(db, job.id, CUSTOMER_ID, issued.code)
