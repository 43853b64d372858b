"""
E2E test fixtures for the job lifecycle API.

Provides:
- An in-process FastAPI test app with all routes and error handlers
- httpx AsyncClient wired via ASGI transport (no network needed)
- Bearer tokens for the customer, the provider, an outsider and an admin
- Helpers that drive a job through the lifecycle over HTTP

Stripe is mocked at the SDK level so the full route -> service -> DB flow
is exercised.
"""

from __future__ import annotations

from typing import Any, AsyncGenerator
from unittest.mock import MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from src.integrations.stripe import webhookHandler
from src.services.auth_service import ROLE_ADMIN, create_access_token
from tests.conftest import ADMIN_ID, CUSTOMER_ID, OUTSIDER_ID, PROVIDER_ID

API = "/api/v1"


def _bearer(user_id, role: str = "user") -> dict[str, str]:
    token, _ = create_access_token(user_id, role)
    return {"Authorization": f"Bearer {token}"}


CUSTOMER_HEADERS = _bearer(CUSTOMER_ID)
PROVIDER_HEADERS = _bearer(PROVIDER_ID)
OUTSIDER_HEADERS = _bearer(OUTSIDER_ID)
ADMIN_HEADERS = _bearer(ADMIN_ID, ROLE_ADMIN)


# ---------------------------------------------------------------------------
# FastAPI test application
# ---------------------------------------------------------------------------

def _create_test_app(db_session_override: AsyncSession):
    """Build the FastAPI app with the DB dependency overridden to use the
    test session."""
    from fastapi import FastAPI

    from src.api.deps import get_db
    from src.api.errors import register_error_handlers
    from src.api.routes.handshake import router as handshake_router
    from src.api.routes.jobs import router as jobs_router
    from src.api.routes.payments import router as payments_router
    from src.api.routes.quotes import router as quotes_router

    app = FastAPI(title="Handshake Jobs Test")

    async def _override_get_db():
        yield db_session_override

    app.dependency_overrides[get_db] = _override_get_db
    register_error_handlers(app)

    app.include_router(jobs_router, prefix=API)
    app.include_router(quotes_router, prefix=API)
    app.include_router(handshake_router, prefix=API)
    app.include_router(payments_router, prefix=API)

    return app


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """httpx AsyncClient connected to the test app via ASGI transport."""
    app = _create_test_app(db_session)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Stripe mocks
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def mock_stripe():
    """Mock the Stripe SDK calls used by the payment routes."""
    with patch("src.integrations.stripe.paymentService.stripe") as mock_stripe_mod:
        mock_intent = MagicMock()
        mock_intent.id = "pi_test_123456"
        mock_intent.client_secret = "pi_test_123456_secret_abc"
        mock_intent.status = "requires_payment_method"
        mock_intent.amount = 5000
        mock_intent.currency = "cad"
        mock_stripe_mod.PaymentIntent.create.return_value = mock_intent
        mock_stripe_mod.StripeError = Exception
        yield mock_stripe_mod


@pytest.fixture(autouse=True)
def _clear_webhook_events():
    webhookHandler.clear_processed_events()
    yield
    webhookHandler.clear_processed_events()


def make_webhook_event(
    event_type: str,
    job_id: str,
    *,
    event_id: str = "evt_test_001",
    intent_id: str = "pi_test_123456",
    amount: int = 5000,
    tip_cents: int = 0,
) -> MagicMock:
    """A Stripe event object as ``stripe.Webhook.construct_event`` returns it."""
    intent = MagicMock()
    intent.id = intent_id
    intent.amount = amount
    intent.amount_received = amount
    intent.currency = "cad"
    intent.metadata = {"job_id": job_id, "tip_cents": str(tip_cents)}
    intent.last_payment_error = None

    event = MagicMock()
    event.id = event_id
    event.type = event_type
    event.data.object = intent
    return event


# ---------------------------------------------------------------------------
# Lifecycle helpers
# ---------------------------------------------------------------------------

async def create_job_via_api(client: AsyncClient, **overrides: Any):
    body: dict[str, Any] = {"provider_id": str(PROVIDER_ID)}
    body.update(overrides)
    return await client.post(f"{API}/jobs", json=body, headers=CUSTOMER_HEADERS)


async def quoted_job_via_api(client: AsyncClient, **overrides: Any) -> str:
    """Create, accept, quote 40.00 + 10.00 and accept the quote."""
    job_id = (await create_job_via_api(client, **overrides)).json()["id"]
    await client.post(f"{API}/jobs/{job_id}/accept", headers=PROVIDER_HEADERS)
    quoted = await client.post(
        f"{API}/jobs/{job_id}/quote",
        json={"labor_cents": 4000, "materials_cents": 1000},
        headers=PROVIDER_HEADERS,
    )
    await client.post(
        f"{API}/jobs/{job_id}/quote/respond",
        json={"accept": True, "expected_version": quoted.json()["quote"]["version"]},
        headers=CUSTOMER_HEADERS,
    )
    return job_id


async def in_progress_job_via_api(client: AsyncClient, **overrides: Any) -> str:
    job_id = await quoted_job_via_api(client, **overrides)
    issued = await client.post(
        f"{API}/jobs/{job_id}/start-code", json={}, headers=CUSTOMER_HEADERS
    )
    await client.post(
        f"{API}/jobs/{job_id}/start-code/verify",
        json={"code": issued.json()["code"]},
        headers=PROVIDER_HEADERS,
    )
    return job_id


async def awaiting_payment_job_via_api(client: AsyncClient, **overrides: Any) -> str:
    job_id = await in_progress_job_via_api(client, **overrides)
    issued = await client.post(
        f"{API}/jobs/{job_id}/end-code", json={}, headers=PROVIDER_HEADERS
    )
    await client.post(
        f"{API}/jobs/{job_id}/end-code/verify",
        json={"code": issued.json()["code"]},
        headers=CUSTOMER_HEADERS,
    )
    return job_id
