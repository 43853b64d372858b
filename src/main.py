"""Handshake Jobs API -- Main Application Entry Point

Creates the FastAPI application, configures CORS middleware, registers the
lifecycle error handlers and all API route modules under the /api/v1 prefix.

Run with::

    uvicorn src.main:app --host 0.0.0.0 --port 8000 --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.errors import register_error_handlers
from src.core.config import settings
from src.services import notificationService

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


# ---------------------------------------------------------------------------
# Lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Shutdown:
      - Let in-flight notification deliveries finish.
      - Dispose of the database engine.
    """
    yield

    await notificationService.drain()

    from src.api.deps import engine

    await engine.dispose()


# ---------------------------------------------------------------------------
# Application instance
# ---------------------------------------------------------------------------

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)


@app.get("/health", tags=["Health"])
async def health():
    """Lightweight health check for load balancers and readiness probes."""
    return {"status": "ok", "version": settings.app_version}


# ---------------------------------------------------------------------------
# Register API route modules
# ---------------------------------------------------------------------------

from src.api.routes import handshake, jobs, payments, quotes  # noqa: E402

_prefix = settings.api_v1_prefix

app.include_router(jobs.router, prefix=_prefix)
app.include_router(quotes.router, prefix=_prefix)
app.include_router(handshake.router, prefix=_prefix)
app.include_router(payments.router, prefix=_prefix)
