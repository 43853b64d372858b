"""
Shared FastAPI dependencies for the job lifecycle API.

Provides the async database session dependency used by all route handlers,
and the authentication dependency that turns a JWT Bearer token into the
calling ``Principal``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.core.config import settings
from src.services import auth_service, notificationService
from src.services.auth_service import Principal

# ---------------------------------------------------------------------------
# Async engine & session factory
# ---------------------------------------------------------------------------
# The engine is created once at module import time. Each request gets its
# own ``AsyncSession``; services only flush, and ``get_db`` commits the whole
# request as one unit (e.g. end-code verification plus billing) or rolls it
# back.
# ---------------------------------------------------------------------------

engine = create_async_engine(
    settings.database_url,
    echo=settings.sql_echo,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped session; commit on success, roll back on error.

    Notifications emitted during the request are delivered only after the
    commit succeeds.
    """
    async with async_session_factory() as session:
        outbox = notificationService.open_outbox()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            notificationService.discard_outbox(outbox)
            raise
        else:
            notificationService.publish_outbox(outbox)
        finally:
            await session.close()


DBSession = Annotated[AsyncSession, Depends(get_db)]


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

_bearer_scheme = HTTPBearer(auto_error=True)


async def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(_bearer_scheme)],
) -> Principal:
    """Validate the Bearer token. Raises 401 if missing, expired or malformed."""
    try:
        return auth_service.get_principal(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_admin(
    principal: Annotated[Principal, Depends(get_current_principal)],
) -> Principal:
    if not principal.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required.",
        )
    return principal


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
AdminPrincipal = Annotated[Principal, Depends(require_admin)]
