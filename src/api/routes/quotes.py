"""
Quote API Routes
================

Routes:
  POST /api/v1/jobs/{job_id}/quote          -- Provider submits a quote
  POST /api/v1/jobs/{job_id}/quote/respond  -- Customer accepts or rejects
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, HTTPException, status

from src.api.deps import CurrentPrincipal, DBSession
from src.api.schemas.job import JobOut, job_to_out
from src.api.schemas.quote import QuoteRespondRequest, QuoteSubmitRequest
from src.services import quoteService
from src.services.jobStateManager import ActorType

router = APIRouter(prefix="/jobs", tags=["Quotes"])


@router.post(
    "/{job_id}/quote",
    response_model=JobOut,
    summary="Submit a quote (provider)",
    description="The total is computed server-side as labor + materials.",
)
async def submit_quote(
    db: DBSession,
    principal: CurrentPrincipal,
    job_id: uuid.UUID,
    body: QuoteSubmitRequest,
) -> JobOut:
    try:
        job = await quoteService.submit_quote(
            db,
            job_id,
            principal.user_id,
            labor_cents=body.labor_cents,
            materials_cents=body.materials_cents,
            is_admin=principal.is_admin,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        )
    return job_to_out(job, ActorType.PROVIDER)


@router.post(
    "/{job_id}/quote/respond",
    response_model=JobOut,
    summary="Accept or reject the quote (customer)",
)
async def respond_to_quote(
    db: DBSession,
    principal: CurrentPrincipal,
    job_id: uuid.UUID,
    body: QuoteRespondRequest,
) -> JobOut:
    job = await quoteService.respond_to_quote(
        db,
        job_id,
        principal.user_id,
        accept=body.accept,
        expected_version=body.expected_version,
        is_admin=principal.is_admin,
    )
    return job_to_out(job, ActorType.CUSTOMER)
