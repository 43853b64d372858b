"""
Job API Routes
==============

REST endpoints for the job lifecycle. Every mutating endpoint returns the
fresh authoritative job so clients never merge local state.

Routes:
  POST   /api/v1/jobs                         -- Book a provider (customer)
  GET    /api/v1/jobs                         -- Caller's jobs (paginated)
  GET    /api/v1/jobs/{job_id}                -- Job detail
  POST   /api/v1/jobs/{job_id}/accept         -- Provider accepts
  POST   /api/v1/jobs/{job_id}/cancel         -- Cancel
  GET    /api/v1/jobs/{job_id}/billing        -- Final billing record
  POST   /api/v1/jobs/{job_id}/dispute        -- Flag a dispute
  POST   /api/v1/jobs/{job_id}/dispute/resolve -- Resolve a dispute (admin)

Lifecycle rejections are rendered by ``src.api.errors``.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from src.api.deps import AdminPrincipal, CurrentPrincipal, DBSession
from src.api.schemas.job import (
    BillingOut,
    DisputeRequest,
    JobCancelRequest,
    JobCreateRequest,
    JobListResponse,
    JobOut,
    PaginationMeta,
    job_to_out,
)
from src.core.config import settings
from src.models.job import JobStatus
from src.services import jobService
from src.services.jobStateManager import ActorType
from src.services.jobStore import resolve_actor
from src.services.lifecycleErrors import IllegalStateTransition

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["Jobs"])


# ---------------------------------------------------------------------------
# POST /api/v1/jobs -- Book a provider
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=JobOut,
    status_code=status.HTTP_201_CREATED,
    summary="Book a provider",
    description="Creates a job in 'pending' with the caller as customer.",
)
async def create_job(
    db: DBSession,
    principal: CurrentPrincipal,
    body: JobCreateRequest,
) -> JobOut:
    try:
        job = await jobService.create_job(
            db,
            customer_id=principal.user_id,
            provider_id=body.provider_id,
            scheduled_at=body.scheduled_at,
            hourly_rate_cents=body.hourly_rate_cents,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        )

    return job_to_out(job, ActorType.CUSTOMER)


# ---------------------------------------------------------------------------
# GET /api/v1/jobs -- Caller's jobs
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=JobListResponse,
    summary="List the caller's jobs",
)
async def list_jobs(
    db: DBSession,
    principal: CurrentPrincipal,
    status_filter: Optional[JobStatus] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(
        default=settings.default_page_size, ge=1, le=settings.max_page_size
    ),
) -> JobListResponse:
    result = await jobService.list_jobs_for_party(
        db,
        principal.user_id,
        status_filter=status_filter.value if status_filter else None,
        page=page,
        page_size=page_size,
    )
    return JobListResponse(
        data=[
            job_to_out(job, resolve_actor(job, principal.user_id))
            for job in result.items
        ],
        meta=PaginationMeta(
            page=result.page,
            page_size=result.page_size,
            total_items=result.total_items,
            total_pages=result.total_pages,
        ),
    )


# ---------------------------------------------------------------------------
# GET /api/v1/jobs/{job_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{job_id}",
    response_model=JobOut,
    summary="Get job detail",
)
async def get_job(
    db: DBSession,
    principal: CurrentPrincipal,
    job_id: uuid.UUID,
) -> JobOut:
    job, actor = await jobService.get_job(
        db, job_id, principal.user_id, is_admin=principal.is_admin
    )
    return job_to_out(job, actor)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

@router.post(
    "/{job_id}/accept",
    response_model=JobOut,
    summary="Provider accepts the booking",
)
async def accept_job(
    db: DBSession,
    principal: CurrentPrincipal,
    job_id: uuid.UUID,
) -> JobOut:
    job = await jobService.accept_job(
        db, job_id, principal.user_id, is_admin=principal.is_admin
    )
    return job_to_out(job, ActorType.PROVIDER)


@router.post(
    "/{job_id}/cancel",
    response_model=JobOut,
    summary="Cancel a job",
    description=(
        "Customers may cancel until the quote is accepted; providers and "
        "admins until work ends."
    ),
)
async def cancel_job(
    db: DBSession,
    principal: CurrentPrincipal,
    job_id: uuid.UUID,
    body: JobCancelRequest,
) -> JobOut:
    job = await jobService.cancel_job(
        db,
        job_id,
        principal.user_id,
        reason=body.reason,
        is_admin=principal.is_admin,
    )
    return job_to_out(job, resolve_actor(job, principal.user_id, is_admin=principal.is_admin))


# ---------------------------------------------------------------------------
# Billing & disputes
# ---------------------------------------------------------------------------

@router.get(
    "/{job_id}/billing",
    response_model=BillingOut,
    summary="Final billing record",
)
async def get_billing(
    db: DBSession,
    principal: CurrentPrincipal,
    job_id: uuid.UUID,
) -> BillingOut:
    job, _ = await jobService.get_job(
        db, job_id, principal.user_id, is_admin=principal.is_admin
    )
    if job.billing is None:
        raise IllegalStateTransition(
            job.id, job.status, "Billing is available once work has ended."
        )
    return BillingOut.model_validate(job.billing)


@router.post(
    "/{job_id}/dispute",
    response_model=JobOut,
    summary="Flag a dispute (holds the provider payout)",
)
async def flag_dispute(
    db: DBSession,
    principal: CurrentPrincipal,
    job_id: uuid.UUID,
    body: DisputeRequest,
) -> JobOut:
    job = await jobService.flag_dispute(
        db,
        job_id,
        principal.user_id,
        reason=body.reason,
        is_admin=principal.is_admin,
    )
    return job_to_out(job, resolve_actor(job, principal.user_id, is_admin=principal.is_admin))


@router.post(
    "/{job_id}/dispute/resolve",
    response_model=JobOut,
    summary="Resolve a dispute (admin)",
)
async def resolve_dispute(
    db: DBSession,
    principal: AdminPrincipal,
    job_id: uuid.UUID,
) -> JobOut:
    job = await jobService.resolve_dispute(
        db, job_id, principal.user_id, is_admin=True
    )
    return job_to_out(job, ActorType.ADMIN)
