"""
Handshake API Routes
====================

Proof-of-presence code exchange.

Routes:
  POST /api/v1/jobs/{job_id}/start-code         -- Customer issues start code
  POST /api/v1/jobs/{job_id}/start-code/verify  -- Provider verifies (-> in_progress)
  POST /api/v1/jobs/{job_id}/end-code           -- Provider issues end code
  POST /api/v1/jobs/{job_id}/end-code/verify    -- Customer verifies (-> awaiting_payment)
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, status

from src.api.deps import CurrentPrincipal, DBSession
from src.api.schemas.handshake import IssueCodeRequest, IssuedCodeOut, VerifyCodeRequest
from src.api.schemas.job import JobOut, job_to_out
from src.services import handshakeService
from src.services.handshakeService import IssuedCode
from src.services.jobStateManager import ActorType

router = APIRouter(prefix="/jobs", tags=["Handshake"])


def _issued_out(issued: IssuedCode) -> IssuedCodeOut:
    return IssuedCodeOut(
        stage=issued.stage.value,
        code=issued.code,
        expires_at=issued.expires_at,
    )


@router.post(
    "/{job_id}/start-code",
    response_model=IssuedCodeOut,
    status_code=status.HTTP_201_CREATED,
    summary="Issue the start code (customer)",
)
async def issue_start_code(
    db: DBSession,
    principal: CurrentPrincipal,
    job_id: uuid.UUID,
    body: IssueCodeRequest,
) -> IssuedCodeOut:
    issued = await handshakeService.issue_start_code(
        db,
        job_id,
        principal.user_id,
        regenerate=body.regenerate,
        is_admin=principal.is_admin,
    )
    return _issued_out(issued)


@router.post(
    "/{job_id}/start-code/verify",
    response_model=JobOut,
    summary="Verify the start code (provider)",
)
async def verify_start_code(
    db: DBSession,
    principal: CurrentPrincipal,
    job_id: uuid.UUID,
    body: VerifyCodeRequest,
) -> JobOut:
    job = await handshakeService.verify_start_code(
        db, job_id, principal.user_id, body.code, is_admin=principal.is_admin
    )
    return job_to_out(job, ActorType.PROVIDER)


@router.post(
    "/{job_id}/end-code",
    response_model=IssuedCodeOut,
    status_code=status.HTTP_201_CREATED,
    summary="Issue the end code (provider)",
)
async def issue_end_code(
    db: DBSession,
    principal: CurrentPrincipal,
    job_id: uuid.UUID,
    body: IssueCodeRequest,
) -> IssuedCodeOut:
    issued = await handshakeService.issue_end_code(
        db,
        job_id,
        principal.user_id,
        regenerate=body.regenerate,
        is_admin=principal.is_admin,
    )
    return _issued_out(issued)


@router.post(
    "/{job_id}/end-code/verify",
    response_model=JobOut,
    summary="Verify the end code (customer)",
    description="Ends billable work and finalizes billing in the same transaction.",
)
async def verify_end_code(
    db: DBSession,
    principal: CurrentPrincipal,
    job_id: uuid.UUID,
    body: VerifyCodeRequest,
) -> JobOut:
    job = await handshakeService.verify_end_code(
        db, job_id, principal.user_id, body.code, is_admin=principal.is_admin
    )
    return job_to_out(job, ActorType.CUSTOMER)
