"""
Pydantic v2 schemas for the Job API
===================================

Request bodies for booking, cancellation and disputes, and the job read
model.

The read model is a tagged union on ``status``: each variant carries only
the fields that are meaningful in that state (a ``ConfirmedJob`` has no
``billing``, a ``PendingJob`` has no quote). Handshake codes are exposed as
issue/expiry/consumed metadata only; hashes never leave the service.
Server-authoritative timestamps appear only in responses.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, RootModel

from src.core.clock import ensure_utc
from src.models.job import Job, JobStatus
from src.services import jobStateManager
from src.services.jobStateManager import ActorType, JobAction


# ---------------------------------------------------------------------------
# Shared pagination
# ---------------------------------------------------------------------------

class PaginationMeta(BaseModel):
    """Pagination metadata included in every paginated response."""

    page: int = Field(ge=1, description="Current page number (1-indexed)")
    page_size: int = Field(ge=1, description="Number of items per page")
    total_items: int = Field(ge=0, description="Total number of matching items")
    total_pages: int = Field(ge=0, description="Total number of pages")


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class JobCreateRequest(BaseModel):
    """Request body for booking a provider. The caller is the customer."""

    provider_id: uuid.UUID = Field(description="UUID of the provider being booked")
    scheduled_at: Optional[datetime] = Field(default=None, description="Requested appointment")
    hourly_rate_cents: Optional[int] = Field(
        default=None,
        gt=0,
        description="Provider hourly rate snapshot; selects duration-based billing",
    )


class JobCancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class DisputeRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


# ---------------------------------------------------------------------------
# Embedded value objects
# ---------------------------------------------------------------------------

class QuoteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    labor_cents: int
    materials_cents: int
    total_cents: int
    submitted_at: Optional[datetime] = None
    accepted: bool
    accepted_at: Optional[datetime] = None
    locked: bool
    version: int


class HandshakeOut(BaseModel):
    """Handshake metadata. Never includes the code or its hash."""

    model_config = ConfigDict(from_attributes=True)

    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    consumed: bool


class BillingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    mode: str
    actual_duration_minutes: Optional[int] = None
    billed_minutes: Optional[int] = None
    final_labor_cents: int
    final_materials_cents: int
    subtotal_cents: int
    platform_fee_rate: Decimal
    platform_fee_cents: int
    final_total_cents: int
    provider_payout_cents: int
    payout_held: bool
    finalized_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Read model: one variant per status
# ---------------------------------------------------------------------------

class _JobBase(BaseModel):
    id: uuid.UUID
    reference_number: str
    customer_id: uuid.UUID
    provider_id: uuid.UUID
    scheduled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    currency: str
    hourly_rate_cents: Optional[int] = None
    dispute_flag: bool = False
    dispute_reason: Optional[str] = None
    available_actions: list[str] = Field(
        default_factory=list,
        description="Actions the requesting caller may take in this state",
    )


class PendingJob(_JobBase):
    status: Literal["pending"]


class ConfirmedJob(_JobBase):
    status: Literal["confirmed"]
    confirmed_at: Optional[datetime] = None
    quote: Optional[QuoteOut] = None
    start_handshake: Optional[HandshakeOut] = None


class InProgressJob(_JobBase):
    status: Literal["in_progress"]
    confirmed_at: Optional[datetime] = None
    quote: QuoteOut
    start_handshake: HandshakeOut
    end_handshake: Optional[HandshakeOut] = None
    job_started_at: datetime


class AwaitingPaymentJob(_JobBase):
    status: Literal["awaiting_payment"]
    quote: QuoteOut
    job_started_at: datetime
    job_completed_at: datetime
    billing: BillingOut


class CompletedJob(_JobBase):
    status: Literal["completed"]
    quote: QuoteOut
    job_started_at: datetime
    job_completed_at: datetime
    billing: BillingOut
    payment_amount_cents: Optional[int] = None
    payment_tip_cents: int = 0
    payment_completed_at: Optional[datetime] = None
    payout_released_at: Optional[datetime] = None


class CancelledJob(_JobBase):
    status: Literal["cancelled"]
    quote: Optional[QuoteOut] = None
    cancelled_at: datetime
    cancelled_by: Optional[uuid.UUID] = None
    cancellation_reason: Optional[str] = None
    job_started_at: Optional[datetime] = None


JobVariant = Annotated[
    Union[
        PendingJob,
        ConfirmedJob,
        InProgressJob,
        AwaitingPaymentJob,
        CompletedJob,
        CancelledJob,
    ],
    Field(discriminator="status"),
]


class JobOut(RootModel[JobVariant]):
    pass


_VARIANTS: dict[JobStatus, type[_JobBase]] = {
    JobStatus.PENDING: PendingJob,
    JobStatus.CONFIRMED: ConfirmedJob,
    JobStatus.IN_PROGRESS: InProgressJob,
    JobStatus.AWAITING_PAYMENT: AwaitingPaymentJob,
    JobStatus.COMPLETED: CompletedJob,
    JobStatus.CANCELLED: CancelledJob,
}


def _available_actions(job: Job, actor: ActorType | None) -> list[str]:
    if actor is None:
        return []
    actions = jobStateManager.get_available_actions(
        job.status, actor, quote_accepted=job.quote_accepted
    )
    if job.quote_locked:
        actions = [
            a for a in actions
            if a not in (JobAction.SUBMIT_QUOTE, JobAction.RESPOND_QUOTE)
        ]
    elif job.quote_total_cents is None:
        actions = [a for a in actions if a != JobAction.RESPOND_QUOTE]
    return [a.value for a in actions]


def job_to_out(job: Job, actor: ActorType | None = None) -> JobOut:
    """Project a job row onto the variant for its current status."""
    data = {
        "id": job.id,
        "reference_number": job.reference_number,
        "customer_id": job.customer_id,
        "provider_id": job.provider_id,
        "status": job.status.value,
        "scheduled_at": ensure_utc(job.scheduled_at),
        "created_at": ensure_utc(job.created_at),
        "updated_at": ensure_utc(job.updated_at),
        "currency": job.currency,
        "hourly_rate_cents": job.hourly_rate_cents,
        "dispute_flag": job.dispute_flag,
        "dispute_reason": job.dispute_reason,
        "available_actions": _available_actions(job, actor),
        "confirmed_at": ensure_utc(job.confirmed_at),
        "quote": job.quote,
        "start_handshake": job.start_handshake,
        "end_handshake": job.end_handshake,
        "job_started_at": ensure_utc(job.job_started_at),
        "job_completed_at": ensure_utc(job.job_completed_at),
        "billing": job.billing,
        "payment_amount_cents": job.payment_amount_cents,
        "payment_tip_cents": job.payment_tip_cents,
        "payment_completed_at": ensure_utc(job.payment_completed_at),
        "payout_released_at": ensure_utc(job.payout_released_at),
        "cancelled_at": ensure_utc(job.cancelled_at),
        "cancelled_by": job.cancelled_by,
        "cancellation_reason": job.cancellation_reason,
    }
    variant = _VARIANTS[job.status].model_validate(data, from_attributes=True)
    return JobOut(variant)


class JobListResponse(BaseModel):
    """Paginated list of jobs."""

    data: list[JobOut]
    meta: PaginationMeta
