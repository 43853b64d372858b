"""
Job Service
===========

Business logic for the job lifecycle. All operations use async SQLAlchemy
sessions and enforce:

  - State machine enforcement via jobStateManager (actor + status guards)
  - Compare-and-swap writes via jobStore (no lost updates, no retries)
  - Event emission on every state change

Key functions:
  - create_job            -- customer books a provider (pending)
  - accept_job            -- provider accepts (pending -> confirmed)
  - cancel_job            -- cancellation with the accepted-quote gate
  - mark_payment_received -- payment collaborator (awaiting_payment -> completed)
  - record_payment_failure
  - flag_dispute / resolve_dispute -- payout gate
  - get_job / list_jobs_for_party

``in_progress`` and ``awaiting_payment`` are deliberately not reachable from
here; they are driven by handshake verification in handshakeService.
"""

from __future__ import annotations

import logging
import math
import random
import string
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core import clock
from src.core.config import settings
from src.events.jobEvents import (
    emit_dispute_flagged,
    emit_dispute_resolved,
    emit_job_cancelled,
    emit_job_created,
    emit_job_status_changed,
    emit_payment_duplicate,
    emit_payment_failed,
    emit_payment_received,
)
from src.models.job import Job, JobStatus
from src.services.jobStateManager import ActorType, JobAction
from src.services.jobStore import (
    conditional_update,
    get_job_or_raise,
    require_action,
    resolve_actor,
)
from src.services.lifecycleErrors import (
    CancellationForbidden,
    ConcurrentModification,
    IllegalStateTransition,
)

logger = logging.getLogger(__name__)

PARTIAL_PAYMENT_REASON = "partial payment"
DUPLICATE_PAYMENT_REASON = "duplicate payment"

_SETTLED: frozenset[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.CANCELLED,
})

_DISPUTABLE: frozenset[JobStatus] = frozenset({
    JobStatus.IN_PROGRESS,
    JobStatus.AWAITING_PAYMENT,
    JobStatus.COMPLETED,
})


# ---------------------------------------------------------------------------
# Pagination helper
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PaginatedResult:
    """Generic container for a page of results plus metadata."""

    items: Sequence
    total_items: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.total_items == 0:
            return 0
        return math.ceil(self.total_items / self.page_size)


# ---------------------------------------------------------------------------
# Reference number generation
# ---------------------------------------------------------------------------

def generate_reference_number() -> str:
    """Generate a human-readable reference number in JOB-XXXXXX format.

    Collision avoidance is handled at the database level via a unique
    constraint.
    """
    chars = string.ascii_uppercase + string.digits
    suffix = "".join(random.choices(chars, k=6))
    return f"JOB-{suffix}"


# ---------------------------------------------------------------------------
# Booking
# ---------------------------------------------------------------------------

async def create_job(
    db: AsyncSession,
    *,
    customer_id: uuid.UUID,
    provider_id: uuid.UUID,
    scheduled_at: datetime | None = None,
    hourly_rate_cents: int | None = None,
) -> Job:
    """Create a new job in ``pending``.

    Args:
        db: Async database session.
        customer_id: UUID of the booking customer.
        provider_id: UUID of the requested provider.
        scheduled_at: Requested appointment time.
        hourly_rate_cents: Provider's hourly rate snapshot. When present the
            job is billed by duration instead of by the fixed quote.

    Raises:
        ValueError: Customer and provider are the same user, or the rate is
            not positive.
    """
    if customer_id == provider_id:
        raise ValueError("Customer and provider must be different users.")
    if hourly_rate_cents is not None and hourly_rate_cents <= 0:
        raise ValueError("Hourly rate must be positive.")

    job = Job(
        reference_number=generate_reference_number(),
        customer_id=customer_id,
        provider_id=provider_id,
        status=JobStatus.PENDING,
        scheduled_at=scheduled_at,
        hourly_rate_cents=hourly_rate_cents,
        currency=settings.currency,
    )
    db.add(job)
    await db.flush()

    emit_job_created(job.id, customer_id, provider_id, job.reference_number)
    logger.info(
        "Job created: %s (ref=%s, customer=%s, provider=%s, hourly=%s)",
        job.id,
        job.reference_number,
        customer_id,
        provider_id,
        hourly_rate_cents,
    )
    return job


async def accept_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    actor_id: uuid.UUID,
    *,
    is_admin: bool = False,
) -> Job:
    """Provider accepts the booking request (pending -> confirmed)."""
    job = await get_job_or_raise(db, job_id)
    actor = resolve_actor(job, actor_id, is_admin=is_admin)
    require_action(job, JobAction.ACCEPT, actor)

    job = await conditional_update(
        db,
        job_id,
        expected_status=JobStatus.PENDING,
        values={"status": JobStatus.CONFIRMED, "confirmed_at": clock.utcnow()},
    )

    emit_job_status_changed(job.id, JobStatus.PENDING.value, job.status.value, actor_id)
    logger.info("Job %s accepted by provider %s", job.id, actor_id)
    return job


async def cancel_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    actor_id: uuid.UUID,
    *,
    reason: str | None = None,
    is_admin: bool = False,
) -> Job:
    """Cancel a job.

    Customers may cancel until the quote is accepted; providers and admins
    may cancel until work ends. Outstanding (unconsumed) handshake codes are
    discarded with the job.

    Raises:
        CancellationForbidden: Customer cancelling after quote acceptance.
        IllegalStateTransition: Job is already past the cancellable states.
        ConcurrentModification: Job changed between read and write.
    """
    job = await get_job_or_raise(db, job_id)
    actor = resolve_actor(job, actor_id, is_admin=is_admin)
    require_action(job, JobAction.CANCEL, actor)

    old_status = job.status
    values: dict = {
        "status": JobStatus.CANCELLED,
        "cancelled_at": clock.utcnow(),
        "cancelled_by": actor_id,
        "cancellation_reason": reason,
    }
    for stage, code in (("start", job.start_handshake), ("end", job.end_handshake)):
        if code is not None and not code.consumed:
            values[f"{stage}_code_hash"] = None
            values[f"{stage}_code_issued_at"] = None
            values[f"{stage}_code_expires_at"] = None

    guards = ()
    if actor == ActorType.CUSTOMER:
        guards = (Job.quote_accepted.is_(False),)

    try:
        job = await conditional_update(
            db, job_id, expected_status=old_status, values=values, guards=guards
        )
    except ConcurrentModification as exc:
        current = await get_job_or_raise(db, job_id)
        if actor == ActorType.CUSTOMER and current.quote_accepted:
            raise CancellationForbidden(current.id, current.status) from exc
        raise

    emit_job_status_changed(job.id, old_status.value, job.status.value, actor_id)
    emit_job_cancelled(job.id, actor_id, reason)
    logger.info(
        "Job %s cancelled: %s -> %s by %s %s (reason=%s)",
        job.id,
        old_status.value,
        job.status.value,
        actor.value,
        actor_id,
        reason,
    )
    return job


# ---------------------------------------------------------------------------
# Payment collaborator
# ---------------------------------------------------------------------------

async def mark_payment_received(
    db: AsyncSession,
    job_id: uuid.UUID,
    *,
    amount_cents: int,
    reference: str,
    tip_cents: int = 0,
) -> Job:
    """Payment collaborator confirms receipt (awaiting_payment -> completed).

    ``amount_cents`` is the total received including ``tip_cents``. The tip
    may not exceed ``settings.max_tip_ratio`` of the billed total. A payment
    short of the billed total still completes the job but flags a dispute,
    which holds the provider payout. Replays of the same reference are
    no-ops. A different payment arriving for a completed or cancelled job is
    recorded as a duplicate for refund.
    """
    job = await get_job_or_raise(db, job_id)

    if job.status == JobStatus.COMPLETED and job.payment_reference == reference:
        logger.info("Payment %s for job %s already recorded", reference, job.id)
        return job
    if job.status in _SETTLED:
        return await _record_duplicate_payment(
            db, job, amount_cents=amount_cents, reference=reference
        )

    require_action(job, JobAction.CONFIRM_PAYMENT, ActorType.SYSTEM)

    billing = job.billing
    if billing is None:
        raise IllegalStateTransition(
            job.id, job.status, "Payment cannot be confirmed before billing is finalized."
        )

    if amount_cents < 0 or tip_cents < 0:
        raise ValueError("Payment amounts must not be negative.")
    max_tip = Decimal(billing.final_total_cents) * settings.max_tip_ratio
    if tip_cents > max_tip:
        raise ValueError(
            f"Tip of {tip_cents} exceeds {settings.max_tip_ratio:.0%} of the job total."
        )

    now = clock.utcnow()
    paid_for_job = amount_cents - tip_cents
    partial = paid_for_job < billing.final_total_cents

    values: dict = {
        "status": JobStatus.COMPLETED,
        "payment_reference": reference,
        "payment_amount_cents": amount_cents,
        "payment_tip_cents": tip_cents,
        "payment_completed_at": now,
    }
    if partial:
        values.update(
            dispute_flag=True,
            dispute_reason=PARTIAL_PAYMENT_REASON,
            dispute_flagged_at=now,
            payout_held=True,
        )

    job = await conditional_update(
        db,
        job_id,
        expected_status=JobStatus.AWAITING_PAYMENT,
        values=values,
        guards=(Job.billing_finalized_at.is_not(None),),
    )

    emit_job_status_changed(
        job.id, JobStatus.AWAITING_PAYMENT.value, job.status.value, None
    )
    emit_payment_received(job.id, amount_cents, tip_cents, reference)
    if partial:
        emit_dispute_flagged(job.id, None, PARTIAL_PAYMENT_REASON)
        logger.warning(
            "Partial payment for job %s: received %d of %d; payout held",
            job.id,
            paid_for_job,
            billing.final_total_cents,
        )

    logger.info(
        "Job %s completed: payment %s amount=%d tip=%d",
        job.id,
        reference,
        amount_cents,
        tip_cents,
    )
    return job


async def _record_duplicate_payment(
    db: AsyncSession,
    job: Job,
    *,
    amount_cents: int,
    reference: str,
) -> Job:
    """Flag a captured payment that no longer has a job to settle.

    The dispute holds any unreleased payout until an admin refunds the
    duplicate and resolves it.
    """
    reason = f"{DUPLICATE_PAYMENT_REASON} {reference}"
    if job.dispute_flag and job.dispute_reason == reason:
        logger.info("Duplicate payment %s for job %s already recorded", reference, job.id)
        return job

    job = await conditional_update(
        db,
        job.id,
        expected_status=job.status,
        values={
            "dispute_flag": True,
            "dispute_reason": reason,
            "dispute_flagged_at": clock.utcnow(),
            "payout_held": True,
        },
    )

    emit_payment_duplicate(job.id, amount_cents, reference)
    emit_dispute_flagged(job.id, None, reason)
    logger.error(
        "Payment %s (amount=%d) captured for %s job %s; flagged for refund",
        reference,
        amount_cents,
        job.status.value,
        job.id,
    )
    return job


async def record_payment_failure(
    db: AsyncSession,
    job_id: uuid.UUID,
    *,
    reference: str,
    reason: str | None = None,
) -> Job:
    """A payment attempt failed. The job stays in its current status."""
    job = await get_job_or_raise(db, job_id)
    emit_payment_failed(job.id, reference, reason)
    logger.warning(
        "Payment %s failed for job %s (status=%s): %s",
        reference,
        job.id,
        job.status.value,
        reason,
    )
    return job


# ---------------------------------------------------------------------------
# Dispute gate
# ---------------------------------------------------------------------------

async def flag_dispute(
    db: AsyncSession,
    job_id: uuid.UUID,
    actor_id: uuid.UUID,
    *,
    reason: str,
    is_admin: bool = False,
) -> Job:
    """Flag a dispute; holds the provider payout until resolved.

    Allowed once work has started. Flagging an already-disputed job
    returns it unchanged.
    """
    job = await get_job_or_raise(db, job_id)
    resolve_actor(job, actor_id, is_admin=is_admin)

    if job.status not in _DISPUTABLE:
        raise IllegalStateTransition(
            job.id, job.status, "Disputes can only be raised once work has started."
        )
    if job.dispute_flag:
        return job

    job = await conditional_update(
        db,
        job_id,
        expected_status=job.status,
        values={
            "dispute_flag": True,
            "dispute_reason": reason,
            "dispute_flagged_at": clock.utcnow(),
            "payout_held": True,
        },
        guards=(Job.dispute_flag.is_(False),),
    )

    emit_dispute_flagged(job.id, actor_id, reason)
    logger.warning("Dispute flagged on job %s by %s: %s", job.id, actor_id, reason)
    return job


async def resolve_dispute(
    db: AsyncSession,
    job_id: uuid.UUID,
    actor_id: uuid.UUID,
    *,
    is_admin: bool = False,
) -> Job:
    """Admin clears the dispute flag, releasing the payout gate."""
    job = await get_job_or_raise(db, job_id)
    if not is_admin:
        raise IllegalStateTransition(
            job.id, job.status, "Only an admin can resolve a dispute."
        )
    if not job.dispute_flag:
        raise IllegalStateTransition(job.id, job.status, "Job is not disputed.")

    job = await conditional_update(
        db,
        job_id,
        expected_status=job.status,
        values={"dispute_flag": False, "payout_held": False},
        guards=(Job.dispute_flag.is_(True),),
    )

    emit_dispute_resolved(job.id, actor_id)
    logger.info("Dispute on job %s resolved by admin %s", job.id, actor_id)
    return job


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    actor_id: uuid.UUID,
    *,
    is_admin: bool = False,
) -> tuple[Job, ActorType]:
    """Fetch a job visible to the caller, with the caller's role on it."""
    job = await get_job_or_raise(db, job_id)
    actor = resolve_actor(job, actor_id, is_admin=is_admin)
    return job, actor


async def list_jobs_for_party(
    db: AsyncSession,
    user_id: uuid.UUID,
    *,
    status_filter: str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> PaginatedResult:
    """Return a paginated list of jobs where the user is customer or provider."""
    filters = [or_(Job.customer_id == user_id, Job.provider_id == user_id)]
    if status_filter:
        filters.append(Job.status == JobStatus(status_filter))

    count_stmt = select(func.count(Job.id)).where(*filters)
    total_items: int = (await db.execute(count_stmt)).scalar_one()

    data_stmt = (
        select(Job)
        .where(*filters)
        .order_by(Job.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    jobs = (await db.execute(data_stmt)).scalars().all()

    return PaginatedResult(
        items=jobs,
        total_items=total_items,
        page=page,
        page_size=page_size,
    )
