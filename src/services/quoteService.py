"""
Quote Service
=============

Quote negotiation embedded in the ``confirmed`` state.

Flow:
  1. Provider inspects the job and submits labor + materials.
  2. Customer accepts or rejects.
  3. Accept is irrevocable: the quote is locked and start-code issuance is
     unlocked. Reject clears the quote; the provider may submit again and
     the customer may still cancel.

Rules:
  - The total is always recomputed server-side as labor + materials.
  - An unlocked quote may be overwritten; every submission bumps
    ``quote_version``.
  - Acceptance is a conditional write guarded on ``quote_version`` and
    ``quote_locked = false`` so a customer can never accept a quote that was
    superseded after they read it.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from src.core import clock
from src.events.jobEvents import emit_quote_responded, emit_quote_submitted
from src.models.job import Job, JobStatus
from src.services.jobStateManager import JobAction
from src.services.jobStore import (
    conditional_update,
    get_job_or_raise,
    require_action,
    resolve_actor,
)
from src.services.lifecycleErrors import (
    ConcurrentModification,
    QuoteLocked,
    QuoteNotFound,
)

logger = logging.getLogger(__name__)


def _validate_amounts(labor_cents: int, materials_cents: int) -> int:
    if labor_cents < 0 or materials_cents < 0:
        raise ValueError("Quote amounts must not be negative.")
    total = labor_cents + materials_cents
    if total <= 0:
        raise ValueError("Quote total must be greater than zero.")
    return total


async def submit_quote(
    db: AsyncSession,
    job_id: uuid.UUID,
    actor_id: uuid.UUID,
    *,
    labor_cents: int,
    materials_cents: int,
    is_admin: bool = False,
) -> Job:
    """Provider submits (or replaces) the quote.

    Raises:
        QuoteLocked: The quote has already been accepted.
        ValueError: Negative amounts or a zero total.
    """
    total_cents = _validate_amounts(labor_cents, materials_cents)

    job = await get_job_or_raise(db, job_id)
    actor = resolve_actor(job, actor_id, is_admin=is_admin)
    require_action(job, JobAction.SUBMIT_QUOTE, actor)

    if job.quote_locked:
        raise QuoteLocked(job.id, job.status)

    try:
        job = await conditional_update(
            db,
            job_id,
            expected_status=JobStatus.CONFIRMED,
            values={
                "quote_labor_cents": labor_cents,
                "quote_materials_cents": materials_cents,
                "quote_total_cents": total_cents,
                "quote_submitted_at": clock.utcnow(),
                "quote_accepted": False,
                "quote_accepted_at": None,
                "quote_version": job.quote_version + 1,
            },
            guards=(
                Job.quote_locked.is_(False),
                Job.quote_version == job.quote_version,
            ),
        )
    except ConcurrentModification as exc:
        current = await get_job_or_raise(db, job_id)
        if current.quote_locked:
            raise QuoteLocked(current.id, current.status) from exc
        raise

    emit_quote_submitted(job.id, actor_id, total_cents, job.quote_version)
    logger.info(
        "Quote v%d submitted for job %s: labor=%d materials=%d total=%d",
        job.quote_version,
        job.id,
        labor_cents,
        materials_cents,
        total_cents,
    )
    return job


async def respond_to_quote(
    db: AsyncSession,
    job_id: uuid.UUID,
    actor_id: uuid.UUID,
    *,
    accept: bool,
    expected_version: int,
    is_admin: bool = False,
) -> Job:
    """Customer accepts or rejects the current quote.

    Args:
        expected_version: The ``quote_version`` the customer was shown. A
            newer quote makes the call fail instead of accepting a price the
            customer never saw.

    Raises:
        QuoteNotFound: No quote is pending.
        QuoteLocked: The quote was already accepted.
        ConcurrentModification: The quote changed since it was read.
    """
    job = await get_job_or_raise(db, job_id)
    actor = resolve_actor(job, actor_id, is_admin=is_admin)
    require_action(job, JobAction.RESPOND_QUOTE, actor)

    quote = job.quote
    if quote is None:
        raise QuoteNotFound(job.id, job.status)
    if quote.locked:
        raise QuoteLocked(job.id, job.status)
    if expected_version != quote.version:
        raise ConcurrentModification(
            job.id,
            job.status,
            f"Quote is at version {quote.version}, not {expected_version}.",
        )

    if accept:
        values = {
            "quote_accepted": True,
            "quote_locked": True,
            "quote_accepted_at": clock.utcnow(),
        }
    else:
        values = {
            "quote_labor_cents": None,
            "quote_materials_cents": None,
            "quote_total_cents": None,
            "quote_submitted_at": None,
        }

    try:
        job = await conditional_update(
            db,
            job_id,
            expected_status=JobStatus.CONFIRMED,
            values=values,
            guards=(
                Job.quote_locked.is_(False),
                Job.quote_version == expected_version,
                Job.quote_total_cents.is_not(None),
            ),
        )
    except ConcurrentModification as exc:
        current = await get_job_or_raise(db, job_id)
        if current.quote_locked:
            raise QuoteLocked(current.id, current.status) from exc
        raise

    emit_quote_responded(job.id, actor_id, accept, quote.total_cents)
    logger.info(
        "Quote v%d for job %s %s by customer %s (total=%d)",
        quote.version,
        job.id,
        "accepted" if accept else "rejected",
        actor_id,
        quote.total_cents,
    )
    return job
