"""
Billing Reconciler
==================

Computes the final ledger entry when work ends and gates the provider
payout.

Billing modes:
  - ``fixed_quote`` (no hourly-rate snapshot on the job): the customer owes
    the accepted quote total.
  - ``duration_based`` (hourly-rate snapshot taken at booking): the elapsed
    time between ``job_started_at`` and ``job_completed_at`` is rounded up
    to whole minutes, then up to the billing unit, with a minimum charge;
    labor = billed minutes / 60 * hourly rate, plus quoted materials.

In both modes the platform fee is ``round_half_up(total * fee_rate)`` and
the provider payout is the remainder. All amounts are integer cents.

The record is written exactly once, guarded on ``billing_finalized_at IS
NULL``; a repeated ``finalize`` returns the stored record unchanged. If the
job is disputed the record is stored with ``payout_held = true`` and
``release_payout`` refuses until the dispute is resolved.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from src.core import clock
from src.core.config import settings
from src.events.jobEvents import emit_billing_finalized, emit_payout_released
from src.integrations.stripe import payoutService
from src.models.job import BillingMode, BillingRecord, Job, JobStatus
from src.services.jobStore import conditional_update, get_job_or_raise
from src.services.lifecycleErrors import (
    BillingAlreadyFinalized,
    ConcurrentModification,
    IllegalStateTransition,
    PayoutHeld,
)

logger = logging.getLogger(__name__)

_CENT = Decimal("1")


@dataclass(frozen=True)
class BillingComputation:
    mode: BillingMode
    actual_duration_minutes: int | None
    billed_minutes: int | None
    labor_cents: int
    materials_cents: int
    subtotal_cents: int
    platform_fee_rate: Decimal
    platform_fee_cents: int
    total_cents: int
    provider_payout_cents: int


# ---------------------------------------------------------------------------
# Pure billing math
# ---------------------------------------------------------------------------

def round_half_up(value: Decimal) -> int:
    return int(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def actual_duration_minutes(started_at: datetime, completed_at: datetime) -> int:
    """Elapsed whole minutes, rounded up."""
    started = clock.ensure_utc(started_at)
    completed = clock.ensure_utc(completed_at)
    seconds = (completed - started).total_seconds()
    if seconds < 0:
        raise ValueError("Job completion precedes job start.")
    return math.ceil(seconds / 60)


def billed_minutes_for(
    actual_minutes: int,
    *,
    unit_minutes: int | None = None,
    minimum_minutes: int | None = None,
) -> int:
    unit = settings.billing_unit_minutes if unit_minutes is None else unit_minutes
    if unit <= 0:
        raise ValueError(f"Billing unit must be a positive number of minutes, got {unit}.")
    minimum = settings.billing_minimum_minutes if minimum_minutes is None else minimum_minutes
    rounded = math.ceil(actual_minutes / unit) * unit
    return max(minimum, rounded)


def platform_fee_for(total_cents: int, fee_rate: Decimal | None = None) -> int:
    rate = settings.platform_fee_rate if fee_rate is None else fee_rate
    return round_half_up(Decimal(total_cents) * rate)


def compute_billing(
    *,
    quote_labor_cents: int | None,
    quote_materials_cents: int | None,
    quote_total_cents: int | None,
    hourly_rate_cents: int | None = None,
    started_at: datetime | None = None,
    completed_at: datetime | None = None,
    fee_rate: Decimal | None = None,
    unit_minutes: int | None = None,
    minimum_minutes: int | None = None,
) -> BillingComputation:
    """Compute the ledger entry. Pure; touches neither clock nor database."""
    rate = settings.platform_fee_rate if fee_rate is None else fee_rate

    if hourly_rate_cents is None:
        if quote_total_cents is None:
            raise ValueError("Fixed-quote billing requires an accepted quote.")
        mode = BillingMode.FIXED_QUOTE
        actual = None
        billed = None
        labor = quote_labor_cents or 0
        materials = quote_materials_cents or 0
        subtotal = quote_total_cents
    else:
        if started_at is None or completed_at is None:
            raise ValueError("Duration billing requires start and completion times.")
        mode = BillingMode.DURATION_BASED
        actual = actual_duration_minutes(started_at, completed_at)
        billed = billed_minutes_for(
            actual, unit_minutes=unit_minutes, minimum_minutes=minimum_minutes
        )
        labor = round_half_up(Decimal(billed) * Decimal(hourly_rate_cents) / Decimal(60))
        materials = quote_materials_cents or 0
        subtotal = labor + materials

    total = subtotal
    fee = platform_fee_for(total, rate)
    return BillingComputation(
        mode=mode,
        actual_duration_minutes=actual,
        billed_minutes=billed,
        labor_cents=labor,
        materials_cents=materials,
        subtotal_cents=subtotal,
        platform_fee_rate=rate,
        platform_fee_cents=fee,
        total_cents=total,
        provider_payout_cents=total - fee,
    )


def compute_for_job(job: Job) -> BillingComputation:
    return compute_billing(
        quote_labor_cents=job.quote_labor_cents,
        quote_materials_cents=job.quote_materials_cents,
        quote_total_cents=job.quote_total_cents,
        hourly_rate_cents=job.hourly_rate_cents,
        started_at=job.job_started_at,
        completed_at=job.job_completed_at,
    )


# ---------------------------------------------------------------------------
# Write-once ledger
# ---------------------------------------------------------------------------

async def _write_billing(db: AsyncSession, job: Job, result: BillingComputation) -> Job:
    return await conditional_update(
        db,
        job.id,
        expected_status=JobStatus.AWAITING_PAYMENT,
        values={
            "billing_mode": result.mode,
            "billing_actual_duration_minutes": result.actual_duration_minutes,
            "billing_billed_minutes": result.billed_minutes,
            "billing_labor_cents": result.labor_cents,
            "billing_materials_cents": result.materials_cents,
            "billing_subtotal_cents": result.subtotal_cents,
            "billing_platform_fee_rate": result.platform_fee_rate,
            "billing_platform_fee_cents": result.platform_fee_cents,
            "billing_total_cents": result.total_cents,
            "billing_provider_payout_cents": result.provider_payout_cents,
            "billing_finalized_at": clock.utcnow(),
            # Read from the row at write time so a concurrent dispute flag wins.
            "payout_held": Job.dispute_flag,
        },
        guards=(Job.billing_finalized_at.is_(None),),
        error_cls=BillingAlreadyFinalized,
    )


async def finalize(db: AsyncSession, job_id: uuid.UUID) -> BillingRecord:
    """Compute and store the billing record once; repeat calls are no-ops."""
    job = await get_job_or_raise(db, job_id)

    if job.billing is not None:
        logger.info("Billing for job %s already finalized; returning stored record", job.id)
        return job.billing

    if job.status != JobStatus.AWAITING_PAYMENT:
        raise IllegalStateTransition(
            job.id, job.status, "Billing is finalized only when work has ended."
        )

    result = compute_for_job(job)

    try:
        job = await _write_billing(db, job, result)
    except BillingAlreadyFinalized:
        job = await get_job_or_raise(db, job_id)
        if job.billing is None:
            raise ConcurrentModification(job.id, job.status)
        logger.info("Billing for job %s finalized concurrently; no-op", job.id)
        return job.billing

    record = job.billing
    emit_billing_finalized(
        job.id, record.final_total_cents, record.provider_payout_cents, record.payout_held
    )
    logger.info(
        "Billing finalized for job %s: mode=%s total=%d fee=%d payout=%d held=%s",
        job.id,
        record.mode.value,
        record.final_total_cents,
        record.platform_fee_cents,
        record.provider_payout_cents,
        record.payout_held,
    )
    return record


async def get_billing(db: AsyncSession, job_id: uuid.UUID) -> BillingRecord | None:
    job = await get_job_or_raise(db, job_id)
    return job.billing


# ---------------------------------------------------------------------------
# Payout gate
# ---------------------------------------------------------------------------

async def release_payout(
    db: AsyncSession,
    job_id: uuid.UUID,
    *,
    provider_account_id: str,
) -> Job:
    """Transfer the provider's share once the job is completed and undisputed.

    The release is claimed with a conditional write before the transfer is
    requested; a failed transfer propagates and the request rolls back the
    claim. Tips go to the provider in full.

    Raises:
        IllegalStateTransition: Job is not completed.
        PayoutHeld: Payout is held or the job is disputed.
        PaymentError: The transfer was rejected.
    """
    job = await get_job_or_raise(db, job_id)

    if job.status != JobStatus.COMPLETED or job.billing is None:
        raise IllegalStateTransition(
            job.id, job.status, "Payout is released only for completed jobs."
        )
    if job.payout_released_at is not None:
        logger.info("Payout for job %s already released", job.id)
        return job
    if job.payout_held or job.dispute_flag:
        raise PayoutHeld(job.id, job.status)

    job = await conditional_update(
        db,
        job_id,
        expected_status=JobStatus.COMPLETED,
        values={"payout_released_at": clock.utcnow()},
        guards=(
            Job.payout_released_at.is_(None),
            Job.payout_held.is_(False),
            Job.dispute_flag.is_(False),
        ),
    )

    amount_cents = (job.billing_provider_payout_cents or 0) + (job.payment_tip_cents or 0)
    transfer = await payoutService.create_transfer(
        job_id=job.id,
        provider_account_id=provider_account_id,
        amount_cents=amount_cents,
        currency=job.currency,
    )

    job = await conditional_update(
        db,
        job_id,
        expected_status=JobStatus.COMPLETED,
        values={"payout_transfer_id": transfer.id},
    )

    emit_payout_released(job.id, job.provider_id, amount_cents, transfer.id)
    logger.info(
        "Payout released for job %s: %d cents (transfer=%s)",
        job.id,
        amount_cents,
        transfer.id,
    )
    return job
