"""
Job Store
=========

Persistence primitives shared by every lifecycle service:

- ``load_job`` / ``get_job_or_raise`` always re-read the authoritative row
  (``populate_existing``) so stale identity-map copies never leak into a
  decision.
- ``conditional_update`` is the only way a lifecycle service writes to
  ``jobs``: ``UPDATE jobs SET ... WHERE id = :id AND status = :expected AND
  <guards>``. Zero matched rows means another request got there first and
  the caller gets a typed error carrying the current status. Nothing here
  retries.
- ``resolve_actor`` / ``require_action`` map a caller onto the job and
  check the state machine before any write is attempted.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.job import Job, JobStatus
from src.services import jobStateManager
from src.services.jobStateManager import ActorType, JobAction
from src.services.lifecycleErrors import (
    CancellationForbidden,
    ConcurrentModification,
    IllegalStateTransition,
    JobLifecycleError,
    JobNotFound,
    NotJobParticipant,
)

logger = logging.getLogger(__name__)


async def load_job(db: AsyncSession, job_id: uuid.UUID) -> Job | None:
    result = await db.execute(
        select(Job)
        .where(Job.id == job_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_job_or_raise(db: AsyncSession, job_id: uuid.UUID) -> Job:
    job = await load_job(db, job_id)
    if job is None:
        raise JobNotFound(job_id, None)
    return job


async def conditional_update(
    db: AsyncSession,
    job_id: uuid.UUID,
    *,
    expected_status: JobStatus,
    values: dict[str, Any],
    guards: tuple = (),
    error_cls: type[JobLifecycleError] = ConcurrentModification,
) -> Job:
    """Apply ``values`` only if the row still matches the expected state.

    Args:
        expected_status: Status the row must currently hold.
        values: Column values to set.
        guards: Extra SQL expressions that must also hold (e.g. the stored
            code hash, ``quote_version``, ``billing_finalized_at IS NULL``).
        error_cls: Error raised when no row matched.

    Returns:
        The refreshed job row.
    """
    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == expected_status, *guards)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)

    if result.rowcount == 0:
        current = await load_job(db, job_id)
        if current is None:
            raise JobNotFound(job_id, None)
        logger.warning(
            "Conditional write on job %s lost (expected %s, found %s)",
            job_id,
            expected_status.value,
            current.status.value,
        )
        raise error_cls(job_id, current.status)

    await db.flush()
    return await get_job_or_raise(db, job_id)


def resolve_actor(
    job: Job,
    actor_id: uuid.UUID,
    *,
    is_admin: bool = False,
) -> ActorType:
    """Map the caller onto the job, or reject a non-participant."""
    if actor_id == job.customer_id:
        return ActorType.CUSTOMER
    if actor_id == job.provider_id:
        return ActorType.PROVIDER
    if is_admin:
        return ActorType.ADMIN
    raise NotJobParticipant(job.id, job.status)


def require_action(job: Job, action: JobAction, actor: ActorType) -> None:
    """Raise the matching lifecycle error if the state machine forbids it."""
    result = jobStateManager.validate_action(
        job.status,
        action,
        actor,
        quote_accepted=job.quote_accepted,
    )
    if result.allowed:
        return
    if result.cancellation_forbidden:
        raise CancellationForbidden(job.id, job.status)
    raise IllegalStateTransition(job.id, job.status, result.reason)
