"""
Handshake Service
=================

Two-party proof-of-presence codes that authorize the start and the end of
billable work.

Start code: the customer issues it while the job is ``confirmed`` with an
accepted quote, reads it out to the provider on site, and the provider
verifies it -> ``in_progress``.

End code: the provider issues it while ``in_progress``, the customer
verifies it -> ``awaiting_payment``, and billing is finalized in the same
transaction.

Codes:
  - fixed-width numeric, generated with ``secrets``;
  - only an HMAC-SHA256 digest (keyed with ``settings.handshake_hash_key``
    and bound to the job id) is stored; the plaintext is returned once to
    the issuer and never persisted or logged;
  - expire ``settings.handshake_code_ttl_minutes`` after issue, checked
    lazily against the server clock at verify/issue time. Codes stored
    without an expiry (issued before expiry tracking) never expire.

Verification and the transition it authorizes are one conditional write
guarded on the status, the stored hash and ``consumed = false``, so a code
can drive at most one transition.
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import logging
import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from src.core import clock
from src.core.config import settings
from src.events.jobEvents import emit_code_issued, emit_job_status_changed
from src.models.job import AuthCode, Job, JobStatus
from src.services import billingReconciler
from src.services.jobStateManager import ACTION_RULES, JobAction
from src.services.jobStore import (
    conditional_update,
    get_job_or_raise,
    require_action,
    resolve_actor,
)
from src.services.lifecycleErrors import (
    CodeAlreadyConsumed,
    CodeAlreadyExists,
    CodeExpired,
    IllegalStateTransition,
    InvalidCode,
    NoCodeIssued,
)

logger = logging.getLogger(__name__)


class HandshakeStage(str, enum.Enum):
    START = "start"
    END = "end"


@dataclass(frozen=True)
class IssuedCode:
    """Plaintext code handed to the issuer exactly once."""
    stage: HandshakeStage
    code: str
    expires_at: datetime


_ISSUE_ACTION = {
    HandshakeStage.START: JobAction.ISSUE_START_CODE,
    HandshakeStage.END: JobAction.ISSUE_END_CODE,
}
_VERIFY_ACTION = {
    HandshakeStage.START: JobAction.VERIFY_START_CODE,
    HandshakeStage.END: JobAction.VERIFY_END_CODE,
}


# ---------------------------------------------------------------------------
# Code generation and hashing
# ---------------------------------------------------------------------------

def generate_code(length: int | None = None) -> str:
    """Random fixed-width numeric code (leading zeros kept)."""
    length = length or settings.handshake_code_length
    return "".join(secrets.choice(string.digits) for _ in range(length))


def hash_code(job_id: uuid.UUID, code: str) -> str:
    message = f"{job_id}:{code}".encode("utf-8")
    key = settings.handshake_hash_key.encode("utf-8")
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def code_matches(job_id: uuid.UUID, submitted: str, stored_hash: str) -> bool:
    """Constant-time comparison of the submitted code's digest."""
    return hmac.compare_digest(hash_code(job_id, submitted.strip()), stored_hash)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _column(stage: HandshakeStage, suffix: str):
    return getattr(Job, f"{stage.value}_code_{suffix}")


def _stored_code(job: Job, stage: HandshakeStage) -> AuthCode | None:
    if stage == HandshakeStage.START:
        return job.start_handshake
    return job.end_handshake


async def _issue(
    db: AsyncSession,
    job_id: uuid.UUID,
    actor_id: uuid.UUID,
    stage: HandshakeStage,
    *,
    regenerate: bool,
    is_admin: bool,
) -> IssuedCode:
    job = await get_job_or_raise(db, job_id)
    actor = resolve_actor(job, actor_id, is_admin=is_admin)
    require_action(job, _ISSUE_ACTION[stage], actor)

    now = clock.utcnow()
    existing = _stored_code(job, stage)
    prefix = stage.value

    if existing is None:
        guards = [_column(stage, "hash").is_(None)]
    else:
        if existing.consumed:
            raise CodeAlreadyConsumed(job.id, job.status)
        if not existing.is_expired(now):
            raise CodeAlreadyExists(job.id, job.status)
        if not regenerate:
            raise CodeExpired(
                job.id,
                job.status,
                "Handshake code has expired; request regeneration explicitly.",
            )
        # Replace exactly the code we just inspected.
        guards = [
            _column(stage, "hash") == existing.hash,
            _column(stage, "consumed").is_(False),
        ]

    if stage == HandshakeStage.START:
        guards.append(Job.quote_accepted.is_(True))

    code = generate_code()
    expires_at = now + timedelta(minutes=settings.handshake_code_ttl_minutes)

    job = await conditional_update(
        db,
        job_id,
        expected_status=job.status,
        values={
            f"{prefix}_code_hash": hash_code(job_id, code),
            f"{prefix}_code_issued_at": now,
            f"{prefix}_code_expires_at": expires_at,
            f"{prefix}_code_consumed": False,
        },
        guards=tuple(guards),
    )

    emit_code_issued(job.id, actor_id, stage.value, expires_at)
    logger.info(
        "Issued %s code for job %s (expires=%s, regenerated=%s)",
        prefix,
        job.id,
        expires_at.isoformat(),
        existing is not None,
    )
    return IssuedCode(stage=stage, code=code, expires_at=expires_at)


async def _verify(
    db: AsyncSession,
    job_id: uuid.UUID,
    actor_id: uuid.UUID,
    submitted: str,
    stage: HandshakeStage,
    *,
    is_admin: bool,
) -> Job:
    job = await get_job_or_raise(db, job_id)
    actor = resolve_actor(job, actor_id, is_admin=is_admin)
    action = _VERIFY_ACTION[stage]
    rule = ACTION_RULES[action]

    if actor not in rule.actors:
        raise IllegalStateTransition(
            job.id,
            job.status,
            f"Actor '{actor.value}' cannot verify the {stage.value} code.",
        )

    stored = _stored_code(job, stage)
    if stored is None:
        raise NoCodeIssued(job.id, job.status)
    if stored.consumed:
        raise CodeAlreadyConsumed(job.id, job.status)

    require_action(job, action, actor)

    now = clock.utcnow()
    if stored.is_expired(now):
        logger.warning("Expired %s code submitted for job %s", stage.value, job.id)
        raise CodeExpired(job.id, job.status)
    if not code_matches(job.id, submitted, stored.hash):
        logger.warning("Invalid %s code submitted for job %s", stage.value, job.id)
        raise InvalidCode(job.id, job.status)

    prefix = stage.value
    old_status = job.status
    values: dict = {
        f"{prefix}_code_consumed": True,
        "status": rule.target,
    }
    guards = [
        _column(stage, "hash") == stored.hash,
        _column(stage, "consumed").is_(False),
    ]
    if stage == HandshakeStage.START:
        values["job_started_at"] = now
        guards.append(Job.quote_accepted.is_(True))
    else:
        values["job_completed_at"] = now

    job = await conditional_update(
        db,
        job_id,
        expected_status=old_status,
        values=values,
        guards=tuple(guards),
    )

    emit_job_status_changed(job.id, old_status.value, job.status.value, actor_id)
    logger.info(
        "Job %s transitioned: %s -> %s via %s code (actor=%s)",
        job.id,
        old_status.value,
        job.status.value,
        prefix,
        actor_id,
    )

    if job.status == JobStatus.AWAITING_PAYMENT:
        await billingReconciler.finalize(db, job.id)
        job = await get_job_or_raise(db, job.id)

    return job


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def issue_start_code(
    db: AsyncSession,
    job_id: uuid.UUID,
    actor_id: uuid.UUID,
    *,
    regenerate: bool = False,
    is_admin: bool = False,
) -> IssuedCode:
    """Customer issues the start code.

    Raises:
        CodeAlreadyExists: An unconsumed, unexpired code is outstanding.
        CodeExpired: The outstanding code expired and ``regenerate`` is False.
    """
    return await _issue(
        db, job_id, actor_id, HandshakeStage.START,
        regenerate=regenerate, is_admin=is_admin,
    )


async def verify_start_code(
    db: AsyncSession,
    job_id: uuid.UUID,
    actor_id: uuid.UUID,
    code: str,
    *,
    is_admin: bool = False,
) -> Job:
    """Provider verifies the start code; the job moves to ``in_progress``."""
    return await _verify(
        db, job_id, actor_id, code, HandshakeStage.START, is_admin=is_admin
    )


async def issue_end_code(
    db: AsyncSession,
    job_id: uuid.UUID,
    actor_id: uuid.UUID,
    *,
    regenerate: bool = False,
    is_admin: bool = False,
) -> IssuedCode:
    return await _issue(
        db, job_id, actor_id, HandshakeStage.END,
        regenerate=regenerate, is_admin=is_admin,
    )


async def verify_end_code(
    db: AsyncSession,
    job_id: uuid.UUID,
    actor_id: uuid.UUID,
    code: str,
    *,
    is_admin: bool = False,
) -> Job:
    """Customer verifies the end code.

    The job moves to ``awaiting_payment``, ``job_completed_at`` is stamped
    and the billing record is written in the same transaction.
    """
    return await _verify(
        db, job_id, actor_id, code, HandshakeStage.END, is_admin=is_admin
    )
