"""
Job Event Emission
==================

Named emitters for every lifecycle event. Each function builds the event
through ``notificationService.notify`` (fire-and-forget) and returns the
payload dict so callers and tests can inspect what was sent.

Events emitted:
  - job.created
  - job.status_changed
  - job.cancelled
  - quote.submitted / quote.accepted / quote.rejected
  - handshake.code_issued
  - billing.finalized
  - payment.received / payment.failed / payment.duplicate
  - dispute.flagged / dispute.resolved
  - payout.released

Plaintext handshake codes are never part of an event payload.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from src.services.notificationService import notify


def emit_job_created(
    job_id: uuid.UUID,
    customer_id: uuid.UUID,
    provider_id: uuid.UUID,
    reference_number: str,
) -> dict[str, Any]:
    """Emit event when a new job is booked."""
    return notify(
        "job.created",
        job_id,
        actor_id=customer_id,
        provider_id=str(provider_id),
        reference_number=reference_number,
    )


def emit_job_status_changed(
    job_id: uuid.UUID,
    old_status: str,
    new_status: str,
    actor_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    """Emit event when a job transitions between states."""
    return notify(
        "job.status_changed",
        job_id,
        actor_id=actor_id,
        old_status=old_status,
        new_status=new_status,
    )


def emit_job_cancelled(
    job_id: uuid.UUID,
    cancelled_by: uuid.UUID,
    reason: str | None = None,
) -> dict[str, Any]:
    return notify("job.cancelled", job_id, actor_id=cancelled_by, reason=reason)


def emit_quote_submitted(
    job_id: uuid.UUID,
    provider_id: uuid.UUID,
    total_cents: int,
    version: int,
) -> dict[str, Any]:
    return notify(
        "quote.submitted",
        job_id,
        actor_id=provider_id,
        total_cents=total_cents,
        version=version,
    )


def emit_quote_responded(
    job_id: uuid.UUID,
    customer_id: uuid.UUID,
    accepted: bool,
    total_cents: int,
) -> dict[str, Any]:
    """Emit ``quote.accepted`` or ``quote.rejected``."""
    event_type = "quote.accepted" if accepted else "quote.rejected"
    return notify(event_type, job_id, actor_id=customer_id, total_cents=total_cents)


def emit_code_issued(
    job_id: uuid.UUID,
    issuer_id: uuid.UUID,
    stage: str,
    expires_at: datetime,
) -> dict[str, Any]:
    """Emit event when a start or end code is issued (never the code itself)."""
    return notify(
        "handshake.code_issued",
        job_id,
        actor_id=issuer_id,
        stage=stage,
        expires_at=expires_at.isoformat(),
    )


def emit_billing_finalized(
    job_id: uuid.UUID,
    total_cents: int,
    payout_cents: int,
    payout_held: bool,
) -> dict[str, Any]:
    return notify(
        "billing.finalized",
        job_id,
        total_cents=total_cents,
        provider_payout_cents=payout_cents,
        payout_held=payout_held,
    )


def emit_payment_received(
    job_id: uuid.UUID,
    amount_cents: int,
    tip_cents: int,
    reference: str,
) -> dict[str, Any]:
    return notify(
        "payment.received",
        job_id,
        amount_cents=amount_cents,
        tip_cents=tip_cents,
        reference=reference,
    )


def emit_payment_failed(
    job_id: uuid.UUID,
    reference: str,
    reason: str | None = None,
) -> dict[str, Any]:
    return notify("payment.failed", job_id, reference=reference, reason=reason)


def emit_payment_duplicate(
    job_id: uuid.UUID,
    amount_cents: int,
    reference: str,
) -> dict[str, Any]:
    """Emit event when a payment arrives for a job that is already settled."""
    return notify(
        "payment.duplicate",
        job_id,
        amount_cents=amount_cents,
        reference=reference,
    )


def emit_dispute_flagged(
    job_id: uuid.UUID,
    actor_id: uuid.UUID | None,
    reason: str,
) -> dict[str, Any]:
    return notify("dispute.flagged", job_id, actor_id=actor_id, reason=reason)


def emit_dispute_resolved(
    job_id: uuid.UUID,
    actor_id: uuid.UUID,
) -> dict[str, Any]:
    return notify("dispute.resolved", job_id, actor_id=actor_id)


def emit_payout_released(
    job_id: uuid.UUID,
    provider_id: uuid.UUID,
    amount_cents: int,
    transfer_id: str,
) -> dict[str, Any]:
    return notify(
        "payout.released",
        job_id,
        provider_id=str(provider_id),
        amount_cents=amount_cents,
        transfer_id=transfer_id,
    )
