"""
Payments API Routes
===================

FastAPI route handlers for the payment collaborator:

  POST /payments/jobs/{job_id}/intent          -- Customer pays the billed total
  POST /payments/webhook                       -- Stripe webhook endpoint
  POST /payments/jobs/{job_id}/release-payout  -- Release provider payout (admin)
"""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, HTTPException, Request, status

from src.api.deps import AdminPrincipal, CurrentPrincipal, DBSession
from src.api.schemas.payment import (
    CreatePaymentIntentRequest,
    PaymentIntentOut,
    PayoutOut,
    ReleasePayoutRequest,
    WebhookResponse,
)
from src.core.clock import ensure_utc
from src.core.config import settings
from src.integrations.stripe.paymentService import PaymentError, create_payment_intent
from src.integrations.stripe.webhookHandler import handle_webhook
from src.models.job import JobStatus
from src.services import billingReconciler, jobService
from src.services.jobStateManager import ActorType
from src.services.lifecycleErrors import IllegalStateTransition

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


def _payment_error_to_http(exc: PaymentError) -> HTTPException:
    """Map a PaymentError to an appropriate HTTP error response."""
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={
            "message": exc.message,
            "stripe_error_code": exc.stripe_error_code,
            "stripe_error_type": exc.stripe_error_type,
        },
    )


# ---------------------------------------------------------------------------
# POST /payments/jobs/{job_id}/intent
# ---------------------------------------------------------------------------

@router.post(
    "/jobs/{job_id}/intent",
    response_model=PaymentIntentOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment intent for the billed total",
    description=(
        "Charges the job's finalized billing total plus an optional tip. "
        "The amount is never taken from the client."
    ),
)
async def create_job_payment_intent(
    db: DBSession,
    principal: CurrentPrincipal,
    job_id: uuid.UUID,
    body: CreatePaymentIntentRequest,
) -> PaymentIntentOut:
    job, actor = await jobService.get_job(
        db, job_id, principal.user_id, is_admin=principal.is_admin
    )
    if actor != ActorType.CUSTOMER:
        raise IllegalStateTransition(job.id, job.status, "Only the customer pays for a job.")
    billing = job.billing
    if job.status != JobStatus.AWAITING_PAYMENT or billing is None:
        raise IllegalStateTransition(job.id, job.status, "Job is not awaiting payment.")

    max_tip = billing.final_total_cents * settings.max_tip_ratio
    if body.tip_cents > max_tip:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Tip exceeds {settings.max_tip_ratio:.0%} of the job total.",
        )

    try:
        result = await create_payment_intent(
            job_id=job.id,
            amount_cents=billing.final_total_cents,
            currency=job.currency,
            tip_cents=body.tip_cents,
        )
    except PaymentError as exc:
        raise _payment_error_to_http(exc) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc

    return PaymentIntentOut.model_validate(result)


# ---------------------------------------------------------------------------
# POST /payments/webhook
# ---------------------------------------------------------------------------

@router.post(
    "/webhook",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description=(
        "Receives Stripe events, verifies the signature and drives "
        "awaiting_payment -> completed. Must receive the raw request body."
    ),
)
async def stripe_webhook_endpoint(
    request: Request,
    db: DBSession,
) -> WebhookResponse:
    payload = await request.body()
    sig_header = request.headers.get("Stripe-Signature", "")

    if not sig_header:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe-Signature header",
        )

    try:
        result = await handle_webhook(payload=payload, sig_header=sig_header, db=db)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    return WebhookResponse(
        processed=result.processed,
        event_type=result.event_type,
        message=result.message,
        job_id=result.job_id,
    )


# ---------------------------------------------------------------------------
# POST /payments/jobs/{job_id}/release-payout
# ---------------------------------------------------------------------------

@router.post(
    "/jobs/{job_id}/release-payout",
    response_model=PayoutOut,
    summary="Release the provider payout (admin)",
    description="Refused with 409 payout_held while the job is disputed.",
)
async def release_payout(
    db: DBSession,
    principal: AdminPrincipal,
    job_id: uuid.UUID,
    body: ReleasePayoutRequest,
) -> PayoutOut:
    try:
        job = await billingReconciler.release_payout(
            db, job_id, provider_account_id=body.provider_account_id
        )
    except PaymentError as exc:
        raise _payment_error_to_http(exc) from exc

    return PayoutOut(
        job_id=job.id,
        amount_cents=(job.billing_provider_payout_cents or 0) + (job.payment_tip_cents or 0),
        transfer_id=job.payout_transfer_id,
        released_at=ensure_utc(job.payout_released_at),
    )
