"""
Stripe Payout Service
=====================

Provider-facing side of the payment collaborator: moves the provider's
share of a completed job from the platform balance to their Stripe Connect
account. The billing reconciler decides *whether* and *how much*; this
module only talks to Stripe.

All monetary amounts are in cents (integers).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

import stripe

from .paymentService import _handle_stripe_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferResult:
    """Result of a transfer to a connected account."""
    id: str
    status: str
    amount_cents: int


async def create_transfer(
    job_id: uuid.UUID,
    provider_account_id: str,
    amount_cents: int,
    currency: str = "cad",
) -> TransferResult:
    """Transfer funds from the platform balance to a provider's connected account.

    The transfer is keyed on the job so a replayed release cannot pay twice.

    Raises:
        PaymentError: If the transfer fails.
        ValueError: If amount_cents is non-positive.
    """
    if amount_cents <= 0:
        raise ValueError(f"Transfer amount must be positive, got {amount_cents}")

    try:
        transfer = stripe.Transfer.create(
            amount=amount_cents,
            currency=currency.lower(),
            destination=provider_account_id,
            metadata={"job_id": str(job_id)},
            idempotency_key=f"job-{job_id}-payout",
        )
    except stripe.StripeError as exc:
        raise _handle_stripe_error(exc) from exc

    logger.info(
        "Transfer created: id=%s, job_id=%s, account=%s, amount=%d %s",
        transfer.id,
        job_id,
        provider_account_id,
        amount_cents,
        currency,
    )

    return TransferResult(
        id=transfer.id,
        status="pending",
        amount_cents=transfer.amount,
    )
