"""
Stripe Payment Service
======================

Customer-facing side of the payment collaborator. The lifecycle core never
moves money itself: once a job reaches ``awaiting_payment`` the customer is
charged the server-computed billing total through a PaymentIntent, and
Stripe reports the outcome back through the webhook handler.

All monetary amounts are in cents (integers) to avoid floating-point issues.
Keys come from ``settings`` (``STRIPE_SECRET_KEY``, ``STRIPE_WEBHOOK_SECRET``).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

import stripe

from src.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Stripe SDK configuration
# ---------------------------------------------------------------------------

stripe.api_key = settings.stripe_secret_key
stripe.api_version = "2024-06-20"


# ---------------------------------------------------------------------------
# Custom exception
# ---------------------------------------------------------------------------

class PaymentError(Exception):
    """Raised when a Stripe payment operation fails.

    Attributes:
        message: Human-readable error description.
        stripe_error_code: The Stripe error code, if available.
        stripe_error_type: The Stripe error type, if available.
    """

    def __init__(
        self,
        message: str,
        stripe_error_code: str | None = None,
        stripe_error_type: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stripe_error_code = stripe_error_code
        self.stripe_error_type = stripe_error_type

    def __repr__(self) -> str:
        return (
            f"PaymentError(message={self.message!r}, "
            f"code={self.stripe_error_code!r}, "
            f"type={self.stripe_error_type!r})"
        )


@dataclass(frozen=True)
class PaymentIntentResult:
    """Result of creating a Stripe PaymentIntent."""
    id: str
    client_secret: str
    status: str
    amount_cents: int
    tip_cents: int
    currency: str


def _handle_stripe_error(exc: stripe.StripeError) -> PaymentError:
    """Convert a Stripe SDK exception into a PaymentError."""
    error_body = getattr(exc, "error", None)

    code = getattr(error_body, "code", None) if error_body else None
    error_type = getattr(error_body, "type", None) if error_body else None

    logger.error(
        "Stripe API error: %s (code=%s, type=%s)",
        str(exc),
        code,
        error_type,
    )

    return PaymentError(
        message=str(exc),
        stripe_error_code=code,
        stripe_error_type=error_type,
    )


# ---------------------------------------------------------------------------
# Payment Intent operations
# ---------------------------------------------------------------------------

async def create_payment_intent(
    job_id: uuid.UUID,
    amount_cents: int,
    currency: str | None = None,
    tip_cents: int = 0,
) -> PaymentIntentResult:
    """Create a Stripe PaymentIntent for a job.

    The charged amount is the billing total plus the tip; both are carried
    in metadata so the webhook can report them back to the job.

    Raises:
        PaymentError: If the Stripe API call fails.
        ValueError: If amounts are invalid.
    """
    if amount_cents <= 0:
        raise ValueError(f"Payment amount must be positive, got {amount_cents}")
    if tip_cents < 0:
        raise ValueError(f"Tip must not be negative, got {tip_cents}")

    currency = (currency or settings.currency).lower()
    params: dict = {
        "amount": amount_cents + tip_cents,
        "currency": currency,
        "metadata": {
            "job_id": str(job_id),
            "tip_cents": str(tip_cents),
        },
        "automatic_payment_methods": {"enabled": True},
    }

    try:
        intent = stripe.PaymentIntent.create(
            **params,
            idempotency_key=f"job-{job_id}-payment-{amount_cents}-{tip_cents}",
        )
    except stripe.StripeError as exc:
        raise _handle_stripe_error(exc) from exc

    logger.info(
        "PaymentIntent created: id=%s, job_id=%s, amount=%d, tip=%d %s",
        intent.id,
        job_id,
        amount_cents,
        tip_cents,
        currency,
    )

    return PaymentIntentResult(
        id=intent.id,
        client_secret=intent.client_secret,
        status=intent.status,
        amount_cents=intent.amount,
        tip_cents=tip_cents,
        currency=intent.currency,
    )
