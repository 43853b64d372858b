"""
Pydantic v2 schemas for the Payments API
========================================

Request and response schemas for:
- Payment intent creation for a job awaiting payment
- Webhook processing
- Provider payout release

All monetary amounts are represented as integers (cents). The amount due is
never taken from the client; it is the job's finalized billing total.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CreatePaymentIntentRequest(BaseModel):
    """Request body for paying a job. Only the tip is client-chosen."""

    tip_cents: int = Field(default=0, ge=0, description="Optional tip in cents")


class PaymentIntentOut(BaseModel):
    """Response after creating a payment intent."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Stripe PaymentIntent ID")
    client_secret: str = Field(
        description="Client secret for client-side payment confirmation",
    )
    status: str = Field(description="Current PaymentIntent status")
    amount_cents: int = Field(description="Charged amount in cents, tip included")
    tip_cents: int = Field(description="Tip portion in cents")
    currency: str = Field(description="Three-letter ISO currency code")


class WebhookResponse(BaseModel):
    """Acknowledgement returned to Stripe."""

    received: bool = True
    processed: bool
    event_type: str
    message: str
    job_id: Optional[uuid.UUID] = None


class ReleasePayoutRequest(BaseModel):
    provider_account_id: str = Field(
        min_length=1,
        description="Provider's Stripe Connect account ID",
    )


class PayoutOut(BaseModel):
    job_id: uuid.UUID
    amount_cents: int
    transfer_id: Optional[str] = None
    released_at: Optional[datetime] = None
