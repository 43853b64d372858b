"""
Stripe Webhook Handler
======================

Processes inbound Stripe webhook events with:
- Signature verification using ``settings.stripe_webhook_secret``
- Idempotent event processing (tracks processed event IDs in-memory)
- Dispatch of payment outcomes into the job lifecycle

Supported event types:
  - payment_intent.succeeded       -> jobService.mark_payment_received
  - payment_intent.payment_failed  -> jobService.record_payment_failure

Events not in the handled set are acknowledged but not processed. Events
with malformed metadata are acknowledged and logged; redelivery cannot fix
them.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Awaitable, Callable

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.services import jobService
from src.services.lifecycleErrors import JobLifecycleError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Idempotency store
# ---------------------------------------------------------------------------
# In-memory LRU set of processed event IDs. ``mark_payment_received`` is
# itself idempotent per payment reference, so a replay on another instance
# is still harmless.

_MAX_PROCESSED_EVENTS = 10_000
_processed_events: OrderedDict[str, float] = OrderedDict()
_processed_lock = Lock()


def _mark_event_processed(event_id: str) -> None:
    with _processed_lock:
        _processed_events[event_id] = time.time()
        while len(_processed_events) > _MAX_PROCESSED_EVENTS:
            _processed_events.popitem(last=False)


def _is_event_processed(event_id: str) -> bool:
    with _processed_lock:
        return event_id in _processed_events


def clear_processed_events() -> None:
    """Clear the processed events store. Useful for testing."""
    with _processed_lock:
        _processed_events.clear()


@dataclass(frozen=True)
class WebhookResult:
    """Result of processing a webhook event."""
    event_type: str
    processed: bool
    message: str
    job_id: uuid.UUID | None = None


# ---------------------------------------------------------------------------
# Event handlers
# ---------------------------------------------------------------------------

def _job_id_from(payment_intent) -> uuid.UUID:
    raw = payment_intent.metadata.get("job_id")
    if not raw:
        raise ValueError(f"PaymentIntent {payment_intent.id} carries no job_id")
    return uuid.UUID(raw)


async def _handle_payment_intent_succeeded(
    event: stripe.Event,
    db: AsyncSession,
) -> tuple[uuid.UUID, str]:
    payment_intent = event.data.object
    job_id = _job_id_from(payment_intent)
    tip_cents = int(payment_intent.metadata.get("tip_cents", "0") or 0)
    amount = payment_intent.amount_received or payment_intent.amount

    await jobService.mark_payment_received(
        db,
        job_id,
        amount_cents=amount,
        reference=payment_intent.id,
        tip_cents=tip_cents,
    )
    return job_id, (
        f"Payment intent {payment_intent.id} succeeded for job {job_id}: "
        f"{amount} {payment_intent.currency}"
    )


async def _handle_payment_intent_failed(
    event: stripe.Event,
    db: AsyncSession,
) -> tuple[uuid.UUID, str]:
    payment_intent = event.data.object
    job_id = _job_id_from(payment_intent)

    last_error = payment_intent.last_payment_error
    error_message = "Unknown error"
    if last_error:
        error_message = getattr(last_error, "message", str(last_error))

    await jobService.record_payment_failure(
        db,
        job_id,
        reference=payment_intent.id,
        reason=error_message,
    )
    return job_id, (
        f"Payment intent {payment_intent.id} failed for job {job_id}: "
        f"{error_message}"
    )


_EVENT_HANDLERS: dict[
    str, Callable[[stripe.Event, AsyncSession], Awaitable[tuple[uuid.UUID, str]]]
] = {
    "payment_intent.succeeded": _handle_payment_intent_succeeded,
    "payment_intent.payment_failed": _handle_payment_intent_failed,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def handle_webhook(
    payload: bytes,
    sig_header: str,
    db: AsyncSession,
) -> WebhookResult:
    """Verify and process an inbound Stripe webhook event.

    Raises:
        ValueError: If the webhook signature verification fails.
        JobLifecycleError: The job cannot take the event yet (for example a
            concurrent write won). The event is left unprocessed so the
            non-2xx response makes Stripe deliver it again.
    """
    # 1. Verify signature
    try:
        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=sig_header,
            secret=settings.stripe_webhook_secret,
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", str(exc))
        raise ValueError(f"Invalid webhook signature: {str(exc)}") from exc
    except ValueError as exc:
        logger.warning("Webhook payload parsing failed: %s", str(exc))
        raise ValueError(f"Invalid webhook payload: {str(exc)}") from exc

    event_id: str = event.id
    event_type: str = event.type

    # 2. Idempotency check
    if _is_event_processed(event_id):
        logger.info(
            "Webhook event already processed, skipping: id=%s, type=%s",
            event_id,
            event_type,
        )
        return WebhookResult(
            event_type=event_type,
            processed=False,
            message=f"Event {event_id} already processed (idempotent skip)",
        )

    # 3. Dispatch to handler
    handler = _EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(
            "Webhook event type not handled: id=%s, type=%s",
            event_id,
            event_type,
        )
        _mark_event_processed(event_id)
        return WebhookResult(
            event_type=event_type,
            processed=False,
            message=f"Event type '{event_type}' acknowledged but not handled",
        )

    try:
        job_id, message = await handler(event, db)
    except JobLifecycleError as exc:
        # Not marked processed; the non-2xx answer makes Stripe redeliver.
        logger.warning(
            "Webhook event deferred: id=%s, type=%s, reason=%s",
            event_id,
            event_type,
            exc,
        )
        raise
    except ValueError as exc:
        logger.error(
            "Webhook event rejected: id=%s, type=%s, reason=%s",
            event_id,
            event_type,
            exc,
        )
        _mark_event_processed(event_id)
        return WebhookResult(
            event_type=event_type,
            processed=False,
            message=f"Event {event_id} rejected: {exc}",
        )

    # 4. Mark processed
    _mark_event_processed(event_id)
    logger.info("Webhook event processed: id=%s, type=%s", event_id, event_type)

    return WebhookResult(
        event_type=event_type,
        processed=True,
        message=message,
        job_id=job_id,
    )
