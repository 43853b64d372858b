"""
Notification Service
====================

Fire-and-forget dispatcher between the lifecycle services and whatever
delivers notifications (push, e-mail, webhooks -- all out of this service).

``notify`` builds a standardised event payload, logs it, and schedules
delivery to every registered sink on the running event loop. It never
raises and never awaits delivery, so a failing sink can neither block nor
roll back the state transition that produced the event.

Inside a request the session dependency opens an outbox: events are held
until the transaction commits and dropped if it rolls back, so sinks never
hear about a transition that did not persist.

Retry logic:
  A sink that raises is retried up to ``settings.notification_max_retries``
  times with exponential backoff starting at
  ``settings.notification_retry_base_delay_seconds``. The final failure is
  logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextvars import ContextVar
from typing import Any, Awaitable, Callable

from src.core import clock
from src.core.config import settings

logger = logging.getLogger(__name__)

NotificationSink = Callable[[dict[str, Any]], Awaitable[None]]

_sinks: list[NotificationSink] = []
_pending: set[asyncio.Task] = set()
_outbox: ContextVar[list[dict[str, Any]] | None] = ContextVar(
    "notification_outbox", default=None
)


# ---------------------------------------------------------------------------
# Sink registry
# ---------------------------------------------------------------------------

def register_sink(sink: NotificationSink) -> None:
    _sinks.append(sink)


def clear_sinks() -> None:
    _sinks.clear()


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def build_event(
    event_type: str,
    job_id: uuid.UUID,
    *,
    actor_id: uuid.UUID | None = None,
    data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Construct a standardised event payload."""
    return {
        "event_type": event_type,
        "job_id": str(job_id),
        "actor_id": str(actor_id) if actor_id else None,
        "timestamp": clock.utcnow().isoformat(),
        "data": data or {},
    }


async def _deliver_with_retry(sink: NotificationSink, event: dict[str, Any]) -> bool:
    max_retries = settings.notification_max_retries
    for attempt in range(1, max_retries + 1):
        try:
            await sink(event)
            return True
        except Exception as exc:
            if attempt < max_retries:
                delay = settings.notification_retry_base_delay_seconds * (
                    2 ** (attempt - 1)
                )
                logger.warning(
                    "Notification sink failed for %s (attempt %d/%d), "
                    "retrying in %.1fs: %s",
                    event["event_type"],
                    attempt,
                    max_retries,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                continue
            logger.error(
                "Notification %s for job %s dropped after %d attempts: %s",
                event["event_type"],
                event["job_id"],
                attempt,
                exc,
            )
    return False


async def _deliver(event: dict[str, Any], sinks: list[NotificationSink]) -> None:
    for sink in sinks:
        await _deliver_with_retry(sink, event)


def _schedule(event: dict[str, Any]) -> None:
    if not _sinks:
        return

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning(
            "No running event loop; notification %s for job %s not delivered",
            event["event_type"],
            event["job_id"],
        )
        return

    task = loop.create_task(_deliver(event, list(_sinks)))
    _pending.add(task)
    task.add_done_callback(_pending.discard)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def notify(
    event_type: str,
    job_id: uuid.UUID,
    *,
    actor_id: uuid.UUID | None = None,
    **data: Any,
) -> dict[str, Any]:
    """Emit an event and schedule its delivery. Returns the payload."""
    event = build_event(event_type, job_id, actor_id=actor_id, data=data)
    logger.info("Event emitted: %s for job %s", event_type, job_id)

    outbox = _outbox.get()
    if outbox is not None:
        outbox.append(event)
        return event

    _schedule(event)
    return event


def open_outbox() -> list[dict[str, Any]]:
    """Hold events emitted from here on until ``publish_outbox``."""
    outbox: list[dict[str, Any]] = []
    _outbox.set(outbox)
    return outbox


def publish_outbox(outbox: list[dict[str, Any]]) -> None:
    """The transaction committed: schedule every held event."""
    _outbox.set(None)
    events = list(outbox)
    outbox.clear()
    for event in events:
        _schedule(event)


def discard_outbox(outbox: list[dict[str, Any]]) -> None:
    """The transaction rolled back: drop every held event."""
    _outbox.set(None)
    if outbox:
        logger.info(
            "Discarding %d notification(s) from a rolled back transaction",
            len(outbox),
        )
    outbox.clear()


async def drain() -> None:
    """Wait for every scheduled delivery to finish (shutdown and tests)."""
    if _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
