"""
HTTP mapping for lifecycle errors.

Every rejection is returned as::

    {"error": <code>, "message": ..., "current_status": <status>, "job_id": ...}

so clients can resynchronise from the authoritative status instead of a bare
"failed".
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.services.lifecycleErrors import (
    BillingAlreadyFinalized,
    CancellationForbidden,
    CodeAlreadyConsumed,
    CodeAlreadyExists,
    CodeExpired,
    ConcurrentModification,
    IllegalStateTransition,
    InvalidCode,
    JobLifecycleError,
    JobNotFound,
    NoCodeIssued,
    NotJobParticipant,
    PayoutHeld,
    QuoteLocked,
    QuoteNotFound,
)

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: dict[type[JobLifecycleError], int] = {
    IllegalStateTransition: status.HTTP_409_CONFLICT,
    ConcurrentModification: status.HTTP_409_CONFLICT,
    CodeAlreadyExists: status.HTTP_409_CONFLICT,
    CodeAlreadyConsumed: status.HTTP_409_CONFLICT,
    QuoteLocked: status.HTTP_409_CONFLICT,
    CancellationForbidden: status.HTTP_409_CONFLICT,
    PayoutHeld: status.HTTP_409_CONFLICT,
    BillingAlreadyFinalized: status.HTTP_409_CONFLICT,
    InvalidCode: status.HTTP_422_UNPROCESSABLE_ENTITY,
    CodeExpired: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NoCodeIssued: status.HTTP_404_NOT_FOUND,
    QuoteNotFound: status.HTTP_404_NOT_FOUND,
    JobNotFound: status.HTTP_404_NOT_FOUND,
    NotJobParticipant: status.HTTP_403_FORBIDDEN,
}


async def lifecycle_error_handler(request: Request, exc: JobLifecycleError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(type(exc), status.HTTP_409_CONFLICT)
    logger.info(
        "%s %s rejected: %s (job=%s, status=%s)",
        request.method,
        request.url.path,
        exc.code,
        exc.job_id,
        exc.current_status.value if exc.current_status else None,
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(JobLifecycleError, lifecycle_error_handler)
