"""
Job Lifecycle Errors
====================

Typed rejections raised by the lifecycle services. Every error carries the
job id and the job's *current* authoritative status so callers can
resynchronise instead of guessing what went wrong.

None of these are retried by the services; the caller re-reads and decides.
"""

from __future__ import annotations

import uuid

from src.models.job import JobStatus


class JobLifecycleError(Exception):
    """Base class for all lifecycle rejections."""

    code: str = "job_lifecycle_error"

    def __init__(
        self,
        job_id: uuid.UUID | None,
        current_status: JobStatus | None,
        message: str | None = None,
    ) -> None:
        self.job_id = job_id
        self.current_status = current_status
        self.message = message or self.default_message()
        super().__init__(self.message)

    def default_message(self) -> str:
        return "Job lifecycle operation rejected."

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "current_status": (
                self.current_status.value if self.current_status else None
            ),
            "job_id": str(self.job_id) if self.job_id else None,
        }


class JobNotFound(JobLifecycleError):
    code = "job_not_found"

    def default_message(self) -> str:
        return f"Job {self.job_id} not found."


class NotJobParticipant(JobLifecycleError):
    code = "not_job_participant"

    def default_message(self) -> str:
        return "Caller is neither the customer nor the provider on this job."


class IllegalStateTransition(JobLifecycleError):
    code = "illegal_state_transition"

    def default_message(self) -> str:
        return f"Operation not allowed while job is '{self.current_status.value}'."


class ConcurrentModification(JobLifecycleError):
    code = "concurrent_modification"

    def default_message(self) -> str:
        status = self.current_status.value if self.current_status else "unknown"
        return f"Job was modified concurrently; current status is '{status}'."


class CancellationForbidden(JobLifecycleError):
    code = "cancellation_forbidden"

    def default_message(self) -> str:
        return "Customer cannot cancel a job after the quote has been accepted."


# -- handshake --

class NoCodeIssued(JobLifecycleError):
    code = "no_code_issued"

    def default_message(self) -> str:
        return "No handshake code has been issued for this step."


class CodeExpired(JobLifecycleError):
    code = "code_expired"

    def default_message(self) -> str:
        return "Handshake code has expired; request a new one."


class CodeAlreadyConsumed(JobLifecycleError):
    code = "code_already_consumed"

    def default_message(self) -> str:
        return "Handshake code has already been used."


class CodeAlreadyExists(JobLifecycleError):
    code = "code_already_exists"

    def default_message(self) -> str:
        return "An active handshake code already exists for this step."


class InvalidCode(JobLifecycleError):
    code = "invalid_code"

    def default_message(self) -> str:
        return "Handshake code does not match."


# -- quotes --

class QuoteLocked(JobLifecycleError):
    code = "quote_locked"

    def default_message(self) -> str:
        return "Quote has been accepted and can no longer change."


class QuoteNotFound(JobLifecycleError):
    code = "quote_not_found"

    def default_message(self) -> str:
        return "No quote has been submitted for this job."


# -- billing --

class BillingAlreadyFinalized(JobLifecycleError):
    """Raised by the guarded billing write; ``finalize`` turns it into a no-op."""

    code = "billing_already_finalized"

    def default_message(self) -> str:
        return "Billing for this job has already been finalized."


class PayoutHeld(JobLifecycleError):
    code = "payout_held"

    def default_message(self) -> str:
        return "Provider payout is held pending dispute resolution."
