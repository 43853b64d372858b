"""
Unit tests for the Job Service.

Booking, acceptance, the cancellation rules, the payment collaborator
entry points, disputes and listing, all against an in-memory database.
"""

import uuid
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from src.models.job import JobStatus
from src.services import handshakeService, jobService, notificationService
from src.services.jobStore import conditional_update, get_job_or_raise
from src.services.lifecycleErrors import (
    CancellationForbidden,
    ConcurrentModification,
    IllegalStateTransition,
    JobNotFound,
    NotJobParticipant,
)
from tests.conftest import (
    ADMIN_ID,
    CUSTOMER_ID,
    OUTSIDER_ID,
    PROVIDER_ID,
    make_awaiting_payment_job,
    make_confirmed_job,
    make_in_progress_job,
    make_pending_job,
    make_quoted_job,
)

pytestmark = pytest.mark.asyncio


# ---------------------------------------------------------------------------
# Booking and acceptance
# ---------------------------------------------------------------------------


class TestCreateJob:

    async def test_new_job_is_pending(self, db_session):
        job = await make_pending_job(db_session)
        assert job.status == JobStatus.PENDING
        assert job.reference_number.startswith("JOB-")
        assert len(job.reference_number) == 10
        assert job.quote is None
        assert job.billing is None

    async def test_customer_cannot_book_self(self, db_session):
        with pytest.raises(ValueError):
            await jobService.create_job(
                db_session, customer_id=CUSTOMER_ID, provider_id=CUSTOMER_ID
            )

    async def test_rate_must_be_positive(self, db_session):
        with pytest.raises(ValueError):
            await make_pending_job(db_session, hourly_rate_cents=0)

    async def test_created_event(self, db_session, captured_events):
        job = await make_pending_job(db_session)
        await notificationService.drain()
        assert [e["event_type"] for e in captured_events] == ["job.created"]
        assert captured_events[0]["job_id"] == str(job.id)


class TestAcceptJob:

    async def test_provider_accepts(self, db_session, frozen_clock):
        job = await make_pending_job(db_session)
        job = await jobService.accept_job(db_session, job.id, PROVIDER_ID)
        assert job.status == JobStatus.CONFIRMED
        assert job.confirmed_at is not None

    async def test_customer_cannot_accept(self, db_session):
        job = await make_pending_job(db_session)
        with pytest.raises(IllegalStateTransition) as exc_info:
            await jobService.accept_job(db_session, job.id, CUSTOMER_ID)
        assert exc_info.value.current_status == JobStatus.PENDING

    async def test_accept_twice_reports_current_status(self, db_session):
        job = await make_confirmed_job(db_session)
        with pytest.raises(IllegalStateTransition) as exc_info:
            await jobService.accept_job(db_session, job.id, PROVIDER_ID)
        assert exc_info.value.current_status == JobStatus.CONFIRMED

    async def test_unknown_job(self, db_session):
        with pytest.raises(JobNotFound):
            await jobService.accept_job(db_session, uuid.uuid4(), PROVIDER_ID)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancelJob:

    async def test_customer_cancels_pending(self, db_session, frozen_clock):
        job = await make_pending_job(db_session)
        job = await jobService.cancel_job(
            db_session, job.id, CUSTOMER_ID, reason="changed plans"
        )
        assert job.status == JobStatus.CANCELLED
        assert job.cancelled_by == CUSTOMER_ID
        assert job.cancellation_reason == "changed plans"

    async def test_customer_cancels_confirmed_before_acceptance(self, db_session):
        job = await make_quoted_job(db_session, accept=False)
        job = await jobService.cancel_job(db_session, job.id, CUSTOMER_ID)
        assert job.status == JobStatus.CANCELLED

    async def test_customer_cannot_cancel_after_acceptance(self, db_session):
        job = await make_quoted_job(db_session)
        with pytest.raises(CancellationForbidden) as exc_info:
            await jobService.cancel_job(db_session, job.id, CUSTOMER_ID)
        assert exc_info.value.current_status == JobStatus.CONFIRMED
        reloaded = await get_job_or_raise(db_session, job.id)
        assert reloaded.status == JobStatus.CONFIRMED

    async def test_customer_cannot_cancel_in_progress(self, db_session, frozen_clock):
        job = await make_in_progress_job(db_session)
        with pytest.raises(CancellationForbidden):
            await jobService.cancel_job(db_session, job.id, CUSTOMER_ID)

    async def test_provider_cancels_in_progress_and_drops_end_code(
        self, db_session, frozen_clock
    ):
        job = await make_in_progress_job(db_session)
        await handshakeService.issue_end_code(db_session, job.id, PROVIDER_ID)

        job = await jobService.cancel_job(db_session, job.id, PROVIDER_ID, reason="sick")

        assert job.status == JobStatus.CANCELLED
        assert job.end_handshake is None
        assert job.start_handshake.consumed is True

    async def test_admin_cancels_after_acceptance(self, db_session):
        job = await make_quoted_job(db_session)
        job = await jobService.cancel_job(db_session, job.id, ADMIN_ID, is_admin=True)
        assert job.status == JobStatus.CANCELLED
        assert job.cancelled_by == ADMIN_ID

    async def test_outsider_cannot_cancel(self, db_session):
        job = await make_pending_job(db_session)
        with pytest.raises(NotJobParticipant):
            await jobService.cancel_job(db_session, job.id, OUTSIDER_ID)

    async def test_nobody_cancels_after_work_ends(self, db_session, frozen_clock):
        job = await make_awaiting_payment_job(db_session)
        for actor_id, is_admin in (
            (CUSTOMER_ID, False), (PROVIDER_ID, False), (ADMIN_ID, True)
        ):
            with pytest.raises(IllegalStateTransition) as exc_info:
                await jobService.cancel_job(db_session, job.id, actor_id, is_admin=is_admin)
            assert exc_info.value.current_status == JobStatus.AWAITING_PAYMENT

    async def test_cancel_is_terminal(self, db_session):
        job = await make_pending_job(db_session)
        await jobService.cancel_job(db_session, job.id, PROVIDER_ID)
        with pytest.raises(IllegalStateTransition) as exc_info:
            await jobService.cancel_job(db_session, job.id, CUSTOMER_ID)
        assert exc_info.value.current_status == JobStatus.CANCELLED

    async def test_acceptance_racing_customer_cancel(self, db_session):
        """The customer read the job before the quote was accepted."""
        job = await make_quoted_job(db_session)
        stale = SimpleNamespace(
            id=job.id,
            status=JobStatus.CONFIRMED,
            customer_id=CUSTOMER_ID,
            provider_id=PROVIDER_ID,
            quote_accepted=False,
            start_handshake=None,
            end_handshake=None,
        )
        reads = iter([stale])

        async def _read(db, job_id):
            snapshot = next(reads, None)
            if snapshot is not None:
                return snapshot
            return await get_job_or_raise(db, job_id)

        with patch.object(jobService, "get_job_or_raise", side_effect=_read):
            with pytest.raises(CancellationForbidden):
                await jobService.cancel_job(db_session, job.id, CUSTOMER_ID)

        reloaded = await get_job_or_raise(db_session, job.id)
        assert reloaded.status == JobStatus.CONFIRMED


class TestConditionalWrite:

    async def test_lost_write_reports_current_status(self, db_session):
        job = await make_confirmed_job(db_session)
        with pytest.raises(ConcurrentModification) as exc_info:
            await conditional_update(
                db_session,
                job.id,
                expected_status=JobStatus.PENDING,
                values={"status": JobStatus.CANCELLED},
            )
        assert exc_info.value.current_status == JobStatus.CONFIRMED
        assert exc_info.value.to_dict()["current_status"] == "confirmed"

    async def test_missing_job(self, db_session):
        with pytest.raises(JobNotFound):
            await conditional_update(
                db_session,
                uuid.uuid4(),
                expected_status=JobStatus.PENDING,
                values={"status": JobStatus.CANCELLED},
            )


# ---------------------------------------------------------------------------
# Payment collaborator
# ---------------------------------------------------------------------------


class TestPayment:

    async def test_full_payment_completes(self, db_session, frozen_clock):
        job = await make_awaiting_payment_job(db_session)
        job = await jobService.mark_payment_received(
            db_session, job.id, amount_cents=5000, reference="pi_full"
        )
        assert job.status == JobStatus.COMPLETED
        assert job.payment_reference == "pi_full"
        assert job.dispute_flag is False
        assert job.payout_held is False

    async def test_replayed_reference_is_noop(self, db_session, frozen_clock):
        job = await make_awaiting_payment_job(db_session)
        await jobService.mark_payment_received(
            db_session, job.id, amount_cents=5000, reference="pi_once"
        )
        job = await jobService.mark_payment_received(
            db_session, job.id, amount_cents=5000, reference="pi_once"
        )
        assert job.status == JobStatus.COMPLETED

    async def test_second_payment_recorded_as_duplicate(
        self, db_session, frozen_clock, captured_events
    ):
        job = await make_awaiting_payment_job(db_session)
        await jobService.mark_payment_received(
            db_session, job.id, amount_cents=5000, reference="pi_a"
        )
        job = await jobService.mark_payment_received(
            db_session, job.id, amount_cents=5000, reference="pi_b"
        )
        await notificationService.drain()

        assert job.status == JobStatus.COMPLETED
        assert job.payment_reference == "pi_a"
        assert job.dispute_flag is True
        assert job.dispute_reason == f"{jobService.DUPLICATE_PAYMENT_REASON} pi_b"
        assert job.billing.payout_held is True
        duplicate = [e for e in captured_events if e["event_type"] == "payment.duplicate"]
        assert len(duplicate) == 1
        assert duplicate[0]["data"] == {"amount_cents": 5000, "reference": "pi_b"}

    async def test_replayed_duplicate_is_noop(self, db_session, frozen_clock, captured_events):
        job = await make_awaiting_payment_job(db_session)
        await jobService.mark_payment_received(
            db_session, job.id, amount_cents=5000, reference="pi_a"
        )
        for _ in range(2):
            await jobService.mark_payment_received(
                db_session, job.id, amount_cents=5000, reference="pi_b"
            )
        await notificationService.drain()

        duplicate = [e for e in captured_events if e["event_type"] == "payment.duplicate"]
        assert len(duplicate) == 1

    async def test_payment_for_cancelled_job_recorded(self, db_session, frozen_clock):
        job = await make_confirmed_job(db_session)
        await jobService.cancel_job(db_session, job.id, CUSTOMER_ID)
        job = await jobService.mark_payment_received(
            db_session, job.id, amount_cents=5000, reference="pi_late"
        )
        assert job.status == JobStatus.CANCELLED
        assert job.dispute_flag is True
        assert job.payout_held is True

    async def test_partial_payment_flags_dispute(self, db_session, frozen_clock):
        job = await make_awaiting_payment_job(db_session)
        job = await jobService.mark_payment_received(
            db_session, job.id, amount_cents=4000, reference="pi_short"
        )
        assert job.status == JobStatus.COMPLETED
        assert job.dispute_flag is True
        assert job.dispute_reason == jobService.PARTIAL_PAYMENT_REASON
        assert job.billing.payout_held is True

    async def test_tip_within_limit(self, db_session, frozen_clock):
        job = await make_awaiting_payment_job(db_session)
        job = await jobService.mark_payment_received(
            db_session, job.id, amount_cents=7500, tip_cents=2500, reference="pi_tip"
        )
        assert job.payment_tip_cents == 2500
        assert job.dispute_flag is False

    async def test_tip_over_limit_rejected(self, db_session, frozen_clock):
        job = await make_awaiting_payment_job(db_session)
        with pytest.raises(ValueError):
            await jobService.mark_payment_received(
                db_session, job.id, amount_cents=7501, tip_cents=2501, reference="pi_big"
            )
        reloaded = await get_job_or_raise(db_session, job.id)
        assert reloaded.status == JobStatus.AWAITING_PAYMENT

    async def test_payment_before_work_ends_rejected(self, db_session, frozen_clock):
        job = await make_in_progress_job(db_session)
        with pytest.raises(IllegalStateTransition):
            await jobService.mark_payment_received(
                db_session, job.id, amount_cents=5000, reference="pi_early"
            )

    async def test_failure_keeps_status(self, db_session, frozen_clock, captured_events):
        job = await make_awaiting_payment_job(db_session)
        job = await jobService.record_payment_failure(
            db_session, job.id, reference="pi_fail", reason="card_declined"
        )
        await notificationService.drain()
        assert job.status == JobStatus.AWAITING_PAYMENT
        assert captured_events[-1]["event_type"] == "payment.failed"
        assert captured_events[-1]["data"]["reason"] == "card_declined"


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


class TestDisputes:

    async def test_flag_and_resolve(self, db_session, frozen_clock):
        job = await make_awaiting_payment_job(db_session)
        job = await jobService.flag_dispute(
            db_session, job.id, PROVIDER_ID, reason="customer absent"
        )
        assert job.dispute_flag is True
        assert job.payout_held is True

        job = await jobService.resolve_dispute(db_session, job.id, ADMIN_ID, is_admin=True)
        assert job.dispute_flag is False
        assert job.payout_held is False

    async def test_flag_twice_is_noop(self, db_session, frozen_clock):
        job = await make_in_progress_job(db_session)
        await jobService.flag_dispute(db_session, job.id, CUSTOMER_ID, reason="first")
        job = await jobService.flag_dispute(db_session, job.id, CUSTOMER_ID, reason="second")
        assert job.dispute_reason == "first"

    async def test_not_before_work_starts(self, db_session):
        job = await make_quoted_job(db_session)
        with pytest.raises(IllegalStateTransition):
            await jobService.flag_dispute(db_session, job.id, CUSTOMER_ID, reason="early")

    async def test_only_admin_resolves(self, db_session, frozen_clock):
        job = await make_in_progress_job(db_session)
        await jobService.flag_dispute(db_session, job.id, CUSTOMER_ID, reason="x")
        with pytest.raises(IllegalStateTransition):
            await jobService.resolve_dispute(db_session, job.id, CUSTOMER_ID)

    async def test_resolve_requires_dispute(self, db_session, frozen_clock):
        job = await make_in_progress_job(db_session)
        with pytest.raises(IllegalStateTransition):
            await jobService.resolve_dispute(db_session, job.id, ADMIN_ID, is_admin=True)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestReads:

    async def test_get_job_resolves_role(self, db_session):
        job = await make_pending_job(db_session)
        _, actor = await jobService.get_job(db_session, job.id, PROVIDER_ID)
        assert actor.value == "provider"
        _, actor = await jobService.get_job(db_session, job.id, ADMIN_ID, is_admin=True)
        assert actor.value == "admin"
        with pytest.raises(NotJobParticipant):
            await jobService.get_job(db_session, job.id, OUTSIDER_ID)

    async def test_list_jobs_for_party(self, db_session):
        for _ in range(3):
            await make_pending_job(db_session)
        other = await jobService.create_job(
            db_session, customer_id=OUTSIDER_ID, provider_id=PROVIDER_ID
        )
        await jobService.accept_job(db_session, other.id, PROVIDER_ID)

        as_customer = await jobService.list_jobs_for_party(db_session, CUSTOMER_ID)
        assert as_customer.total_items == 3

        as_provider = await jobService.list_jobs_for_party(
            db_session, PROVIDER_ID, page=1, page_size=2
        )
        assert as_provider.total_items == 4
        assert as_provider.total_pages == 2
        assert len(as_provider.items) == 2

        confirmed = await jobService.list_jobs_for_party(
            db_session, PROVIDER_ID, status_filter="confirmed"
        )
        assert [j.id for j in confirmed.items] == [other.id]
