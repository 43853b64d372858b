"""
Unit tests for the Billing Reconciler.

Pure billing math (rounding, duration units, minimum charge, platform fee)
plus the write-once ledger and the payout gate against a real session.
"""

from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from src.integrations.stripe import payoutService
from src.integrations.stripe.payoutService import TransferResult
from src.models.job import BillingMode, JobStatus
from src.services import billingReconciler, handshakeService, jobService, notificationService
from src.services.billingReconciler import (
    actual_duration_minutes,
    billed_minutes_for,
    compute_billing,
    platform_fee_for,
    round_half_up,
)
from src.services.jobStore import get_job_or_raise
from src.services.lifecycleErrors import IllegalStateTransition, PayoutHeld
from tests.conftest import (
    ADMIN_ID,
    CUSTOMER_ID,
    PROVIDER_ID,
    T0,
    make_awaiting_payment_job,
    make_in_progress_job,
)


# ---------------------------------------------------------------------------
# Pure math
# ---------------------------------------------------------------------------


class TestRounding:

    def test_half_rounds_up(self):
        assert round_half_up(Decimal("1.5")) == 2
        assert round_half_up(Decimal("2.5")) == 3

    def test_below_half_rounds_down(self):
        assert round_half_up(Decimal("749.49")) == 749

    def test_platform_fee_rounds_half_up(self):
        assert platform_fee_for(10, Decimal("0.15")) == 2
        assert platform_fee_for(4999, Decimal("0.15")) == 750


class TestDuration:

    def test_partial_minutes_round_up(self):
        assert actual_duration_minutes(T0, T0 + timedelta(minutes=94, seconds=1)) == 95

    def test_exact_minutes(self):
        assert actual_duration_minutes(T0, T0 + timedelta(minutes=95)) == 95

    def test_completion_before_start_rejected(self):
        with pytest.raises(ValueError):
            actual_duration_minutes(T0, T0 - timedelta(seconds=1))

    def test_naive_datetimes_treated_as_utc(self):
        naive = T0.replace(tzinfo=None)
        assert actual_duration_minutes(naive, T0 + timedelta(minutes=5)) == 5

    @pytest.mark.parametrize(
        "actual,unit,minimum,expected",
        [
            (95, 15, 30, 105),
            (95, 20, 30, 100),
            (90, 15, 30, 90),
            (10, 15, 30, 30),
            (0, 15, 30, 30),
            (31, 15, 0, 45),
        ],
    )
    def test_billed_minutes(self, actual, unit, minimum, expected):
        assert billed_minutes_for(actual, unit_minutes=unit, minimum_minutes=minimum) == expected

    def test_default_unit_applies_only_when_omitted(self):
        assert billed_minutes_for(95, minimum_minutes=0) == 105

    @pytest.mark.parametrize("unit", [0, -15])
    def test_non_positive_unit_rejected(self, unit):
        with pytest.raises(ValueError):
            billed_minutes_for(95, unit_minutes=unit)


class TestComputeBilling:

    def test_fixed_quote(self):
        result = compute_billing(
            quote_labor_cents=4000,
            quote_materials_cents=1000,
            quote_total_cents=5000,
            fee_rate=Decimal("0.15"),
        )
        assert result.mode == BillingMode.FIXED_QUOTE
        assert result.total_cents == 5000
        assert result.platform_fee_cents == 750
        assert result.provider_payout_cents == 4250
        assert result.billed_minutes is None

    def test_fixed_quote_requires_quote(self):
        with pytest.raises(ValueError):
            compute_billing(
                quote_labor_cents=None,
                quote_materials_cents=None,
                quote_total_cents=None,
            )

    def test_duration_with_twenty_minute_unit(self):
        result = compute_billing(
            quote_labor_cents=0,
            quote_materials_cents=0,
            quote_total_cents=0,
            hourly_rate_cents=100000,
            started_at=T0,
            completed_at=T0 + timedelta(minutes=95),
            fee_rate=Decimal("0.15"),
            unit_minutes=20,
            minimum_minutes=30,
        )
        assert result.mode == BillingMode.DURATION_BASED
        assert result.actual_duration_minutes == 95
        assert result.billed_minutes == 100
        assert result.labor_cents == 166667
        assert result.total_cents == 166667
        assert result.platform_fee_cents == 25000
        assert result.provider_payout_cents == 141667

    def test_duration_with_default_unit(self):
        result = compute_billing(
            quote_labor_cents=0,
            quote_materials_cents=0,
            quote_total_cents=0,
            hourly_rate_cents=100000,
            started_at=T0,
            completed_at=T0 + timedelta(minutes=95),
        )
        assert result.billed_minutes == 105
        assert result.total_cents == 175000
        assert result.platform_fee_cents + result.provider_payout_cents == 175000

    def test_duration_adds_quoted_materials(self):
        result = compute_billing(
            quote_labor_cents=2000,
            quote_materials_cents=1500,
            quote_total_cents=3500,
            hourly_rate_cents=6000,
            started_at=T0,
            completed_at=T0 + timedelta(minutes=20),
        )
        assert result.billed_minutes == 30
        assert result.labor_cents == 3000
        assert result.materials_cents == 1500
        assert result.total_cents == 4500

    def test_duration_requires_timestamps(self):
        with pytest.raises(ValueError):
            compute_billing(
                quote_labor_cents=0,
                quote_materials_cents=0,
                quote_total_cents=0,
                hourly_rate_cents=6000,
                started_at=T0,
                completed_at=None,
            )


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestFinalize:

    async def test_fixed_quote_record(self, db_session, frozen_clock):
        job = await make_awaiting_payment_job(db_session)
        record = job.billing

        assert record.mode == BillingMode.FIXED_QUOTE
        assert record.final_total_cents == 5000
        assert record.platform_fee_cents == 750
        assert record.provider_payout_cents == 4250
        assert record.payout_held is False
        assert record.finalized_at == frozen_clock.now

    async def test_duration_record_uses_server_timestamps(self, db_session, frozen_clock):
        job = await make_in_progress_job(db_session, hourly_rate_cents=6000)
        frozen_clock.advance(minutes=94, seconds=20)
        issued = await handshakeService.issue_end_code(db_session, job.id, PROVIDER_ID)
        job = await handshakeService.verify_end_code(
            db_session, job.id, CUSTOMER_ID, issued.code
        )

        record = job.billing
        assert record.mode == BillingMode.DURATION_BASED
        assert record.actual_duration_minutes == 95
        assert record.billed_minutes == 105
        assert record.final_labor_cents == 10500
        assert record.final_materials_cents == 1000
        assert record.final_total_cents == 11500
        assert record.platform_fee_cents == 1725
        assert record.provider_payout_cents == 9775

    async def test_finalize_is_idempotent(self, db_session, frozen_clock):
        job = await make_awaiting_payment_job(db_session)
        first = job.billing
        frozen_clock.advance(hours=2)

        again = await billingReconciler.finalize(db_session, job.id)

        assert again == first
        assert again.finalized_at == first.finalized_at

    async def test_concurrent_finalize_returns_stored_record(
        self, db_session, frozen_clock, captured_events
    ):
        """A finalize that read the job before billing was written."""
        job = await make_awaiting_payment_job(db_session)
        stored = job.billing
        stale = SimpleNamespace(
            id=job.id,
            status=JobStatus.AWAITING_PAYMENT,
            billing=None,
            quote_labor_cents=job.quote_labor_cents,
            quote_materials_cents=job.quote_materials_cents,
            quote_total_cents=job.quote_total_cents,
            hourly_rate_cents=job.hourly_rate_cents,
            job_started_at=job.job_started_at,
            job_completed_at=job.job_completed_at,
        )
        reads = iter([stale])

        async def _read(db, job_id):
            snapshot = next(reads, None)
            if snapshot is not None:
                return snapshot
            return await get_job_or_raise(db, job_id)

        frozen_clock.advance(minutes=5)
        with patch.object(billingReconciler, "get_job_or_raise", side_effect=_read):
            record = await billingReconciler.finalize(db_session, job.id)
        await notificationService.drain()

        assert record == stored
        finalized = [e for e in captured_events if e["event_type"] == "billing.finalized"]
        assert len(finalized) == 1

    async def test_finalize_before_work_ends_rejected(self, db_session, frozen_clock):
        job = await make_in_progress_job(db_session)
        with pytest.raises(IllegalStateTransition):
            await billingReconciler.finalize(db_session, job.id)
        assert await billingReconciler.get_billing(db_session, job.id) is None

    async def test_dispute_before_billing_holds_payout(self, db_session, frozen_clock):
        job = await make_in_progress_job(db_session)
        await jobService.flag_dispute(db_session, job.id, CUSTOMER_ID, reason="no-show")

        issued = await handshakeService.issue_end_code(db_session, job.id, PROVIDER_ID)
        job = await handshakeService.verify_end_code(db_session, job.id, CUSTOMER_ID, issued.code)

        assert job.billing.payout_held is True


# ---------------------------------------------------------------------------
# Payout gate
# ---------------------------------------------------------------------------


def _transfer_mock() -> AsyncMock:
    return AsyncMock(
        return_value=TransferResult(id="tr_test_001", status="pending", amount_cents=4250)
    )


@pytest.mark.asyncio
class TestReleasePayout:

    async def _completed_job(self, db, **kwargs):
        job = await make_awaiting_payment_job(db, **kwargs)
        return await jobService.mark_payment_received(
            db, job.id, amount_cents=job.billing.final_total_cents, reference="pi_001"
        )

    async def test_release_transfers_provider_share(self, db_session, frozen_clock):
        job = await self._completed_job(db_session)
        transfer = _transfer_mock()

        with patch.object(payoutService, "create_transfer", new=transfer):
            job = await billingReconciler.release_payout(
                db_session, job.id, provider_account_id="acct_provider"
            )

        transfer.assert_awaited_once()
        assert transfer.await_args.kwargs["amount_cents"] == 4250
        assert transfer.await_args.kwargs["provider_account_id"] == "acct_provider"
        assert job.payout_transfer_id == "tr_test_001"
        assert job.payout_released_at is not None

    async def test_release_is_idempotent(self, db_session, frozen_clock):
        job = await self._completed_job(db_session)
        transfer = _transfer_mock()

        with patch.object(payoutService, "create_transfer", new=transfer):
            await billingReconciler.release_payout(db_session, job.id, provider_account_id="acct")
            await billingReconciler.release_payout(db_session, job.id, provider_account_id="acct")

        assert transfer.await_count == 1

    async def test_tip_goes_to_provider(self, db_session, frozen_clock):
        job = await make_awaiting_payment_job(db_session)
        job = await jobService.mark_payment_received(
            db_session, job.id, amount_cents=5500, tip_cents=500, reference="pi_tip"
        )
        transfer = _transfer_mock()

        with patch.object(payoutService, "create_transfer", new=transfer):
            await billingReconciler.release_payout(db_session, job.id, provider_account_id="acct")

        assert transfer.await_args.kwargs["amount_cents"] == 4750

    async def test_disputed_job_payout_refused_until_resolved(self, db_session, frozen_clock):
        job = await self._completed_job(db_session)
        await jobService.flag_dispute(db_session, job.id, CUSTOMER_ID, reason="damage")
        transfer = _transfer_mock()

        with patch.object(payoutService, "create_transfer", new=transfer):
            with pytest.raises(PayoutHeld) as exc_info:
                await billingReconciler.release_payout(
                    db_session, job.id, provider_account_id="acct"
                )
            assert exc_info.value.current_status == JobStatus.COMPLETED
            transfer.assert_not_awaited()

            await jobService.resolve_dispute(db_session, job.id, ADMIN_ID, is_admin=True)
            job = await billingReconciler.release_payout(
                db_session, job.id, provider_account_id="acct"
            )

        assert job.payout_transfer_id == "tr_test_001"

    async def test_not_before_completion(self, db_session, frozen_clock):
        job = await make_awaiting_payment_job(db_session)
        with pytest.raises(IllegalStateTransition):
            await billingReconciler.release_payout(
                db_session, job.id, provider_account_id="acct"
            )
