"""
SQLAlchemy model for the ``jobs`` table -- the aggregate root of the booking
lifecycle.

The row is deliberately flat (quote, handshake codes, billing ledger and
dispute gate live as columns on the job) so that every lifecycle step can be
expressed as a single conditional ``UPDATE jobs ... WHERE status = ...``.
Read-side value objects (``Quote``, ``AuthCode``, ``BillingRecord``) are
assembled from those columns on demand.
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.core.clock import ensure_utc

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    AWAITING_PAYMENT = "awaiting_payment"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BillingMode(str, enum.Enum):
    FIXED_QUOTE = "fixed_quote"
    DURATION_BASED = "duration_based"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


# ---------------------------------------------------------------------------
# Read-side value objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Quote:
    labor_cents: int
    materials_cents: int
    total_cents: int
    submitted_at: datetime | None
    accepted: bool
    accepted_at: datetime | None
    locked: bool
    version: int


@dataclass(frozen=True)
class AuthCode:
    """Stored half of a handshake code. The plaintext is never persisted."""
    hash: str
    issued_at: datetime | None
    expires_at: datetime | None
    consumed: bool

    def is_expired(self, now: datetime) -> bool:
        # Legacy codes issued before expiry tracking carry no expiry.
        if self.expires_at is None:
            return False
        return now > self.expires_at


@dataclass(frozen=True)
class BillingRecord:
    mode: BillingMode
    actual_duration_minutes: int | None
    billed_minutes: int | None
    final_labor_cents: int
    final_materials_cents: int
    subtotal_cents: int
    platform_fee_rate: Decimal
    platform_fee_cents: int
    final_total_cents: int
    provider_payout_cents: int
    payout_held: bool
    finalized_at: datetime | None


class Job(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "jobs"

    # Reference number (human-readable)
    reference_number: Mapped[str] = mapped_column(
        String(20), unique=True, nullable=False
    )

    # Parties
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    provider_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status", values_callable=_enum_values),
        nullable=False,
        default=JobStatus.PENDING,
    )

    # Scheduling / lifecycle timestamps (server-authoritative)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    job_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    job_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Hourly-rate snapshot taken at booking; selects duration-based billing
    hourly_rate_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="cad")

    # Quote
    quote_labor_cents: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    quote_materials_cents: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    quote_total_cents: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    quote_submitted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    quote_accepted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    quote_accepted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    quote_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    quote_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Start handshake (customer issues, provider verifies)
    start_code_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    start_code_issued_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    start_code_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    start_code_consumed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    # End handshake (provider issues, customer verifies)
    end_code_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    end_code_issued_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    end_code_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    end_code_consumed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    # Billing ledger (write-once)
    billing_mode: Mapped[Optional[BillingMode]] = mapped_column(
        Enum(BillingMode, name="billing_mode", values_callable=_enum_values),
        nullable=True,
    )
    billing_actual_duration_minutes: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True
    )
    billing_billed_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    billing_labor_cents: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    billing_materials_cents: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    billing_subtotal_cents: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    billing_platform_fee_rate: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(5, 4), nullable=True
    )
    billing_platform_fee_cents: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    billing_total_cents: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    billing_provider_payout_cents: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    billing_finalized_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    payout_held: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payout_released_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    payout_transfer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Payment (reported by the payment collaborator)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_amount_cents: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    payment_tip_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    payment_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Dispute gate (set by moderation)
    dispute_flag: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dispute_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    dispute_flagged_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # -- value object views ------------------------------------------------

    @property
    def quote(self) -> Quote | None:
        if self.quote_total_cents is None:
            return None
        return Quote(
            labor_cents=self.quote_labor_cents or 0,
            materials_cents=self.quote_materials_cents or 0,
            total_cents=self.quote_total_cents,
            submitted_at=ensure_utc(self.quote_submitted_at),
            accepted=self.quote_accepted,
            accepted_at=ensure_utc(self.quote_accepted_at),
            locked=self.quote_locked,
            version=self.quote_version,
        )

    @property
    def start_handshake(self) -> AuthCode | None:
        if self.start_code_hash is None:
            return None
        return AuthCode(
            hash=self.start_code_hash,
            issued_at=ensure_utc(self.start_code_issued_at),
            expires_at=ensure_utc(self.start_code_expires_at),
            consumed=self.start_code_consumed,
        )

    @property
    def end_handshake(self) -> AuthCode | None:
        if self.end_code_hash is None:
            return None
        return AuthCode(
            hash=self.end_code_hash,
            issued_at=ensure_utc(self.end_code_issued_at),
            expires_at=ensure_utc(self.end_code_expires_at),
            consumed=self.end_code_consumed,
        )

    @property
    def billing(self) -> BillingRecord | None:
        if self.billing_mode is None:
            return None
        return BillingRecord(
            mode=self.billing_mode,
            actual_duration_minutes=self.billing_actual_duration_minutes,
            billed_minutes=self.billing_billed_minutes,
            final_labor_cents=self.billing_labor_cents or 0,
            final_materials_cents=self.billing_materials_cents or 0,
            subtotal_cents=self.billing_subtotal_cents or 0,
            platform_fee_rate=Decimal(str(self.billing_platform_fee_rate)),
            platform_fee_cents=self.billing_platform_fee_cents or 0,
            final_total_cents=self.billing_total_cents or 0,
            provider_payout_cents=self.billing_provider_payout_cents or 0,
            payout_held=self.payout_held,
            finalized_at=ensure_utc(self.billing_finalized_at),
        )

    def __repr__(self) -> str:
        return (
            f"<Job(id={self.id}, ref={self.reference_number}, "
            f"status={self.status})>"
        )
