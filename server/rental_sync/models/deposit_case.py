"""Deposit case model definition."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base


class DepositCaseStatus(str, Enum):
    """Deposit case status enumeration."""
    CASE_SUBMITTED = "case_submitted"
    UNDER_REVIEW = "under_review"
    RETAINED = "retained"
    REVERSED = "reversed"


OPEN_DEPOSIT_CASE_STATUSES = (DepositCaseStatus.CASE_SUBMITTED, DepositCaseStatus.UNDER_REVIEW)


class DepositCaseSource(str, Enum):
    HOST_CLAIM = "host_claim"
    PROVIDER_DISPUTE = "provider_dispute"


_OPEN_HOST_CLAIM = "source = 'host_claim' AND status IN ('case_submitted', 'under_review')"


class DepositCase(Base):
    """A claim against the security deposit of a completed booking."""

    __tablename__ = "deposit_cases"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    booking_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    source: Mapped[DepositCaseSource] = mapped_column(String(20), nullable=False)
    status: Mapped[DepositCaseStatus] = mapped_column(
        String(20),
        nullable=False,
        default=DepositCaseStatus.CASE_SUBMITTED,
        index=True
    )
    amount_claimed: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    filed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider_dispute_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)

    filed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Constraints
    __table_args__ = (
        CheckConstraint("amount_claimed >= 0", name="ck_deposit_case_amount_non_negative"),
        CheckConstraint(
            "status IN ('case_submitted', 'under_review', 'retained', 'reversed')",
            name="ck_deposit_case_status_valid"
        ),
        CheckConstraint(
            "(status IN ('retained', 'reversed')) = (resolved_at IS NOT NULL)",
            name="ck_deposit_case_resolved_at_iff_resolved"
        ),
        # One open host claim per booking; provider disputes are always recorded
        Index(
            "uq_deposit_cases_one_open_claim_per_booking",
            "booking_id",
            unique=True,
            postgresql_where=text(_OPEN_HOST_CLAIM),
            sqlite_where=text(_OPEN_HOST_CLAIM),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<DepositCase(id={self.id}, booking_id={self.booking_id}, "
            f"source={self.source}, status={self.status}, amount={self.amount_claimed})>"
        )
