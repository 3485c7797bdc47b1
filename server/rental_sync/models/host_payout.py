"""Host payout and host payout account model definitions."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base


class PayoutStatus(str, Enum):
    """
    Host payout status enumeration.

    ``submitting`` and ``ambiguous`` mirror refund requests: an ambiguous
    transfer is settled by a provider lookup, never by sending it again.
    ``blocked`` payouts were stopped before any money moved.
    """
    QUEUED = "queued"
    SUBMITTING = "submitting"
    AMBIGUOUS = "ambiguous"
    TRANSFERRED = "transferred"
    FAILED = "failed"
    BLOCKED = "blocked"
    REVERSAL_QUEUED = "reversal_queued"
    REVERSED = "reversed"


# Payouts whose transfer may still land at the provider
IN_FLIGHT_PAYOUT_STATUSES = (PayoutStatus.SUBMITTING, PayoutStatus.AMBIGUOUS)


class HostPayout(Base):
    """The transfer of a completed booking's rental income to its host."""

    __tablename__ = "host_payouts"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # At most one payout per booking
    booking_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        unique=True
    )
    host_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[PayoutStatus] = mapped_column(
        String(20),
        nullable=False,
        default=PayoutStatus.QUEUED,
        index=True
    )
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    destination_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_transfer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reversal_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider_reversal_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    transferred_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reversed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Constraints
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_host_payout_amount_positive"),
        CheckConstraint(
            "status IN ('queued', 'submitting', 'ambiguous', 'transferred', 'failed', "
            "'blocked', 'reversal_queued', 'reversed')",
            name="ck_host_payout_status_valid"
        ),
        CheckConstraint(
            "status NOT IN ('transferred', 'reversal_queued', 'reversed') OR provider_transfer_id IS NOT NULL",
            name="ck_host_payout_transfer_recorded"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<HostPayout(id={self.id}, booking_id={self.booking_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class HostAccount(Base):
    """A host's connected payout account, maintained from provider account events."""

    __tablename__ = "host_accounts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    host_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    provider_account_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    details_submitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<HostAccount(host_id='{self.host_id}', account='{self.provider_account_id}', "
            f"payouts_enabled={self.payouts_enabled})>"
        )
