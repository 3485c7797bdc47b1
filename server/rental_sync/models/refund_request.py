"""Refund request model definition."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base


class RefundStatus(str, Enum):
    """
    Refund request status enumeration.

    ``submitting`` marks a request whose provider call is in progress;
    ``ambiguous`` marks one whose call outcome is unknown and must be
    resolved by a provider lookup, never by issuing it again.
    """
    QUEUED = "queued"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    FAILED = "failed"
    AMBIGUOUS = "ambiguous"


class RefundRequest(Base):
    """A refund the ledger queued for dispatch to the provider."""

    __tablename__ = "refund_requests"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    booking_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[RefundStatus] = mapped_column(
        String(20),
        nullable=False,
        default=RefundStatus.QUEUED,
        index=True
    )
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    provider_refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    # Constraints
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_refund_request_amount_positive"),
        CheckConstraint("length(idempotency_key) > 0", name="ck_refund_request_key_not_empty"),
    )

    def __repr__(self) -> str:
        return (
            f"<RefundRequest(id={self.id}, booking_id={self.booking_id}, "
            f"amount={self.amount}, status={self.status})>"
        )
