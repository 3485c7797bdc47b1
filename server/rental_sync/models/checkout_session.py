"""Checkout session model definition."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, String, Text, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base


class CheckoutSessionStatus(str, Enum):
    """Checkout session status enumeration."""
    CREATED = "created"
    COMPLETED = "completed"
    EXPIRED = "expired"


class CheckoutSession(Base):
    """A provider checkout attempt for one booking."""

    __tablename__ = "checkout_sessions"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    booking_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Provider references
    provider_session_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    provider_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[CheckoutSessionStatus] = mapped_column(
        String(20),
        nullable=False,
        default=CheckoutSessionStatus.CREATED,
        index=True
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        index=True
    )
    last_reconciled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Constraints
    __table_args__ = (
        CheckConstraint(
            "status IN ('created', 'completed', 'expired')",
            name="ck_checkout_session_status_valid"
        ),
        CheckConstraint(
            "(status = 'created') = (closed_at IS NULL)",
            name="ck_checkout_session_closed_at_iff_closed"
        ),
        # At most one open session per booking
        Index(
            "uq_checkout_sessions_one_open_per_booking",
            "booking_id",
            unique=True,
            postgresql_where=text("status = 'created'"),
            sqlite_where=text("status = 'created'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<CheckoutSession(id={self.id}, booking_id={self.booking_id}, "
            f"provider_session_id='{self.provider_session_id}', status={self.status})>"
        )
