"""Booking model definition."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base
from ..ledger.states import LEGAL_PAYMENT_STATUSES, BookingStatus, PaymentStatus


def _legal_pairs_sql() -> str:
    clauses = []
    for status, payment_statuses in LEGAL_PAYMENT_STATUSES.items():
        allowed = ", ".join(f"'{p.value}'" for p in sorted(payment_statuses, key=lambda p: p.value))
        clauses.append(f"(status = '{status.value}' AND payment_status IN ({allowed}))")
    return " OR ".join(clauses)


class Booking(Base):
    """Booking entity: one reservation of one car for a date range."""

    __tablename__ = "bookings"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Parties; cars and users live in external services
    car_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    renter_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    host_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Reserved range
    starts_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    # State machine
    status: Mapped[BookingStatus] = mapped_column(
        String(20),
        nullable=False,
        default=BookingStatus.PENDING_PAYMENT,
        index=True
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        String(32),
        nullable=False,
        default=PaymentStatus.NOT_STARTED
    )

    # Provider references
    checkout_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    charge_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # Money, in minor units
    amount_total: Mapped[int] = mapped_column(Integer, nullable=False)
    deposit_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_captured: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_refunded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Lifecycle stamps
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Optimistic concurrency token
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        server_default=func.now()
    )

    # Constraints
    __table_args__ = (
        CheckConstraint("starts_at < ends_at", name="ck_booking_range_valid"),
        CheckConstraint("amount_total >= 0", name="ck_booking_amount_total_non_negative"),
        CheckConstraint("deposit_amount >= 0", name="ck_booking_deposit_non_negative"),
        CheckConstraint("amount_captured >= 0", name="ck_booking_captured_non_negative"),
        CheckConstraint(
            "amount_refunded >= 0 AND amount_refunded <= amount_captured",
            name="ck_booking_refund_within_capture"
        ),
        CheckConstraint(
            "(status = 'completed') = (completed_at IS NOT NULL)",
            name="ck_booking_completed_at_iff_completed"
        ),
        CheckConstraint(_legal_pairs_sql(), name="ck_booking_payment_status_legal"),
        CheckConstraint("version > 0", name="ck_booking_version_positive"),
        CheckConstraint("length(car_id) > 0", name="ck_booking_car_id_not_empty"),
        Index("ix_bookings_car_range", "car_id", "starts_at", "ends_at"),
        Index("ix_bookings_status_ends_at", "status", "ends_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, car_id='{self.car_id}', status={self.status}, "
            f"payment_status={self.payment_status}, version={self.version})>"
        )
