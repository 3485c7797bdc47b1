"""Booking and payment states and the invariants that bind them."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class BookingStatus(str, Enum):
    """Booking lifecycle status."""
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"


class PaymentStatus(str, Enum):
    """Payment sub-state, gated by the booking status."""
    NOT_STARTED = "not_started"
    CHECKOUT_CREATED = "checkout_created"
    METHOD_COLLECTION_PENDING = "method_collection_pending"
    HELD = "held"
    TRANSFERRED = "transferred"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({
    BookingStatus.CANCELLED,
    BookingStatus.PAYMENT_FAILED,
    BookingStatus.COMPLETED,
})

# Statuses that occupy the car's calendar
ACTIVE_STATUSES = frozenset({BookingStatus.PENDING_PAYMENT, BookingStatus.CONFIRMED})

AWAITING_PAYMENT = frozenset({
    PaymentStatus.CHECKOUT_CREATED,
    PaymentStatus.METHOD_COLLECTION_PENDING,
})

_PAID = frozenset({
    PaymentStatus.HELD,
    PaymentStatus.TRANSFERRED,
    PaymentStatus.REFUND_PENDING,
    PaymentStatus.REFUNDED,
})

_CLOSED = frozenset({
    PaymentStatus.FAILED,
    PaymentStatus.REFUND_PENDING,
    PaymentStatus.REFUNDED,
})

LEGAL_PAYMENT_STATUSES: dict[BookingStatus, frozenset[PaymentStatus]] = {
    BookingStatus.PENDING_PAYMENT: frozenset({PaymentStatus.NOT_STARTED}) | AWAITING_PAYMENT,
    BookingStatus.CONFIRMED: _PAID,
    BookingStatus.COMPLETED: _PAID,
    BookingStatus.CANCELLED: _CLOSED,
    BookingStatus.PAYMENT_FAILED: _CLOSED,
}


@dataclass(frozen=True)
class LedgerState:
    """Snapshot of the fields of a booking the state machine reads and writes."""

    status: BookingStatus
    payment_status: PaymentStatus
    starts_at: datetime
    ends_at: datetime
    amount_total: int = 0
    amount_captured: int = 0
    amount_refunded: int = 0
    active_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def refundable_amount(self) -> int:
        return self.amount_captured - self.amount_refunded


def check_invariants(state: LedgerState) -> list[str]:
    """Return a description of every invariant the state violates."""
    violations = []
    if state.payment_status not in LEGAL_PAYMENT_STATUSES[state.status]:
        violations.append(
            f"payment status {state.payment_status.value} is not legal for {state.status.value}"
        )
    if state.amount_refunded < 0 or state.amount_captured < 0:
        violations.append("amounts must not be negative")
    if state.amount_refunded > state.amount_captured:
        violations.append("amount refunded exceeds amount captured")
    if (state.completed_at is not None) != (state.status == BookingStatus.COMPLETED):
        violations.append("completed_at must be set exactly when the booking is completed")
    if state.starts_at >= state.ends_at:
        violations.append("start must precede end")
    return violations
