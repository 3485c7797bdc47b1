"""Pure booking ledger: states, events and transitions."""

from .events import (
    BookingReference,
    EventSource,
    LedgerEventType,
    NON_LEDGER_EVENT_TYPES,
    PaymentEvent,
    WebhookEventType,
)
from .states import (
    ACTIVE_STATUSES,
    AWAITING_PAYMENT,
    LEGAL_PAYMENT_STATUSES,
    TERMINAL_STATUSES,
    BookingStatus,
    LedgerState,
    PaymentStatus,
    check_invariants,
)
from .transitions import (
    CloseSession,
    OpenDepositCase,
    QueueRefund,
    ReverseHostPayout,
    SessionOutcome,
    Transition,
    apply_payment_event,
    cancel_reservation,
    complete_trip,
    expire_abandoned,
    open_checkout,
    release_deposit,
)

__all__ = [
    "ACTIVE_STATUSES",
    "AWAITING_PAYMENT",
    "LEGAL_PAYMENT_STATUSES",
    "NON_LEDGER_EVENT_TYPES",
    "TERMINAL_STATUSES",
    "BookingReference",
    "BookingStatus",
    "CloseSession",
    "EventSource",
    "LedgerEventType",
    "LedgerState",
    "OpenDepositCase",
    "PaymentEvent",
    "PaymentStatus",
    "QueueRefund",
    "ReverseHostPayout",
    "SessionOutcome",
    "Transition",
    "WebhookEventType",
    "apply_payment_event",
    "cancel_reservation",
    "check_invariants",
    "complete_trip",
    "expire_abandoned",
    "open_checkout",
    "release_deposit",
]
