"""Typed events consumed by the booking ledger."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class WebhookEventType(str, Enum):
    """Provider event types the webhook endpoint subscribes to."""
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    CHECKOUT_SESSION_EXPIRED = "checkout.session.expired"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_PAYMENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_INTENT_AMOUNT_CAPTURABLE_UPDATED = "payment_intent.amount_capturable_updated"
    PAYMENT_INTENT_CANCELED = "payment_intent.canceled"
    CHARGE_SUCCEEDED = "charge.succeeded"
    CHARGE_REFUNDED = "charge.refunded"
    CHARGE_REFUND_UPDATED = "charge.refund.updated"
    CHARGE_DISPUTE_CREATED = "charge.dispute.created"
    ACCOUNT_UPDATED = "account.updated"
    IDENTITY_VERIFICATION_PROCESSING = "identity.verification_session.processing"
    IDENTITY_VERIFICATION_VERIFIED = "identity.verification_session.verified"
    IDENTITY_VERIFICATION_REQUIRES_INPUT = "identity.verification_session.requires_input"
    IDENTITY_VERIFICATION_CANCELED = "identity.verification_session.canceled"

    @classmethod
    def parse(cls, value: str) -> Optional["WebhookEventType"]:
        try:
            return cls(value)
        except ValueError:
            return None


# Events handled by other collaborators (host onboarding, identity checks)
NON_LEDGER_EVENT_TYPES = frozenset({
    WebhookEventType.ACCOUNT_UPDATED,
    WebhookEventType.IDENTITY_VERIFICATION_PROCESSING,
    WebhookEventType.IDENTITY_VERIFICATION_VERIFIED,
    WebhookEventType.IDENTITY_VERIFICATION_REQUIRES_INPUT,
    WebhookEventType.IDENTITY_VERIFICATION_CANCELED,
})


class LedgerEventType(str, Enum):
    """Everything that can move a booking, provider-driven or local."""
    CHECKOUT_COMPLETED = WebhookEventType.CHECKOUT_SESSION_COMPLETED.value
    CHECKOUT_EXPIRED = WebhookEventType.CHECKOUT_SESSION_EXPIRED.value
    PAYMENT_SUCCEEDED = WebhookEventType.PAYMENT_INTENT_SUCCEEDED.value
    PAYMENT_FAILED = WebhookEventType.PAYMENT_INTENT_PAYMENT_FAILED.value
    AMOUNT_CAPTURABLE = WebhookEventType.PAYMENT_INTENT_AMOUNT_CAPTURABLE_UPDATED.value
    PAYMENT_CANCELED = WebhookEventType.PAYMENT_INTENT_CANCELED.value
    CHARGE_SUCCEEDED = WebhookEventType.CHARGE_SUCCEEDED.value
    CHARGE_REFUNDED = WebhookEventType.CHARGE_REFUNDED.value
    REFUND_UPDATED = WebhookEventType.CHARGE_REFUND_UPDATED.value
    DISPUTE_CREATED = WebhookEventType.CHARGE_DISPUTE_CREATED.value
    CHECKOUT_OPENED = "checkout.session.opened"
    RESERVATION_CANCELLED = "reservation.cancelled"
    RESERVATION_ABANDONED = "reservation.abandoned"
    TRIP_COMPLETED = "trip.completed"
    DEPOSIT_RELEASED = "deposit.released"


class EventSource(str, Enum):
    WEBHOOK = "webhook"
    SWEEP = "sweep"


@dataclass(frozen=True)
class PaymentEvent:
    """
    Provider-reported payment state, normalized for the ledger.

    Amounts are minor units. ``amount`` is the amount the event is about:
    the captured amount for captures, the checkout total for completed
    sessions, the refund amount for refund updates and the disputed amount
    for disputes. ``amount_refunded`` and ``amount_captured`` carry the
    cumulative totals reported on a charge.
    """

    type: LedgerEventType
    provider_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    checkout_paid: bool = True
    captured: bool = True
    amount: Optional[int] = None
    amount_refunded: Optional[int] = None
    amount_captured: Optional[int] = None
    refund_status: Optional[str] = None
    refund_id: Optional[str] = None
    dispute_id: Optional[str] = None
    source: EventSource = EventSource.WEBHOOK


@dataclass(frozen=True)
class BookingReference:
    """Identifiers on a provider object that can lead back to a booking."""

    booking_id: Optional[str] = None
    provider_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not any((self.booking_id, self.provider_session_id, self.payment_intent_id, self.charge_id))
