"""Payment state reconciler: routes provider-reported state to the booking ledger."""

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, utcnow
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import IllegalTransitionError, NotFoundError, StaleVersionError
from ..core.observability import metrics_collector
from ..ledger import BookingReference, BookingStatus, EventSource, LedgerEventType, PaymentEvent, Transition
from ..models import Booking, CheckoutSession, WebhookOutcome
from .booking_ledger import BookingLedger
from .payment_provider import PaymentProvider, ProviderCheckoutState
from .payouts import record_account_update
from .webhook_ingester import IngestedEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    outcome: WebhookOutcome
    booking_id: Optional[UUID] = None
    transition: Optional[Transition] = None
    reason: Optional[str] = None


def _parse_uuid(value: Optional[str]) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        return None


class PaymentStateReconciler:
    """
    Service applying provider payment state to bookings.

    Resolves the booking an event refers to and applies it through the
    ledger, re-reading and retrying only when the booking version moved.
    Inapplicable events are dropped, never retried.
    """

    def __init__(
        self,
        db: AsyncSession,
        provider: Optional[PaymentProvider] = None,
        clock: Clock = utcnow,
        settings: Settings = default_settings,
    ):
        self.db = db
        self.clock = clock
        self.settings = settings
        self.ledger = BookingLedger(db, provider=provider, clock=clock, settings=settings)

    async def resolve_booking(self, reference: BookingReference) -> Optional[Booking]:
        """Find the booking by metadata id, then checkout session, payment intent or charge."""
        booking_id = _parse_uuid(reference.booking_id)
        if booking_id is not None:
            booking = await self.ledger.find_booking(booking_id)
            if booking is not None:
                return booking

        if reference.provider_session_id:
            result = await self.db.execute(
                select(CheckoutSession.booking_id)
                .where(CheckoutSession.provider_session_id == reference.provider_session_id)
            )
            session_booking_id = result.scalar_one_or_none()
            if session_booking_id is not None:
                return await self.ledger.find_booking(session_booking_id)

        if reference.payment_intent_id:
            result = await self.db.execute(
                select(Booking.id).where(Booking.payment_intent_id == reference.payment_intent_id)
            )
            found = result.scalars().first()
            if found is None:
                result = await self.db.execute(
                    select(CheckoutSession.booking_id)
                    .where(CheckoutSession.provider_payment_intent_id == reference.payment_intent_id)
                )
                found = result.scalars().first()
            if found is not None:
                return await self.ledger.find_booking(found)

        if reference.charge_id:
            result = await self.db.execute(
                select(Booking.id).where(Booking.charge_id == reference.charge_id)
            )
            found = result.scalars().first()
            if found is not None:
                return await self.ledger.find_booking(found)

        return None

    async def apply_with_retry(self, booking_id: UUID, event: PaymentEvent, caller: str) -> ReconcileResult:
        """
        Apply an event, re-reading the booking when its version moved.

        Raises:
            StaleVersionError: If every attempt lost the race
        """
        max_attempts = self.settings.reconcile_max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                booking = await self.ledger.get_booking(booking_id)
                transition = await self.ledger.apply_payment_event(booking_id, event, booking.version)
                return ReconcileResult(WebhookOutcome.APPLIED, booking_id, transition)
            except StaleVersionError:
                metrics_collector.record_stale_version_retry(caller)
                logger.info(
                    "Retrying event after concurrent booking update",
                    extra={
                        "booking_id": str(booking_id),
                        "event_type": event.type.value,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                    }
                )
                if attempt == max_attempts:
                    raise
            except IllegalTransitionError as e:
                logger.info(
                    "Dropping inapplicable payment event",
                    extra={
                        "booking_id": str(booking_id),
                        "event_type": event.type.value,
                        "source": event.source.value,
                        "booking_status": e.status,
                        "payment_status": e.payment_status,
                        "reason": e.reason,
                    }
                )
                return ReconcileResult(WebhookOutcome.DROPPED, booking_id, reason=e.reason)
            except NotFoundError:
                return ReconcileResult(WebhookOutcome.UNRESOLVED, booking_id, reason="booking not found")

    async def reconcile_event(self, ingested: IngestedEvent) -> ReconcileResult:
        """Apply a claimed webhook event to the booking it refers to."""
        if ingested.account is not None:
            if await record_account_update(self.db, ingested.account, self.clock) is None:
                return ReconcileResult(WebhookOutcome.IGNORED, reason="account of no known host")
            return ReconcileResult(WebhookOutcome.APPLIED)

        event = ingested.payment_event
        if event is None:
            logger.info(
                "Acknowledged event without ledger effect",
                extra={"event_id": ingested.claim.event_id, "event_type": ingested.event_type.value}
            )
            return ReconcileResult(WebhookOutcome.IGNORED)

        booking = await self.resolve_booking(ingested.reference)
        if booking is None:
            logger.warning(
                "Could not resolve booking for payment event",
                extra={
                    "event_id": ingested.claim.event_id,
                    "event_type": ingested.event_type.value,
                    "provider_session_id": ingested.reference.provider_session_id,
                    "payment_intent_id": ingested.reference.payment_intent_id,
                    "charge_id": ingested.reference.charge_id,
                }
            )
            return ReconcileResult(WebhookOutcome.UNRESOLVED, reason="booking not found")

        return await self.apply_with_retry(booking.id, event, caller="webhook")

    async def reconcile_provider_state(
        self, session: CheckoutSession, state: ProviderCheckoutState
    ) -> Optional[ReconcileResult]:
        """
        Apply a checkout session state queried from the provider.

        Returns None while the session is still open at the provider.
        """
        if state.status == "complete":
            event_type = LedgerEventType.CHECKOUT_COMPLETED
            if state.is_paid and state.payment_intent_id:
                booking = await self.ledger.find_booking(session.booking_id)
                if booking is not None and booking.status in (
                    BookingStatus.CANCELLED.value, BookingStatus.PAYMENT_FAILED.value
                ):
                    # Paid after the booking closed; replayed as the capture so it is refunded
                    event_type = LedgerEventType.PAYMENT_SUCCEEDED
        elif state.status == "expired":
            event_type = LedgerEventType.CHECKOUT_EXPIRED
        else:
            return None

        event = PaymentEvent(
            type=event_type,
            provider_session_id=session.provider_session_id,
            payment_intent_id=state.payment_intent_id,
            checkout_paid=state.is_paid,
            amount=state.amount_total,
            source=EventSource.SWEEP,
        )
        return await self.apply_with_retry(session.booking_id, event, caller="sweep")
