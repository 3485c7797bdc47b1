"""Webhook ingestion: signature verification, decoding and deduplication of provider events."""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from uuid import UUID

import stripe
from pydantic import ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, utcnow
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import (
    DuplicateEventError,
    EventInFlightError,
    InvalidSignatureError,
    MalformedEventError,
    UnrecognizedEventTypeError,
)
from ..ledger import (
    NON_LEDGER_EVENT_TYPES,
    BookingReference,
    LedgerEventType,
    PaymentEvent,
    WebhookEventType,
)
from ..models import WebhookEvent, WebhookOutcome
from ..schemas.webhook import (
    AccountObject,
    ChargeObject,
    CheckoutSessionObject,
    DisputeObject,
    PaymentIntentObject,
    RefundObject,
    WebhookEnvelope,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookClaim:
    """Processing claim held by one delivery of a provider event."""

    row_id: UUID
    event_id: str
    event_type: str


@dataclass(frozen=True)
class IngestedEvent:
    """A verified, decoded and claimed provider event."""

    claim: WebhookClaim
    event_type: WebhookEventType
    payment_event: Optional[PaymentEvent]
    reference: BookingReference
    account: Optional[AccountObject] = None


def decode_provider_object(
    event_type: WebhookEventType, obj: dict
) -> tuple[Optional[PaymentEvent], BookingReference]:
    """
    Decode the provider object of an event into a ledger event.

    Returns ``(None, BookingReference())`` for events with no ledger effect.

    Raises:
        ValidationError: If the object does not match its expected shape
    """
    if event_type in NON_LEDGER_EVENT_TYPES:
        return None, BookingReference()

    if event_type in (
        WebhookEventType.CHECKOUT_SESSION_COMPLETED,
        WebhookEventType.CHECKOUT_SESSION_EXPIRED,
    ):
        session = CheckoutSessionObject.model_validate(obj)
        ledger_type = (
            LedgerEventType.CHECKOUT_COMPLETED
            if event_type == WebhookEventType.CHECKOUT_SESSION_COMPLETED
            else LedgerEventType.CHECKOUT_EXPIRED
        )
        event = PaymentEvent(
            type=ledger_type,
            provider_session_id=session.id,
            payment_intent_id=session.payment_intent,
            checkout_paid=session.is_paid,
            amount=session.amount_total,
        )
        reference = BookingReference(
            booking_id=session.booking_id or session.client_reference_id,
            provider_session_id=session.id,
            payment_intent_id=session.payment_intent,
        )
        return event, reference

    if event_type.value.startswith("payment_intent."):
        intent = PaymentIntentObject.model_validate(obj)
        amounts = {
            WebhookEventType.PAYMENT_INTENT_SUCCEEDED: intent.amount_received or intent.amount,
            WebhookEventType.PAYMENT_INTENT_AMOUNT_CAPTURABLE_UPDATED: intent.amount_capturable,
        }
        event = PaymentEvent(
            type=LedgerEventType(event_type.value),
            payment_intent_id=intent.id,
            charge_id=intent.latest_charge,
            amount=amounts.get(event_type),
        )
        reference = BookingReference(
            booking_id=intent.booking_id,
            payment_intent_id=intent.id,
            charge_id=intent.latest_charge,
        )
        return event, reference

    if event_type in (WebhookEventType.CHARGE_SUCCEEDED, WebhookEventType.CHARGE_REFUNDED):
        charge = ChargeObject.model_validate(obj)
        event = PaymentEvent(
            type=LedgerEventType(event_type.value),
            payment_intent_id=charge.payment_intent,
            charge_id=charge.id,
            captured=charge.captured,
            amount=charge.amount_captured if charge.captured else charge.amount,
            amount_captured=charge.amount_captured,
            amount_refunded=charge.amount_refunded,
        )
        reference = BookingReference(
            booking_id=charge.booking_id,
            payment_intent_id=charge.payment_intent,
            charge_id=charge.id,
        )
        return event, reference

    if event_type == WebhookEventType.CHARGE_REFUND_UPDATED:
        refund = RefundObject.model_validate(obj)
        event = PaymentEvent(
            type=LedgerEventType.REFUND_UPDATED,
            payment_intent_id=refund.payment_intent,
            charge_id=refund.charge,
            amount=refund.amount,
            refund_status=refund.status,
            refund_id=refund.id,
        )
        reference = BookingReference(
            booking_id=refund.booking_id,
            payment_intent_id=refund.payment_intent,
            charge_id=refund.charge,
        )
        return event, reference

    if event_type == WebhookEventType.CHARGE_DISPUTE_CREATED:
        dispute = DisputeObject.model_validate(obj)
        event = PaymentEvent(
            type=LedgerEventType.DISPUTE_CREATED,
            payment_intent_id=dispute.payment_intent,
            charge_id=dispute.charge,
            amount=dispute.amount,
            dispute_id=dispute.id,
        )
        reference = BookingReference(
            booking_id=dispute.booking_id,
            payment_intent_id=dispute.payment_intent,
            charge_id=dispute.charge,
        )
        return event, reference

    return None, BookingReference()


class WebhookEventIngester:
    """
    Service that turns a raw webhook delivery into a claimed, typed event.

    Deduplication relies on the unique constraint on
    ``webhook_events.provider_event_id``: the delivery whose insert succeeds
    owns the event until it completes or releases the claim.
    """

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = utcnow,
        settings: Settings = default_settings,
    ):
        self.db = db
        self.clock = clock
        self.settings = settings

    def verify(self, raw_payload: bytes, signature_header: Optional[str]) -> str:
        """
        Verify the provider signature over the raw body.

        Raises:
            InvalidSignatureError: If the header is missing, stale or does not match
        """
        if not signature_header:
            raise InvalidSignatureError("Missing Stripe-Signature header")
        try:
            payload = raw_payload.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidSignatureError("Webhook payload is not valid UTF-8")
        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                self.settings.stripe_webhook_secret,
                self.settings.stripe_webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed", extra={"reason": str(e)})
            raise InvalidSignatureError(str(e))
        return payload

    def decode(self, payload: str) -> WebhookEnvelope:
        """
        Decode the event envelope.

        Raises:
            MalformedEventError: If the body is not a valid event envelope
        """
        try:
            return WebhookEnvelope.model_validate_json(payload)
        except ValidationError as e:
            raise MalformedEventError(f"Invalid event envelope: {e.error_count()} validation error(s)")

    async def ingest(self, raw_payload: bytes, signature_header: Optional[str]) -> IngestedEvent:
        """
        Verify, decode and claim a webhook delivery.

        Raises:
            InvalidSignatureError: Signature check failed
            MalformedEventError: Body or provider object cannot be decoded
            UnrecognizedEventTypeError: Event type is not handled
            DuplicateEventError: Event id was already processed
            EventInFlightError: Another delivery holds a fresh claim
        """
        payload = self.verify(raw_payload, signature_header)
        envelope = self.decode(payload)

        event_type = WebhookEventType.parse(envelope.type)
        if event_type is None:
            logger.info(
                "Ignoring unrecognized webhook event type",
                extra={"event_id": envelope.id, "event_type": envelope.type}
            )
            raise UnrecognizedEventTypeError(envelope.id, envelope.type)

        account = None
        try:
            payment_event, reference = decode_provider_object(event_type, envelope.data.object)
            if event_type == WebhookEventType.ACCOUNT_UPDATED:
                account = AccountObject.model_validate(envelope.data.object)
        except ValidationError as e:
            raise MalformedEventError(
                f"Invalid {envelope.type} object: {e.error_count()} validation error(s)"
            )

        claim = await self.claim(envelope, payload)
        return IngestedEvent(
            claim=claim,
            event_type=event_type,
            payment_event=payment_event,
            reference=reference,
            account=account,
        )

    async def claim(self, envelope: WebhookEnvelope, payload: str) -> WebhookClaim:
        """Insert the processing claim for an event id, or take over a stale one."""
        now = self.clock()
        row = WebhookEvent(
            provider_event_id=envelope.id,
            event_type=envelope.type,
            payload=payload,
            received_at=now,
            claimed_at=now,
        )
        self.db.add(row)
        try:
            await self.db.commit()
            return WebhookClaim(row.id, envelope.id, envelope.type)
        except IntegrityError:
            await self.db.rollback()

        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.provider_event_id == envelope.id)
            .execution_options(populate_existing=True)
        )
        existing = result.scalar_one()

        if existing.processed_at is not None:
            logger.info(
                "Duplicate webhook delivery",
                extra={"event_id": envelope.id, "outcome": existing.outcome}
            )
            raise DuplicateEventError(envelope.id, existing.outcome)

        ttl = timedelta(seconds=self.settings.webhook_claim_ttl_seconds)
        if now - existing.claimed_at < ttl:
            raise EventInFlightError(envelope.id)

        # The previous delivery died without completing or releasing its claim
        stmt = (
            update(WebhookEvent)
            .where(
                WebhookEvent.id == existing.id,
                WebhookEvent.claimed_at == existing.claimed_at,
                WebhookEvent.processed_at.is_(None),
            )
            .values(claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            await self.db.rollback()
            raise EventInFlightError(envelope.id)
        await self.db.commit()

        logger.warning(
            "Took over stale webhook claim",
            extra={"event_id": envelope.id, "previous_claim": existing.claimed_at.isoformat()}
        )
        return WebhookClaim(existing.id, envelope.id, envelope.type)

    async def complete(
        self,
        claim: WebhookClaim,
        outcome: WebhookOutcome,
        booking_id: Optional[UUID] = None,
    ) -> None:
        """Record that the claimed event finished processing."""
        stmt = (
            update(WebhookEvent)
            .where(WebhookEvent.id == claim.row_id)
            .values(processed_at=self.clock(), outcome=outcome.value, booking_id=booking_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)
        await self.db.commit()

    async def release(self, claim: WebhookClaim) -> None:
        """Drop an unfinished claim so the provider's redelivery can retry."""
        await self.db.rollback()
        stmt = (
            delete(WebhookEvent)
            .where(WebhookEvent.id == claim.row_id, WebhookEvent.processed_at.is_(None))
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)
        await self.db.commit()
        logger.info(
            "Released webhook claim",
            extra={"event_id": claim.event_id, "event_type": claim.event_type}
        )
