"""Webhook router receiving provider events."""

from typing import Optional

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import DatabaseSession, Provider
from ..core.exceptions import DuplicateEventError, UnrecognizedEventTypeError
from ..core.observability import get_logger, metrics_collector
from ..schemas.common import Problem
from ..schemas.webhook import WebhookAck
from ..services.payment_provider import PaymentProvider
from ..services.payment_reconciler import PaymentStateReconciler
from ..services.webhook_ingester import WebhookEventIngester

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])


def _ack(ack: WebhookAck) -> JSONResponse:
    return JSONResponse(status_code=200, content=ack.model_dump())


@router.post(
    "/stripe",
    response_model=WebhookAck,
    responses={
        400: {"model": Problem, "description": "Bad signature or malformed event"},
        409: {"model": Problem, "description": "Event in flight or booking kept changing; redeliver later"},
    },
)
async def receive_stripe_event(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = DatabaseSession,
    provider: PaymentProvider = Provider,
) -> JSONResponse:
    """
    Receive one provider event delivery.

    The raw body is verified before decoding. Duplicate and unrecognized
    events are acknowledged so the provider stops redelivering them; any
    failure after the claim releases it so a redelivery can retry.
    """
    raw_payload = await request.body()
    ingester = WebhookEventIngester(db)

    try:
        ingested = await ingester.ingest(raw_payload, stripe_signature)
    except UnrecognizedEventTypeError as e:
        metrics_collector.record_webhook(e.event_type, "unrecognized")
        return _ack(WebhookAck(event_id=e.event_id, status="unrecognized"))
    except DuplicateEventError as e:
        metrics_collector.record_webhook("duplicate", e.outcome or "unknown")
        return _ack(WebhookAck(event_id=e.event_id, status="duplicate"))

    reconciler = PaymentStateReconciler(db, provider=provider)
    try:
        result = await reconciler.reconcile_event(ingested)
    except Exception:
        await ingester.release(ingested.claim)
        raise

    await ingester.complete(ingested.claim, result.outcome, result.booking_id)
    metrics_collector.record_webhook(ingested.event_type.value, result.outcome.value)

    logger.info(
        "Webhook event processed",
        event_id=ingested.claim.event_id,
        event_type=ingested.event_type.value,
        outcome=result.outcome.value,
        booking_id=str(result.booking_id) if result.booking_id else None,
        reason=result.reason,
    )

    return _ack(WebhookAck(
        event_id=ingested.claim.event_id,
        status=result.outcome.value,
        booking_id=str(result.booking_id) if result.booking_id else None,
    ))
