"""Models module exporting all database models."""

from .booking import Booking
from .checkout_session import CheckoutSession, CheckoutSessionStatus
from .deposit_case import (
    OPEN_DEPOSIT_CASE_STATUSES,
    DepositCase,
    DepositCaseSource,
    DepositCaseStatus,
)
from .host_payout import IN_FLIGHT_PAYOUT_STATUSES, HostAccount, HostPayout, PayoutStatus
from .idempotency import IdempotencyRecord
from .refund_request import RefundRequest, RefundStatus
from .webhook_event import WebhookEvent, WebhookOutcome

__all__ = [
    # Core entities
    "Booking",
    "CheckoutSession",
    "CheckoutSessionStatus",

    # Provider event ledger
    "WebhookEvent",
    "WebhookOutcome",

    # Money movements and disputes
    "RefundRequest",
    "RefundStatus",
    "DepositCase",
    "DepositCaseSource",
    "DepositCaseStatus",
    "OPEN_DEPOSIT_CASE_STATUSES",
    "HostPayout",
    "HostAccount",
    "PayoutStatus",
    "IN_FLIGHT_PAYOUT_STATUSES",

    # Idempotency entity
    "IdempotencyRecord",
]
