"""Service layer package."""

from .booking_ledger import BookingLedger, CompletionResult
from .deposit_cases import DepositCaseManager
from .idempotency_service import IdempotencyService
from .lifecycle_completer import LifecycleCompleter
from .payment_provider import PaymentProvider, StripePaymentProvider
from .payment_reconciler import PaymentStateReconciler, ReconcileResult
from .refund_dispatcher import RefundDispatcher, RefundReport
from .stale_checkout_sweep import StaleCheckoutSweep, SweepReport
from .webhook_ingester import IngestedEvent, WebhookClaim, WebhookEventIngester

__all__ = [
    "BookingLedger",
    "CompletionResult",
    "DepositCaseManager",
    "IdempotencyService",
    "IngestedEvent",
    "LifecycleCompleter",
    "PaymentProvider",
    "PaymentStateReconciler",
    "ReconcileResult",
    "RefundDispatcher",
    "RefundReport",
    "StaleCheckoutSweep",
    "StripePaymentProvider",
    "SweepReport",
    "WebhookClaim",
    "WebhookEventIngester",
]
