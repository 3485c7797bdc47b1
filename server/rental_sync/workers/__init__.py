"""Background workers for the rental booking service."""

from .lifecycle_worker import LifecycleWorker
from .payout_worker import PayoutWorker
from .refund_worker import RefundWorker
from .stale_checkout_worker import StaleCheckoutWorker

__all__ = ["LifecycleWorker", "PayoutWorker", "RefundWorker", "StaleCheckoutWorker"]
