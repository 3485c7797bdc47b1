"""
Stripe adapter.

The Stripe SDK is synchronous, so every request runs in a worker thread with
an ``asyncio.wait_for`` timeout. Read-only queries get a fixed attempt budget;
mutating requests (refunds, transfers, session creation) are issued exactly
once and a timeout surfaces as ``ProviderUnavailableError`` with an unknown
outcome.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

import stripe

from ..core.clock import from_unix
from ..core.config import Settings
from ..core.exceptions import ProviderRejectedError, ProviderUnavailableError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCheckoutSession:
    """A checkout session freshly created at the provider."""

    id: str
    url: Optional[str]
    expires_at: datetime
    payment_intent_id: Optional[str] = None


@dataclass(frozen=True)
class ProviderCheckoutState:
    """Authoritative state of a checkout session as reported by the provider."""

    id: str
    status: str  # open, complete, expired
    payment_status: str  # paid, unpaid, no_payment_required
    payment_intent_id: Optional[str] = None
    amount_total: Optional[int] = None
    booking_id: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status in ("paid", "no_payment_required")


@dataclass(frozen=True)
class ProviderRefund:
    id: str
    status: str
    amount: int
    payment_intent_id: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderTransfer:
    id: str
    amount: int
    destination: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderTransferReversal:
    id: str
    amount: int
    transfer_id: str


class PaymentProvider(Protocol):
    """Operations the reconciliation service needs from the payment provider."""

    async def create_checkout_session(
        self,
        booking_id: str,
        amount: int,
        description: str,
        expires_at: datetime,
    ) -> ProviderCheckoutSession:
        ...

    async def expire_checkout_session(self, session_id: str) -> bool:
        ...

    async def retrieve_checkout_session(self, session_id: str) -> ProviderCheckoutState:
        ...

    async def create_refund(
        self,
        payment_intent_id: str,
        amount: int,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> ProviderRefund:
        ...

    async def find_refund(self, payment_intent_id: str, refund_request_id: str) -> Optional[ProviderRefund]:
        ...

    async def create_transfer(
        self,
        amount: int,
        destination_account_id: str,
        idempotency_key: str,
        transfer_group: str,
        metadata: dict[str, str],
        source_charge_id: Optional[str] = None,
    ) -> ProviderTransfer:
        ...

    async def find_transfer(self, transfer_group: str, payout_id: str) -> Optional[ProviderTransfer]:
        ...

    async def reverse_transfer(
        self,
        transfer_id: str,
        amount: int,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> ProviderTransferReversal:
        ...


def _id_of(value: Any) -> Optional[str]:
    """Provider references are either ids or expanded objects."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def _to_refund(refund: Any) -> ProviderRefund:
    return ProviderRefund(
        id=refund["id"],
        status=refund.get("status") or "pending",
        amount=refund.get("amount") or 0,
        payment_intent_id=_id_of(refund.get("payment_intent")),
        metadata=dict(refund.get("metadata") or {}),
    )


def _to_transfer(transfer: Any) -> ProviderTransfer:
    return ProviderTransfer(
        id=transfer["id"],
        amount=transfer.get("amount") or 0,
        destination=_id_of(transfer.get("destination")),
        metadata=dict(transfer.get("metadata") or {}),
    )


class StripePaymentProvider:
    """``PaymentProvider`` backed by the Stripe API."""

    def __init__(self, settings: Settings):
        self.api_key = settings.stripe_secret_key
        self.currency = settings.checkout_currency
        self.success_url = settings.checkout_success_url
        self.cancel_url = settings.checkout_cancel_url
        self.timeout = settings.provider_timeout_seconds
        self.max_attempts = settings.provider_max_attempts
        self.backoff = settings.provider_retry_backoff_seconds

    async def _call(self, operation: str, fn: Callable[..., Any], *args, retry: bool, **kwargs) -> Any:
        attempts = self.max_attempts if retry else 1
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs),
                    timeout=self.timeout,
                )
            except (asyncio.TimeoutError, stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
                last_error = e
                logger.warning(
                    "Payment provider request failed",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "error": type(e).__name__,
                    },
                )
            except stripe.StripeError as e:
                raise ProviderRejectedError(f"{operation} rejected by provider: {e.user_message or e}")

            if attempt < attempts:
                await asyncio.sleep(self.backoff * (2 ** (attempt - 1)))

        raise ProviderUnavailableError(
            f"{operation} did not complete after {attempts} attempt(s): {type(last_error).__name__}"
        )

    async def create_checkout_session(
        self,
        booking_id: str,
        amount: int,
        description: str,
        expires_at: datetime,
    ) -> ProviderCheckoutSession:
        session = await self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            retry=False,
            mode="payment",
            line_items=[{
                "quantity": 1,
                "price_data": {
                    "currency": self.currency,
                    "unit_amount": amount,
                    "product_data": {"name": description},
                },
            }],
            success_url=self.success_url,
            cancel_url=self.cancel_url,
            expires_at=int(expires_at.replace(tzinfo=timezone.utc).timestamp()),
            client_reference_id=booking_id,
            metadata={"booking_id": booking_id},
            payment_intent_data={"metadata": {"booking_id": booking_id}},
        )
        return ProviderCheckoutSession(
            id=session["id"],
            url=session.get("url"),
            expires_at=from_unix(session["expires_at"]),
            payment_intent_id=_id_of(session.get("payment_intent")),
        )

    async def expire_checkout_session(self, session_id: str) -> bool:
        """Expire an open session; returns False if it was no longer open."""
        try:
            await self._call(
                "expire_checkout_session",
                stripe.checkout.Session.expire,
                session_id,
                retry=True,
            )
        except ProviderRejectedError as e:
            logger.info(
                "Checkout session was not open at the provider",
                extra={"provider_session_id": session_id, "detail": e.problem_details.get("detail")},
            )
            return False
        return True

    async def retrieve_checkout_session(self, session_id: str) -> ProviderCheckoutState:
        session = await self._call(
            "retrieve_checkout_session",
            stripe.checkout.Session.retrieve,
            session_id,
            retry=True,
        )
        metadata = session.get("metadata") or {}
        return ProviderCheckoutState(
            id=session["id"],
            status=session.get("status") or "open",
            payment_status=session.get("payment_status") or "unpaid",
            payment_intent_id=_id_of(session.get("payment_intent")),
            amount_total=session.get("amount_total"),
            booking_id=metadata.get("booking_id") or session.get("client_reference_id"),
        )

    async def create_refund(
        self,
        payment_intent_id: str,
        amount: int,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> ProviderRefund:
        refund = await self._call(
            "create_refund",
            stripe.Refund.create,
            retry=False,
            payment_intent=payment_intent_id,
            amount=amount,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return _to_refund(refund)

    async def find_refund(self, payment_intent_id: str, refund_request_id: str) -> Optional[ProviderRefund]:
        refunds = await self._call(
            "list_refunds",
            stripe.Refund.list,
            retry=True,
            payment_intent=payment_intent_id,
            limit=100,
        )
        for refund in refunds.get("data", []):
            if (refund.get("metadata") or {}).get("refund_request_id") == refund_request_id:
                return _to_refund(refund)
        return None

    async def create_transfer(
        self,
        amount: int,
        destination_account_id: str,
        idempotency_key: str,
        transfer_group: str,
        metadata: dict[str, str],
        source_charge_id: Optional[str] = None,
    ) -> ProviderTransfer:
        params: dict[str, Any] = {}
        if source_charge_id:
            # Ties the transfer to the renter's charge so it waits for those funds
            params["source_transaction"] = source_charge_id
        transfer = await self._call(
            "create_transfer",
            stripe.Transfer.create,
            retry=False,
            amount=amount,
            currency=self.currency,
            destination=destination_account_id,
            transfer_group=transfer_group,
            metadata=metadata,
            idempotency_key=idempotency_key,
            **params,
        )
        return _to_transfer(transfer)

    async def find_transfer(self, transfer_group: str, payout_id: str) -> Optional[ProviderTransfer]:
        transfers = await self._call(
            "list_transfers",
            stripe.Transfer.list,
            retry=True,
            transfer_group=transfer_group,
            limit=100,
        )
        for transfer in transfers.get("data", []):
            if (transfer.get("metadata") or {}).get("payout_id") == payout_id:
                return _to_transfer(transfer)
        return None

    async def reverse_transfer(
        self,
        transfer_id: str,
        amount: int,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> ProviderTransferReversal:
        reversal = await self._call(
            "reverse_transfer",
            stripe.Transfer.create_reversal,
            transfer_id,
            retry=False,
            amount=amount,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return ProviderTransferReversal(
            id=reversal["id"],
            amount=reversal.get("amount") or amount,
            transfer_id=transfer_id,
        )
