"""Background worker paying hosts for completed bookings."""

import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.database import async_session_factory
from ..services.payment_provider import PaymentProvider
from ..services.payouts import PayoutDispatcher
from .base import BaseWorker

logger = logging.getLogger(__name__)


class PayoutWorker(BaseWorker):
    """Background worker that transfers host payouts and reverses flagged ones."""

    def __init__(
        self,
        provider: PaymentProvider,
        interval_seconds: int = 300,
        shutdown_grace_seconds: float = 30.0,
        session_factory: async_sessionmaker = async_session_factory,
    ):
        super().__init__(
            name="HostPayouts",
            interval_seconds=interval_seconds,
            shutdown_grace_seconds=shutdown_grace_seconds,
        )
        self.provider = provider
        self.session_factory = session_factory

    async def process(self) -> None:
        """Queue, transfer and reverse host payouts."""
        async with self.session_factory() as db:
            report = await PayoutDispatcher(db, self.provider).run()

        if report.ambiguous:
            logger.warning(
                f"{report.ambiguous} payouts have an unknown outcome",
                extra={"worker": self.name, **report.as_dict()}
            )
