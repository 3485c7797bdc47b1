"""Background worker running the stale checkout sweep."""

import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.database import async_session_factory
from ..services.payment_provider import PaymentProvider
from ..services.stale_checkout_sweep import StaleCheckoutSweep
from .base import BaseWorker

logger = logging.getLogger(__name__)


class StaleCheckoutWorker(BaseWorker):
    """
    Background worker that re-queries checkout sessions stuck in ``created``.

    The sweep checks ``should_stop`` before each provider query, so a
    shutdown lets the in-flight query finish and starts no new ones.
    """

    def __init__(
        self,
        provider: PaymentProvider,
        interval_seconds: int = 900,
        shutdown_grace_seconds: float = 30.0,
        session_factory: async_sessionmaker = async_session_factory,
    ):
        super().__init__(
            name="StaleCheckout",
            interval_seconds=interval_seconds,
            shutdown_grace_seconds=shutdown_grace_seconds,
        )
        self.provider = provider
        self.session_factory = session_factory

    async def process(self) -> None:
        """Run one sweep."""
        async with self.session_factory() as db:
            report = await StaleCheckoutSweep(db, self.provider).run(should_stop=self.should_stop)

        if report.failed:
            logger.warning(
                f"Stale checkout sweep left {report.failed} sessions unresolved",
                extra={"worker": self.name, **report.as_dict()}
            )
