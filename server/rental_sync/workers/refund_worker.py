"""Background worker dispatching queued refunds."""

import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.database import async_session_factory
from ..services.payment_provider import PaymentProvider
from ..services.refund_dispatcher import RefundDispatcher
from .base import BaseWorker

logger = logging.getLogger(__name__)


class RefundWorker(BaseWorker):
    """Background worker that issues queued refund requests at the provider."""

    def __init__(
        self,
        provider: PaymentProvider,
        interval_seconds: int = 60,
        shutdown_grace_seconds: float = 30.0,
        session_factory: async_sessionmaker = async_session_factory,
    ):
        super().__init__(
            name="RefundDispatch",
            interval_seconds=interval_seconds,
            shutdown_grace_seconds=shutdown_grace_seconds,
        )
        self.provider = provider
        self.session_factory = session_factory

    async def process(self) -> None:
        """Dispatch queued refunds and settle ambiguous ones."""
        async with self.session_factory() as db:
            report = await RefundDispatcher(db, self.provider).run()

        if report.ambiguous:
            logger.warning(
                f"{report.ambiguous} refunds have an unknown outcome",
                extra={"worker": self.name, **report.as_dict()}
            )
