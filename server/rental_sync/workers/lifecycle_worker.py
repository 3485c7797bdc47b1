"""Background worker completing ended trips."""

import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.database import async_session_factory
from ..services.deposit_releaser import DepositReleaser
from ..services.idempotency_service import IdempotencyService
from ..services.lifecycle_completer import LifecycleCompleter
from .base import BaseWorker

logger = logging.getLogger(__name__)


class LifecycleWorker(BaseWorker):
    """
    Background worker that moves ended confirmed bookings to ``completed``.

    Each pass also queues the deposit refund of bookings whose claim window
    closed, then purges idempotency records past their retention.
    """

    def __init__(
        self,
        interval_seconds: int = 300,
        shutdown_grace_seconds: float = 30.0,
        session_factory: async_sessionmaker = async_session_factory,
    ):
        super().__init__(
            name="LifecycleCompletion",
            interval_seconds=interval_seconds,
            shutdown_grace_seconds=shutdown_grace_seconds,
        )
        self.session_factory = session_factory

    async def process(self) -> None:
        """Complete ended trips and release deposits nobody claimed."""
        async with self.session_factory() as db:
            counts = await LifecycleCompleter(db).run()
            releases = await DepositReleaser(db).run()
            counts["idempotency_purged"] = await IdempotencyService(db).purge_expired()

        if counts.get("completed"):
            logger.info(
                f"Completed {counts['completed']} bookings",
                extra={"worker": self.name, "counts": counts}
            )
        if releases.get("released"):
            logger.info(
                f"Released {releases['released']} deposits",
                extra={"worker": self.name, "counts": releases}
            )
